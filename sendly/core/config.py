import json
from typing import List, Union

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CreditPackage(BaseModel):
    id: str
    name: str
    credits: int = Field(gt=0)
    # Minor units (cents) of `currency`.
    amount: int = Field(gt=0)
    currency: str = "EUR"
    stripe_price_id: str | None = None


DEFAULT_CREDIT_PACKAGES: list[dict] = [
    {"id": "package_1000", "name": "1,000 SMS Credits", "credits": 1000, "amount": 2999, "currency": "EUR"},
    {"id": "package_5000", "name": "5,000 SMS Credits", "credits": 5000, "amount": 12999, "currency": "EUR"},
    {"id": "package_10000", "name": "10,000 SMS Credits", "credits": 10000, "amount": 22999, "currency": "EUR"},
    {"id": "package_25000", "name": "25,000 SMS Credits", "credits": 25000, "amount": 49999, "currency": "EUR"},
]


class Settings(BaseSettings):
    app_name: str = "Sendly SMS Backend"
    env: str = "dev"

    # DATABASE
    database_url: str = "sqlite:///./sendly.db"
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # SHOPIFY / TENANCY
    shopify_api_key: str | None = None
    shopify_api_secret: str | None = None
    allow_shop_domain_header: bool = True

    # BILLING
    default_currency: str = "EUR"
    supported_currencies: List[str] = Field(default_factory=lambda: ["EUR", "USD", "GBP"])
    credit_packages: List[CreditPackage] = Field(
        default_factory=lambda: [CreditPackage(**item) for item in DEFAULT_CREDIT_PACKAGES]
    )
    payment_provider_default: str = "stub"
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_api_base: str = "https://api.stripe.com"
    stripe_webhook_tolerance_seconds: int = Field(default=300, ge=0, le=86_400)
    stripe_timeout_seconds: int = Field(default=20, ge=1, le=120)
    billing_success_url: str = "http://localhost:3000/billing/success"
    billing_cancel_url: str = "http://localhost:3000/billing/cancel"

    # MESSAGING
    messaging_provider_default: str = "stub"
    mitto_api_base: str = "https://rest.mittoapi.com"
    mitto_api_key: str | None = None
    mitto_sender: str = "Sendly"
    mitto_callback_url: str | None = None
    mitto_webhook_secret: str | None = None
    mitto_timeout_seconds: int = Field(default=15, ge=1, le=120)
    campaign_message_max_chars: int = Field(default=1600, ge=1, le=10_000)

    # QUEUE
    queue_default_attempts: int = Field(default=5, ge=1, le=50)
    queue_backoff_type: str = "exponential"
    queue_backoff_delay_ms: int = Field(default=2000, ge=0, le=3_600_000)
    queue_poll_interval_seconds: float = Field(default=1.0, gt=0, le=60)
    queue_batch_size: int = Field(default=20, ge=1, le=500)
    queue_visibility_timeout_seconds: int = Field(default=300, ge=10, le=86_400)

    # LEDGER
    ledger_retry_attempts: int = Field(default=3, ge=1, le=10)
    ledger_retry_base_delay_ms: int = Field(default=50, ge=0, le=5000)

    # RECONCILIATION
    orphan_debit_stale_minutes: int = Field(default=5, ge=1, le=1440)
    reconciliation_interval_seconds: int = Field(default=60, ge=1, le=3600)
    delivery_status_poll_after_minutes: int = Field(default=15, ge=1, le=10_080)
    delivery_status_poll_batch_size: int = Field(default=100, ge=1, le=1000)

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", "supported_currencies", mode="before")
    @classmethod
    def assemble_string_list(cls, v: Union[str, List[str]]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            if not v.strip():
                return []
            if v.startswith("["):
                parsed = json.loads(v)
                if not isinstance(parsed, list):
                    raise ValueError("JSON value must be a list")
                return [str(i).strip() for i in parsed if str(i).strip()]
            return [i.strip() for i in v.split(",") if i.strip()]
        if isinstance(v, list):
            return [str(i).strip() for i in v if str(i).strip()]
        raise ValueError(v)

    @field_validator("credit_packages", mode="before")
    @classmethod
    def parse_credit_packages(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return [CreditPackage(**item) for item in DEFAULT_CREDIT_PACKAGES]
            parsed = json.loads(v)
            if not isinstance(parsed, list):
                raise ValueError("CREDIT_PACKAGES JSON value must be a list")
            return parsed
        return v

    @field_validator(
        "shopify_api_key",
        "shopify_api_secret",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "mitto_api_key",
        "mitto_callback_url",
        "mitto_webhook_secret",
        "cors_origin_regex",
        mode="before",
    )
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("queue_backoff_type")
    @classmethod
    def validate_backoff_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"fixed", "exponential"}:
            raise ValueError("QUEUE_BACKOFF_TYPE must be 'fixed' or 'exponential'")
        return normalized

    @model_validator(mode="after")
    def validate_currencies(self) -> "Settings":
        self.default_currency = self.default_currency.strip().upper()
        self.supported_currencies = [code.upper() for code in self.supported_currencies]
        if self.default_currency not in self.supported_currencies:
            raise ValueError("DEFAULT_CURRENCY must be listed in SUPPORTED_CURRENCIES")
        package_ids = [package.id for package in self.credit_packages]
        if len(package_ids) != len(set(package_ids)):
            raise ValueError("CREDIT_PACKAGES ids must be unique")
        for package in self.credit_packages:
            package.currency = package.currency.strip().upper()
            if package.currency not in self.supported_currencies:
                raise ValueError(f"Credit package '{package.id}' uses unsupported currency {package.currency}")
        return self

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        if self.allow_shop_domain_header:
            raise ValueError("ALLOW_SHOP_DOMAIN_HEADER must be disabled in production")
        if not self.shopify_api_secret or len(self.shopify_api_secret) < 16:
            raise ValueError("SHOPIFY_API_SECRET must be set in production")
        if not self.stripe_webhook_secret:
            raise ValueError("STRIPE_WEBHOOK_SECRET must be set in production")
        if self.database_url.lower().startswith("sqlite"):
            raise ValueError("DATABASE_URL cannot point to SQLite in production")

        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")

        return self

    def package_by_id(self, package_id: str) -> CreditPackage | None:
        for package in self.credit_packages:
            if package.id == package_id:
                return package
        return None

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


def load_settings(**overrides) -> Settings:
    """Assemble the process configuration once; entry points pass it down."""
    return Settings(**overrides)
