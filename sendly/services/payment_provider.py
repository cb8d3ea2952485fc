from dataclasses import dataclass, field
from typing import Callable, Protocol

import requests

from sendly.core.config import Settings
from sendly.core.errors import ProviderError
from sendly.core.id_utils import generate_reference


@dataclass(frozen=True)
class CheckoutRequest:
    shop_id: str
    shop_domain: str
    transaction_id: str
    package_id: str
    package_name: str
    credits: int
    amount: int
    currency: str
    success_url: str
    cancel_url: str
    stripe_price_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutResult:
    provider: str
    session_id: str
    checkout_url: str | None = None


class PaymentProvider(Protocol):
    name: str

    def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        ...


class StubPaymentProvider:
    name = "stub"

    def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        session_id = generate_reference("cs_stub_")
        return CheckoutResult(
            provider=self.name,
            session_id=session_id,
            checkout_url=f"{request.success_url}?session_id={session_id}",
        )


class StripePaymentProvider:
    name = "stripe"

    def __init__(
        self,
        *,
        secret_key: str | None,
        api_base: str = "https://api.stripe.com",
        timeout_seconds: int = 20,
        session: requests.Session | None = None,
    ):
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def _form(self, request: CheckoutRequest) -> dict[str, str]:
        form = {
            "mode": "payment",
            "payment_method_types[0]": "card",
            "success_url": f"{request.success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": request.cancel_url,
            "client_reference_id": request.transaction_id,
            "line_items[0][quantity]": "1",
        }
        if request.stripe_price_id:
            form["line_items[0][price]"] = request.stripe_price_id
        else:
            form["line_items[0][price_data][currency]"] = request.currency.lower()
            form["line_items[0][price_data][unit_amount]"] = str(request.amount)
            form["line_items[0][price_data][product_data][name]"] = request.package_name

        metadata = {
            "storeId": request.shop_id,
            "shopDomain": request.shop_domain,
            "transactionId": request.transaction_id,
            "packageId": request.package_id,
            "credits": str(request.credits),
            **request.metadata,
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = value
            form[f"payment_intent_data[metadata][{key}]"] = value
        return form

    def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        if not self.secret_key:
            raise ProviderError("STRIPE_SECRET_KEY is not configured", provider=self.name, retryable=False)
        try:
            response = self.session.post(
                f"{self.api_base}/v1/checkout/sessions",
                data=self._form(request),
                auth=(self.secret_key, ""),
                headers={"Idempotency-Key": f"checkout-{request.transaction_id}"},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ProviderError(f"Stripe request failed: {exc}", provider=self.name) from exc

        if response.status_code >= 400:
            raise ProviderError(
                f"Stripe returned HTTP {response.status_code}: {response.text[:200]}",
                provider=self.name,
                retryable=response.status_code >= 500,
            )
        data = response.json()
        return CheckoutResult(provider=self.name, session_id=data["id"], checkout_url=data.get("url"))


_PAYMENT_PROVIDERS: dict[str, Callable[[Settings], PaymentProvider]] = {
    "stub": lambda _settings: StubPaymentProvider(),
    "stripe": lambda settings: StripePaymentProvider(
        secret_key=settings.stripe_secret_key,
        api_base=settings.stripe_api_base,
        timeout_seconds=settings.stripe_timeout_seconds,
    ),
}


def build_payment_provider(settings: Settings, name: str | None = None) -> PaymentProvider:
    requested = name or settings.payment_provider_default
    normalized = (requested or "").strip().lower()
    factory = _PAYMENT_PROVIDERS.get(normalized)
    if not factory:
        available = ", ".join(sorted(_PAYMENT_PROVIDERS))
        raise ValueError(f"Unknown payment provider '{requested}'. Available: {available}")
    return factory(settings)
