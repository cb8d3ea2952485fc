import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.pool import StaticPool

import sendly.models  # noqa: F401
from sendly.core.config import Settings
from sendly.core.errors import ProviderError
from sendly.db.base import Base
from sendly.db.session import Database
from sendly.main import create_app
from sendly.models.contact import Contact, Segment, SegmentMembership
from sendly.models.shop import Shop
from sendly.services.container import build_services
from sendly.services.messaging_provider import SmsSendRequest, SmsSendResult, SmsStatusResult
from sendly.services.payment_provider import StubPaymentProvider

STRIPE_WEBHOOK_SECRET = "whsec_test_secret_0123456789"
SHOPIFY_API_KEY = "sendly-test-app"
SHOPIFY_API_SECRET = "shopify-test-secret-0123456789"
SHOP_DOMAIN = "demo-store.myshopify.com"


class FakeSmsProvider:
    """Records outgoing messages; queue ProviderErrors in `failures` to make sends fail.

    `statuses` maps message ids to the delivery status (or ProviderError) that
    status lookups return; unknown ids report "Queued".
    """

    name = "fake"

    def __init__(self):
        self.sent: list[SmsSendRequest] = []
        self.failures: list[ProviderError] = []
        self.statuses: dict[str, str | ProviderError] = {}
        self.status_checks: list[str] = []

    def send(self, request: SmsSendRequest) -> SmsSendResult:
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(request)
        return SmsSendResult(
            provider=self.name,
            provider_message_id=f"fake-{len(self.sent)}",
            status="sent",
        )

    def get_message_status(self, provider_message_id: str) -> SmsStatusResult:
        self.status_checks.append(provider_message_id)
        status = self.statuses.get(provider_message_id, "Queued")
        if isinstance(status, ProviderError):
            raise status
        return SmsStatusResult(provider_message_id=provider_message_id, delivery_status=status)


class Seeder:
    def __init__(self, services):
        self.services = services
        self.database = services.database

    def shop(self, domain: str = SHOP_DOMAIN, *, credits: int = 0) -> str:
        def _create(db):
            existing = db.execute(select(Shop).where(Shop.shop_domain == domain)).scalar_one_or_none()
            if existing:
                return existing.id
            shop = Shop(shop_domain=domain, shop_name=domain.split(".", 1)[0], credits=0, currency="EUR")
            db.add(shop)
            db.flush()
            return shop.id

        shop_id = self.database.run_in_transaction(_create)
        if credits:
            self.grant(shop_id, credits)
        return shop_id

    def grant(self, shop_id: str, credits: int, *, ref: str = "seed:grant") -> None:
        self.services.credits.credit(shop_id, credits, ref=ref, entry_type="adjustment")

    def contacts(
        self,
        shop_id: str,
        count: int,
        *,
        consent: str = "opted_in",
        gender: str | None = None,
        prefix: str = "+3069",
    ) -> list[str]:
        def _create(db):
            rows = []
            for index in range(count):
                contact = Contact(
                    shop_id=shop_id,
                    first_name=f"Contact {index}",
                    phone_e164=f"{prefix}{index:08d}",
                    gender=gender,
                    sms_consent=consent,
                )
                db.add(contact)
                rows.append(contact)
            db.flush()
            return [row.id for row in rows]

        return self.database.run_in_transaction(_create)

    def segment(self, shop_id: str, name: str, contact_ids: list[str]) -> str:
        def _create(db):
            segment = Segment(shop_id=shop_id, name=name)
            db.add(segment)
            db.flush()
            for contact_id in contact_ids:
                db.add(SegmentMembership(segment_id=segment.id, contact_id=contact_id))
            db.flush()
            return segment.id

        return self.database.run_in_transaction(_create)


@pytest.fixture()
def settings():
    return Settings(
        _env_file=None,
        env="test",
        database_url="sqlite://",
        shopify_api_key=SHOPIFY_API_KEY,
        shopify_api_secret=SHOPIFY_API_SECRET,
        allow_shop_domain_header=True,
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        mitto_webhook_secret=None,
        payment_provider_default="stub",
        messaging_provider_default="stub",
        queue_backoff_type="fixed",
        queue_backoff_delay_ms=0,
        ledger_retry_base_delay_ms=0,
    )


@pytest.fixture()
def database():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    db = Database(engine, retry_base_delay_ms=0)
    yield db
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def sms_provider():
    return FakeSmsProvider()


@pytest.fixture()
def services(settings, database, sms_provider):
    return build_services(
        settings,
        database,
        sms_provider=sms_provider,
        payment_provider=StubPaymentProvider(),
    )


@pytest.fixture()
def seed(services):
    return Seeder(services)


@pytest.fixture()
def test_context(settings, database, sms_provider):
    app = create_app(
        settings,
        database,
        sms_provider=sms_provider,
        payment_provider=StubPaymentProvider(),
    )
    with TestClient(app) as client:
        yield client, app.state.services
