import pytest
import requests

from sendly.core.errors import ProviderError
from sendly.services.messaging_provider import (
    MittoSmsProvider,
    SmsSendRequest,
    SmsStatusResult,
    StubSmsProvider,
    build_sms_provider,
)
from sendly.services.payment_provider import (
    CheckoutRequest,
    StripePaymentProvider,
    StubPaymentProvider,
    build_payment_provider,
)


class FakeResponse:
    def __init__(self, status_code: int, payload=None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, response=None, error: Exception | None = None):
        self.response = response
        self.error = error
        self.calls: list[dict] = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if self.error:
            raise self.error
        return self.response

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)


def _mitto(session) -> MittoSmsProvider:
    return MittoSmsProvider(
        api_base="https://mitto.test/",
        api_key="mitto-key",
        default_sender="Sendly",
        callback_url="https://api.sendly.test/webhooks/mitto/delivery",
        session=session,
    )


def _checkout_request(**overrides) -> CheckoutRequest:
    values = {
        "shop_id": "shop-1",
        "shop_domain": "demo-store.myshopify.com",
        "transaction_id": "tx-1",
        "package_id": "package_1000",
        "package_name": "1,000 SMS Credits",
        "credits": 1000,
        "amount": 2999,
        "currency": "EUR",
        "success_url": "https://admin.test/billing/success",
        "cancel_url": "https://admin.test/billing/cancel",
    }
    values.update(overrides)
    return CheckoutRequest(**values)


def test_mitto_send_posts_message_and_returns_id():
    session = FakeSession(FakeResponse(200, {"messageId": "m-123", "status": "queued"}))

    result = _mitto(session).send(SmsSendRequest(to="+306912345678", text="Hello"))

    assert result.provider_message_id == "m-123"
    assert result.status == "queued"
    call = session.calls[0]
    assert call["url"] == "https://mitto.test/sms"
    assert call["headers"]["x-mitto-api-key"] == "mitto-key"
    assert call["json"] == {
        "from": "Sendly",
        "to": "+306912345678",
        "text": "Hello",
        "callback_url": "https://api.sendly.test/webhooks/mitto/delivery",
    }


@pytest.mark.parametrize(
    "status_code, retryable",
    [(400, False), (422, False), (429, True), (500, True), (503, True)],
)
def test_mitto_http_errors_are_classified(status_code, retryable):
    session = FakeSession(FakeResponse(status_code, text="nope"))

    with pytest.raises(ProviderError) as exc_info:
        _mitto(session).send(SmsSendRequest(to="+306912345678", text="Hello"))

    assert exc_info.value.retryable is retryable


def test_mitto_network_error_is_retryable():
    session = FakeSession(error=requests.ConnectionError("connection reset"))

    with pytest.raises(ProviderError) as exc_info:
        _mitto(session).send(SmsSendRequest(to="+306912345678", text="Hello"))

    assert exc_info.value.retryable is True


def test_mitto_without_api_key_fails_permanently():
    provider = MittoSmsProvider(api_base="https://mitto.test", api_key=None, default_sender="Sendly")

    with pytest.raises(ProviderError) as exc_info:
        provider.send(SmsSendRequest(to="+306912345678", text="Hello"))

    assert exc_info.value.retryable is False


def test_mitto_status_lookup_reads_delivery_status():
    session = FakeSession(FakeResponse(200, {"messageId": "m-123", "deliveryStatus": "Delivered"}))

    result = _mitto(session).get_message_status("m-123")

    assert result == SmsStatusResult(provider_message_id="m-123", delivery_status="Delivered")
    call = session.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == "https://mitto.test/messages/m-123"
    assert call["headers"]["x-mitto-api-key"] == "mitto-key"


def test_mitto_status_lookup_without_status_is_an_error():
    session = FakeSession(FakeResponse(200, {"messageId": "m-123"}))

    with pytest.raises(ProviderError):
        _mitto(session).get_message_status("m-123")


def test_stub_reports_messages_as_delivered():
    assert StubSmsProvider().get_message_status("stub-1").delivery_status == "Delivered"


def test_stripe_checkout_carries_tenant_metadata():
    session = FakeSession(FakeResponse(200, {"id": "cs_live_1", "url": "https://checkout.stripe.test/cs_live_1"}))
    provider = StripePaymentProvider(secret_key="sk_test_1", session=session)

    result = provider.create_checkout(_checkout_request())

    assert result.session_id == "cs_live_1"
    assert result.checkout_url == "https://checkout.stripe.test/cs_live_1"
    call = session.calls[0]
    assert call["url"] == "https://api.stripe.com/v1/checkout/sessions"
    assert call["headers"]["Idempotency-Key"] == "checkout-tx-1"
    form = call["data"]
    assert form["metadata[storeId]"] == "shop-1"
    assert form["metadata[transactionId]"] == "tx-1"
    assert form["payment_intent_data[metadata][transactionId]"] == "tx-1"
    assert form["line_items[0][price_data][unit_amount]"] == "2999"
    assert form["line_items[0][price_data][currency]"] == "eur"


def test_stripe_checkout_uses_price_id_when_configured():
    session = FakeSession(FakeResponse(200, {"id": "cs_live_2"}))
    provider = StripePaymentProvider(secret_key="sk_test_1", session=session)

    provider.create_checkout(_checkout_request(stripe_price_id="price_123"))

    form = session.calls[0]["data"]
    assert form["line_items[0][price]"] == "price_123"
    assert "line_items[0][price_data][unit_amount]" not in form


def test_stripe_client_errors_are_not_retryable():
    session = FakeSession(FakeResponse(402, text="card_declined"))
    provider = StripePaymentProvider(secret_key="sk_test_1", session=session)

    with pytest.raises(ProviderError) as exc_info:
        provider.create_checkout(_checkout_request())

    assert exc_info.value.retryable is False


def test_provider_factories(settings):
    assert isinstance(build_sms_provider(settings), StubSmsProvider)
    assert isinstance(build_sms_provider(settings, "Mitto"), MittoSmsProvider)
    assert isinstance(build_payment_provider(settings), StubPaymentProvider)
    assert isinstance(build_payment_provider(settings, "stripe"), StripePaymentProvider)
    with pytest.raises(ValueError):
        build_sms_provider(settings, "carrier-pigeon")
