from dataclasses import dataclass
from typing import Callable, Protocol

import requests

from sendly.core.config import Settings
from sendly.core.errors import ProviderError
from sendly.core.id_utils import generate_reference


@dataclass(frozen=True)
class SmsSendRequest:
    to: str
    text: str
    sender: str | None = None
    callback_url: str | None = None
    reference: str | None = None


@dataclass(frozen=True)
class SmsSendResult:
    provider: str
    provider_message_id: str
    status: str


@dataclass(frozen=True)
class SmsStatusResult:
    provider_message_id: str
    delivery_status: str


class SmsProvider(Protocol):
    name: str

    def send(self, request: SmsSendRequest) -> SmsSendResult:
        ...

    def get_message_status(self, provider_message_id: str) -> SmsStatusResult:
        ...


class StubSmsProvider:
    name = "stub"

    def send(self, request: SmsSendRequest) -> SmsSendResult:
        return SmsSendResult(
            provider=self.name,
            provider_message_id=generate_reference("stub-"),
            status="sent",
        )

    def get_message_status(self, provider_message_id: str) -> SmsStatusResult:
        return SmsStatusResult(provider_message_id=provider_message_id, delivery_status="Delivered")


class MittoSmsProvider:
    name = "mitto"

    def __init__(
        self,
        *,
        api_base: str,
        api_key: str | None,
        default_sender: str,
        callback_url: str | None = None,
        timeout_seconds: int = 15,
        session: requests.Session | None = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.default_sender = default_sender
        self.callback_url = callback_url
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def send(self, request: SmsSendRequest) -> SmsSendResult:
        if not self.api_key:
            raise ProviderError("MITTO_API_KEY is not configured", provider=self.name, retryable=False)

        body = {
            "from": request.sender or self.default_sender,
            "to": request.to,
            "text": request.text,
        }
        callback_url = request.callback_url or self.callback_url
        if callback_url:
            body["callback_url"] = callback_url

        data = self._request("POST", "/sms", json=body)
        message_id = data.get("message_id") or data.get("messageId") or data.get("id")
        if not message_id:
            raise ProviderError("Mitto response did not include a message id", provider=self.name)
        return SmsSendResult(
            provider=self.name,
            provider_message_id=str(message_id),
            status=str(data.get("status") or "sent"),
        )

    def get_message_status(self, provider_message_id: str) -> SmsStatusResult:
        if not self.api_key:
            raise ProviderError("MITTO_API_KEY is not configured", provider=self.name, retryable=False)

        data = self._request("GET", f"/messages/{provider_message_id}")
        delivery_status = data.get("deliveryStatus") or data.get("delivery_status") or data.get("status")
        if not delivery_status:
            raise ProviderError("Mitto status response did not include a delivery status", provider=self.name)
        return SmsStatusResult(provider_message_id=provider_message_id, delivery_status=str(delivery_status))

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.session.request(
                method,
                f"{self.api_base}{path}",
                headers={"x-mitto-api-key": self.api_key, "Content-Type": "application/json"},
                timeout=self.timeout_seconds,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise ProviderError(f"Mitto request failed: {exc}", provider=self.name) from exc

        if response.status_code >= 400:
            # 4xx other than throttling means the request itself was rejected.
            retryable = response.status_code >= 500 or response.status_code == 429
            raise ProviderError(
                f"Mitto returned HTTP {response.status_code}: {response.text[:200]}",
                provider=self.name,
                retryable=retryable,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError("Mitto returned a non-JSON response", provider=self.name) from exc


def _build_mitto(settings: Settings) -> SmsProvider:
    return MittoSmsProvider(
        api_base=settings.mitto_api_base,
        api_key=settings.mitto_api_key,
        default_sender=settings.mitto_sender,
        callback_url=settings.mitto_callback_url,
        timeout_seconds=settings.mitto_timeout_seconds,
    )


_SMS_PROVIDERS: dict[str, Callable[[Settings], SmsProvider]] = {
    "stub": lambda _settings: StubSmsProvider(),
    "mitto": _build_mitto,
}


def build_sms_provider(settings: Settings, name: str | None = None) -> SmsProvider:
    requested = name or settings.messaging_provider_default
    normalized = (requested or "").strip().lower()
    factory = _SMS_PROVIDERS.get(normalized)
    if not factory:
        available = ", ".join(sorted(_SMS_PROVIDERS))
        raise ValueError(f"Unknown messaging provider '{requested}'. Available: {available}")
    return factory(settings)
