import hashlib
import hmac
import json
import logging
import time
import traceback

from fastapi import APIRouter, Depends, HTTPException, Request

from sendly.core.api_docs import error_responses
from sendly.core.config import Settings
from sendly.core.deps import get_services, get_settings
from sendly.core.observability import log_event
from sendly.schemas.webhook import WebhookAckOut
from sendly.services.container import ServiceContainer

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = logging.getLogger("sendly.webhooks")


def build_stripe_signature(payload_bytes: bytes, *, secret: str, timestamp: int) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + payload_bytes
    digest = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _assert_stripe_signature(
    payload_bytes: bytes,
    signature_header: str | None,
    *,
    secret: str,
    tolerance_seconds: int,
) -> None:
    if not signature_header:
        raise HTTPException(status_code=401, detail="Missing Stripe-Signature header")

    timestamp: int | None = None
    candidates: list[str] = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise HTTPException(status_code=401, detail="Invalid webhook signature") from exc
        elif key == "v1":
            candidates.append(value)

    if timestamp is None or not candidates:
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    if tolerance_seconds and abs(time.time() - timestamp) > tolerance_seconds:
        raise HTTPException(status_code=401, detail="Webhook signature timestamp outside tolerance")

    expected = build_stripe_signature(payload_bytes, secret=secret, timestamp=timestamp).split("v1=", 1)[1]
    if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


def build_mitto_signature(payload_bytes: bytes, *, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).hexdigest()


def _assert_mitto_signature(payload_bytes: bytes, signature_header: str | None, *, secret: str) -> None:
    if not signature_header:
        raise HTTPException(status_code=401, detail="Missing webhook signature")
    provided = signature_header.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = build_mitto_signature(payload_bytes, secret=secret)
    if not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


def _parse_json(raw_body: bytes):
    try:
        return json.loads(raw_body or b"null")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Webhook body is not valid JSON") from exc


def _log_processing_error(source: str, exc: Exception, **fields) -> None:
    log_event(
        logger,
        f"webhook.{source}.error",
        level=logging.ERROR,
        error=str(exc),
        traceback=traceback.format_exc(limit=10),
        **fields,
    )


@router.post(
    "/stripe",
    response_model=WebhookAckOut,
    summary="Stripe payment events",
    responses=error_responses(400, 401),
)
async def stripe_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    services: ServiceContainer = Depends(get_services),
):
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=400, detail="Stripe webhook secret is not configured")

    raw_body = await request.body()
    _assert_stripe_signature(
        raw_body,
        request.headers.get("stripe-signature"),
        secret=settings.stripe_webhook_secret,
        tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    )
    event = _parse_json(raw_body)
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    # Acknowledge regardless of outcome; state is reconciled idempotently on redelivery.
    try:
        outcome = services.payment_reconciler.handle_event(event)
    except Exception as exc:
        _log_processing_error("stripe", exc, stripe_event_id=event.get("id"), event_type=event.get("type"))
        return WebhookAckOut(status="error", event_type=event.get("type"))
    return WebhookAckOut(status=outcome.status, event_type=outcome.event_type)


@router.post(
    "/mitto/delivery",
    response_model=WebhookAckOut,
    summary="Mitto delivery reports",
    responses=error_responses(400, 401),
)
async def mitto_delivery_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    services: ServiceContainer = Depends(get_services),
):
    raw_body = await request.body()
    if settings.mitto_webhook_secret:
        _assert_mitto_signature(
            raw_body,
            request.headers.get("x-mitto-signature"),
            secret=settings.mitto_webhook_secret,
        )
    payload = _parse_json(raw_body)
    reports = payload if isinstance(payload, list) else [payload]

    statuses: list[str] = []
    for report in reports:
        if not isinstance(report, dict):
            statuses.append("ignored")
            continue
        try:
            statuses.append(services.delivery_reconciler.apply_delivery_report(report).outcome)
        except Exception as exc:
            _log_processing_error("mitto", exc, provider_message_id=report.get("message_id") or report.get("id"))
            statuses.append("error")

    status = statuses[0] if len(statuses) == 1 else ("error" if "error" in statuses else "processed")
    return WebhookAckOut(status=status)
