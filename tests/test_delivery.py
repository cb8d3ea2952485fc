from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from sendly.core.errors import ProviderError
from sendly.models.campaign import Campaign, CampaignMetrics, CampaignRecipient
from sendly.models.message_log import MessageLog
from sendly.models.queue_job import QueueJob
from sendly.models.wallet import WalletTransaction
from sendly.routers.webhooks import build_mitto_signature
from sendly.services.delivery_reconciler import map_provider_status

SHOP_HEADERS = {"X-Shopify-Shop-Domain": "demo-store.myshopify.com"}


def _sent_campaign(services, seed, *, recipients: int = 3, credits: int = 100) -> tuple[str, str]:
    shop_id = seed.shop(credits=credits)
    seed.contacts(shop_id, recipients)
    campaign = services.campaigns.create_campaign(shop_id, name="Launch", message="New drop is live")
    services.campaigns.send(shop_id, campaign.id)
    return shop_id, campaign.id


def _metrics(database, campaign_id):
    with database.session() as db:
        return db.execute(
            select(CampaignMetrics).where(CampaignMetrics.campaign_id == campaign_id)
        ).scalar_one()


def _recipient_statuses(database, campaign_id) -> list[str]:
    with database.session() as db:
        return sorted(
            db.execute(
                select(CampaignRecipient.status).where(CampaignRecipient.campaign_id == campaign_id)
            ).scalars().all()
        )


def _campaign_status(database, campaign_id) -> str:
    with database.session() as db:
        return db.execute(select(Campaign.status).where(Campaign.id == campaign_id)).scalar_one()


def _requeue(database, *criteria) -> None:
    def _apply(db):
        db.execute(
            update(QueueJob)
            .where(*criteria)
            .values(
                status="pending",
                next_attempt_at=datetime.now(timezone.utc) - timedelta(seconds=1),
                completed_at=None,
            )
        )

    database.run_in_transaction(_apply)


def test_worker_delivers_campaign_and_finalizes_status(services, seed, sms_provider):
    shop_id, campaign_id = _sent_campaign(services, seed)

    summary = services.job_worker().run_once(20)

    assert summary.processed == 3
    assert summary.completed == 3
    assert len(sms_provider.sent) == 3
    assert all(request.text == "New drop is live" for request in sms_provider.sent)
    assert _recipient_statuses(services.database, campaign_id) == ["sent", "sent", "sent"]
    assert _metrics(services.database, campaign_id).total_sent == 3
    assert _campaign_status(services.database, campaign_id) == "sent"
    # Paid in bulk at send time; delivery never touches the ledger.
    assert services.credits.check_available(shop_id).credits == 97


def test_redelivered_campaign_job_is_a_no_op(services, seed, sms_provider):
    _shop_id, campaign_id = _sent_campaign(services, seed, recipients=2)
    services.job_worker().run_once(20)

    _requeue(services.database, QueueJob.group_key == f"campaign:{campaign_id}")
    summary = services.job_worker().run_once(20)

    assert summary.completed == 2
    assert len(sms_provider.sent) == 2
    assert _metrics(services.database, campaign_id).total_sent == 2


def test_retryable_provider_error_reschedules_the_job(services, seed, sms_provider):
    _shop_id, campaign_id = _sent_campaign(services, seed, recipients=1)
    sms_provider.failures.append(ProviderError("Mitto returned HTTP 503", provider="fake"))
    worker = services.job_worker()

    first = worker.run_once(20)

    assert first.retried == 1
    with services.database.session() as db:
        job = db.execute(select(QueueJob).where(QueueJob.group_key == f"campaign:{campaign_id}")).scalar_one()
    assert job.status == "pending"
    assert job.attempt_count == 1
    assert "503" in job.last_error
    assert _recipient_statuses(services.database, campaign_id) == ["pending"]
    assert _campaign_status(services.database, campaign_id) == "sending"

    second = worker.run_once(20)

    assert second.completed == 1
    assert _recipient_statuses(services.database, campaign_id) == ["sent"]
    assert _campaign_status(services.database, campaign_id) == "sent"
    with services.database.session() as db:
        log_statuses = sorted(
            db.execute(select(MessageLog.status).where(MessageLog.campaign_id == campaign_id)).scalars().all()
        )
    assert log_statuses == ["failed", "sent"]


def test_rejected_message_fails_recipient_without_refund(services, seed, sms_provider):
    shop_id, campaign_id = _sent_campaign(services, seed, recipients=1, credits=10)
    sms_provider.failures.append(ProviderError("Invalid number", provider="fake", retryable=False))

    summary = services.job_worker().run_once(20)

    assert summary.completed == 1
    assert _recipient_statuses(services.database, campaign_id) == ["failed"]
    assert _metrics(services.database, campaign_id).total_failed == 1
    assert _campaign_status(services.database, campaign_id) == "failed"
    assert services.credits.check_available(shop_id).credits == 9


def test_final_attempt_failure_marks_recipient_failed(services, seed, sms_provider, settings):
    _shop_id, campaign_id = _sent_campaign(services, seed, recipients=1)
    error = ProviderError("Mitto request failed: timeout", provider="fake")
    sms_provider.failures.extend([error] * settings.queue_default_attempts)
    worker = services.job_worker()

    for _ in range(settings.queue_default_attempts):
        worker.run_once(20)

    with services.database.session() as db:
        job = db.execute(select(QueueJob).where(QueueJob.group_key == f"campaign:{campaign_id}")).scalar_one()
    assert job.status == "completed"
    assert job.attempt_count == settings.queue_default_attempts
    assert _recipient_statuses(services.database, campaign_id) == ["failed"]
    assert sms_provider.sent == []


def test_transactional_message_is_charged_exactly_once(services, seed, sms_provider):
    shop_id = seed.shop(credits=5)

    queued = services.messages.queue_transactional(
        shop_id,
        phone_e164="+306912345678",
        message="Your order has shipped",
        idempotency_key="order-1001",
    )
    duplicate = services.messages.queue_transactional(
        shop_id,
        phone_e164="+306912345678",
        message="Your order has shipped",
        idempotency_key="order-1001",
    )
    assert queued.queued is True
    assert duplicate.queued is False
    assert duplicate.job_key == queued.job_key

    services.job_worker().run_once(20)
    _requeue(services.database, QueueJob.job_key == queued.job_key)
    services.job_worker().run_once(20)

    assert services.credits.check_available(shop_id).credits == 4
    with services.database.session() as db:
        charges = db.execute(
            select(WalletTransaction.credits).where(WalletTransaction.ref == f"sms:{queued.job_key}")
        ).scalars().all()
    assert charges == [-1]
    assert sms_provider.sent[0].to == "+306912345678"


def test_transactional_send_without_credits_is_logged_as_failed(services, seed, sms_provider):
    shop_id = seed.shop(credits=1)
    for key in ("a", "b"):
        services.messages.queue_transactional(
            shop_id,
            phone_e164="+306912345678",
            message="Code 1234",
            idempotency_key=key,
        )

    summary = services.job_worker().run_once(20)

    assert summary.completed == 2
    assert len(sms_provider.sent) == 1
    assert services.credits.check_available(shop_id).credits == 0
    with services.database.session() as db:
        statuses = sorted(
            db.execute(select(MessageLog.status).where(MessageLog.shop_id == shop_id)).scalars().all()
        )
    assert statuses == ["failed", "sent"]


def test_transactional_provider_failure_keeps_the_charge(services, seed, sms_provider):
    shop_id = seed.shop(credits=3)
    sms_provider.failures.append(ProviderError("Invalid number", provider="fake", retryable=False))
    services.messages.queue_transactional(shop_id, phone_e164="+306912345678", message="Hi")

    services.job_worker().run_once(20)

    assert services.credits.check_available(shop_id).credits == 2


def test_message_endpoint_requires_credits(test_context, seed):
    client, _services = test_context
    seed.shop(credits=0)

    res = client.post(
        "/messages/send",
        json={"phone_e164": "+306912345678", "message": "Hello"},
        headers=SHOP_HEADERS,
    )

    assert res.status_code == 400
    assert res.json()["error"]["code"] == "insufficient_credits"


def test_message_endpoint_queues_job(test_context, seed):
    client, services = test_context
    seed.shop(credits=2)

    res = client.post(
        "/messages/send",
        json={"phone_e164": "+306912345678", "message": "Hello", "idempotency_key": "welcome-1"},
        headers=SHOP_HEADERS,
    )

    assert res.status_code == 200, res.text
    assert res.json()["job_key"].endswith(":welcome-1")
    assert res.json()["queued"] is True
    assert services.queue.stats() == {"pending": 1}
    # Nothing is charged until the worker sends it.
    assert client.get("/billing/balance", headers=SHOP_HEADERS).json()["credits"] == 2


def test_message_endpoint_validates_phone_number(test_context, seed):
    client, _services = test_context
    seed.shop(credits=2)

    res = client.post("/messages/send", json={"phone_e164": "6912345678", "message": "Hello"}, headers=SHOP_HEADERS)

    assert res.status_code == 422
    assert res.json()["error"]["details"][0]["field"] == "phone_e164"


def test_delivery_reports_update_metrics_once(test_context, seed):
    client, services = test_context
    _shop_id, campaign_id = _sent_campaign(services, seed)
    services.job_worker().run_once(20)

    delivered = client.post("/webhooks/mitto/delivery", json={"message_id": "fake-1", "status": "Delivered"})
    replay = client.post("/webhooks/mitto/delivery", json={"message_id": "fake-1", "status": "delivered"})
    failed = client.post("/webhooks/mitto/delivery", json={"messageId": "fake-2", "status": "UNDELIV"})

    assert delivered.status_code == 200
    assert delivered.json()["status"] == "updated"
    assert replay.json()["status"] == "unchanged"
    assert failed.json()["status"] == "updated"

    metrics = client.get(f"/campaigns/{campaign_id}/metrics", headers=SHOP_HEADERS).json()
    assert metrics["total_sent"] == 3
    assert metrics["total_delivered"] == 1
    assert metrics["total_failed"] == 1
    assert metrics["recipients_by_status"] == {"delivered": 1, "failed": 1, "sent": 1}
    assert metrics["status"] == "sent"


def test_delivery_report_batch_and_unknown_ids(test_context, seed):
    client, services = test_context
    _sent_campaign(services, seed, recipients=1)
    services.job_worker().run_once(20)

    res = client.post(
        "/webhooks/mitto/delivery",
        json=[
            {"message_id": "fake-1", "status": "delivrd"},
            {"message_id": "unknown-id", "status": "delivered"},
        ],
    )

    assert res.status_code == 200
    assert res.json()["status"] == "processed"
    with services.database.session() as db:
        status = db.execute(
            select(CampaignRecipient.status).where(CampaignRecipient.provider_message_id == "fake-1")
        ).scalar_one()
    assert status == "delivered"


def _age_sent_recipients(database, campaign_id, *, minutes: int) -> None:
    def _apply(db):
        db.execute(
            update(CampaignRecipient)
            .where(CampaignRecipient.campaign_id == campaign_id, CampaignRecipient.status == "sent")
            .values(sent_at=datetime.now(timezone.utc) - timedelta(minutes=minutes))
        )

    database.run_in_transaction(_apply)


def test_status_poll_reconciles_missed_delivery_reports(services, seed, sms_provider):
    _shop_id, campaign_id = _sent_campaign(services, seed)
    services.job_worker().run_once(20)
    _age_sent_recipients(services.database, campaign_id, minutes=30)
    sms_provider.statuses = {
        "fake-1": "Delivered",
        "fake-2": "Failed",
        "fake-3": ProviderError("Mitto returned HTTP 503: busy", provider="fake"),
    }

    summary = services.delivery_reconciler.poll_provider_statuses(sms_provider, older_than_minutes=15)

    assert summary.checked == 3
    assert summary.updated == 2
    assert summary.errors == ["fake-3"]
    assert _recipient_statuses(services.database, campaign_id) == ["delivered", "failed", "sent"]
    metrics = _metrics(services.database, campaign_id)
    assert (metrics.total_delivered, metrics.total_failed) == (1, 1)

    # A late callback for a polled message is not counted again.
    late = services.delivery_reconciler.apply_delivery_report({"message_id": "fake-1", "status": "delivered"})
    assert late.outcome == "unchanged"

    sms_provider.statuses["fake-3"] = "Queued"
    second = services.delivery_reconciler.poll_provider_statuses(sms_provider, older_than_minutes=15)

    assert second.checked == 1
    assert second.updated == 0
    metrics = _metrics(services.database, campaign_id)
    assert (metrics.total_delivered, metrics.total_failed) == (1, 1)


def test_status_poll_skips_recently_sent_messages(services, seed, sms_provider):
    _shop_id, campaign_id = _sent_campaign(services, seed, recipients=2)
    services.job_worker().run_once(20)

    summary = services.delivery_reconciler.poll_provider_statuses(sms_provider, older_than_minutes=15)

    assert summary.checked == 0
    assert sms_provider.status_checks == []
    assert _recipient_statuses(services.database, campaign_id) == ["sent", "sent"]


def test_delivery_report_signature_is_enforced_when_configured(test_context, settings):
    client, _services = test_context
    settings.mitto_webhook_secret = "mitto-secret"
    body = b'{"message_id": "fake-1", "status": "delivered"}'

    unsigned = client.post("/webhooks/mitto/delivery", content=body, headers={"Content-Type": "application/json"})
    signed = client.post(
        "/webhooks/mitto/delivery",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Mitto-Signature": f"sha256={build_mitto_signature(body, secret='mitto-secret')}",
        },
    )

    assert unsigned.status_code == 401
    assert signed.status_code == 200
    assert signed.json()["status"] == "ignored"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("DELIVERED", "delivered"),
        ("delivrd", "delivered"),
        ("undelivered", "failed"),
        ("Rejected", "failed"),
        ("expired", "failed"),
        ("enroute", "sent"),
        (None, "sent"),
        ("something-new", "sent"),
    ],
)
def test_map_provider_status(raw, expected):
    assert map_provider_status(raw) == expected
