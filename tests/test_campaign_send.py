import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from sendly.core.config import Settings
from sendly.core.errors import InvalidStateError, QueueUnavailableError, TransientError
from sendly.db.base import Base
from sendly.db.session import Database, build_engine
from sendly.models.campaign import Campaign, CampaignRecipient
from sendly.models.contact import Contact
from sendly.models.queue_job import QueueJob
from sendly.models.shop import Shop
from sendly.models.wallet import WalletTransaction
from sendly.services.campaign_service import CampaignService, normalize_audience
from sendly.services.container import build_services
from sendly.services.job_queue import DatabaseJobQueue
from sendly.services.messaging_provider import StubSmsProvider
from sendly.services.payment_provider import StubPaymentProvider

SHOP_HEADERS = {"X-Shopify-Shop-Domain": "demo-store.myshopify.com"}


class UnavailableQueue(DatabaseJobQueue):
    def enqueue_many(self, specs):
        raise QueueUnavailableError("Job queue unavailable, please retry")


class BusyQueue(DatabaseJobQueue):
    def enqueue_many(self, specs):
        raise TransientError("Database is busy, please retry")


class LockedDatabase(Database):
    """Every transaction fails the way a write-locked SQLite file does."""

    def run_in_transaction(self, fn, *, attempts=None):
        def _locked(db):
            raise OperationalError("INSERT INTO queue_jobs", {}, sqlite3.OperationalError("database is locked"))

        return super().run_in_transaction(_locked, attempts=attempts)


def _create_campaign(client, *, audience: str = "all", headers=SHOP_HEADERS) -> str:
    res = client.post(
        "/campaigns",
        json={"name": "Autumn sale", "message": "20% off everything this weekend", "audience": audience},
        headers=headers,
    )
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "draft"
    return res.json()["id"]


def _count(database, model, *criteria) -> int:
    with database.session() as db:
        return int(db.execute(select(func.count(model.id)).where(*criteria)).scalar_one())


def _campaign_status(database, campaign_id: str) -> str:
    with database.session() as db:
        return db.execute(select(Campaign.status).where(Campaign.id == campaign_id)).scalar_one()


def test_send_debits_once_and_queues_one_job_per_recipient(test_context, seed):
    client, services = test_context
    shop_id = seed.shop(credits=1000)
    seed.contacts(shop_id, 3)
    seed.contacts(shop_id, 2, consent="opted_out", prefix="+3070")

    campaign_id = _create_campaign(client)

    prepare_res = client.post(f"/campaigns/{campaign_id}/prepare", headers=SHOP_HEADERS)
    assert prepare_res.status_code == 200, prepare_res.text
    assert prepare_res.json() == {
        "campaign_id": campaign_id,
        "recipient_count": 3,
        "estimated_credits": 3,
        "available_credits": 1000,
        "can_send": True,
    }

    send_res = client.post(f"/campaigns/{campaign_id}/send", headers=SHOP_HEADERS)
    assert send_res.status_code == 200, send_res.text
    body = send_res.json()
    assert body["recipient_count"] == 3
    assert body["queued_jobs"] == 3
    assert body["status"] == "sending"

    balance_res = client.get("/billing/balance", headers=SHOP_HEADERS)
    assert balance_res.json()["credits"] == 997

    database = services.database
    debits = _count(
        database,
        WalletTransaction,
        WalletTransaction.shop_id == shop_id,
        WalletTransaction.ref == f"campaign:{campaign_id}",
    )
    assert debits == 1
    assert _count(database, CampaignRecipient, CampaignRecipient.campaign_id == campaign_id) == 3
    assert _count(database, QueueJob, QueueJob.group_key == f"campaign:{campaign_id}") == 3
    assert _campaign_status(database, campaign_id) == "sending"

    with database.session() as db:
        payloads = db.execute(
            select(QueueJob.payload_json).where(QueueJob.group_key == f"campaign:{campaign_id}")
        ).scalars().all()
    assert all(payload["skip_credit_check"] is True for payload in payloads)
    assert {payload["shop_id"] for payload in payloads} == {shop_id}


def test_send_with_empty_balance_is_rejected_without_side_effects(test_context, seed):
    client, services = test_context
    shop_id = seed.shop(credits=0)
    seed.contacts(shop_id, 3)
    campaign_id = _create_campaign(client)

    res = client.post(f"/campaigns/{campaign_id}/send", headers=SHOP_HEADERS)

    assert res.status_code == 400, res.text
    error = res.json()["error"]
    assert error["code"] == "insufficient_credits"
    assert error["details"]["required_credits"] == 3
    assert error["details"]["missing_credits"] == 3

    database = services.database
    assert _campaign_status(database, campaign_id) == "draft"
    assert _count(database, CampaignRecipient, CampaignRecipient.campaign_id == campaign_id) == 0
    assert _count(database, QueueJob) == 0
    assert _count(database, WalletTransaction, WalletTransaction.shop_id == shop_id) == 0
    assert client.get("/billing/balance", headers=SHOP_HEADERS).json()["credits"] == 0


def test_second_send_is_rejected_and_debits_nothing(test_context, seed):
    client, services = test_context
    shop_id = seed.shop(credits=10)
    seed.contacts(shop_id, 2)
    campaign_id = _create_campaign(client)

    first = client.post(f"/campaigns/{campaign_id}/send", headers=SHOP_HEADERS)
    second = client.post(f"/campaigns/{campaign_id}/send", headers=SHOP_HEADERS)

    assert first.status_code == 200, first.text
    assert second.status_code == 400
    assert second.json()["error"]["code"] == "invalid_state"
    assert client.get("/billing/balance", headers=SHOP_HEADERS).json()["credits"] == 8
    assert _count(services.database, QueueJob) == 2


def test_send_without_opted_in_contacts_is_rejected(test_context, seed):
    client, services = test_context
    shop_id = seed.shop(credits=10)
    seed.contacts(shop_id, 2, consent="unknown")
    campaign_id = _create_campaign(client)

    prepare_res = client.post(f"/campaigns/{campaign_id}/prepare", headers=SHOP_HEADERS)
    assert prepare_res.json()["can_send"] is False

    res = client.post(f"/campaigns/{campaign_id}/send", headers=SHOP_HEADERS)
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "validation_error"
    assert client.get("/billing/balance", headers=SHOP_HEADERS).json()["credits"] == 10
    assert _campaign_status(services.database, campaign_id) == "draft"


def test_prepare_never_debits(test_context, seed):
    client, _services = test_context
    shop_id = seed.shop(credits=2)
    seed.contacts(shop_id, 5)
    campaign_id = _create_campaign(client)

    res = client.post(f"/campaigns/{campaign_id}/prepare", headers=SHOP_HEADERS)

    assert res.status_code == 200
    assert res.json()["can_send"] is False
    assert res.json()["estimated_credits"] == 5
    assert client.get("/billing/balance", headers=SHOP_HEADERS).json()["credits"] == 2


def test_queue_failure_refunds_and_returns_campaign_to_draft(settings, services, seed):
    shop_id = seed.shop(credits=1000)
    seed.contacts(shop_id, 3)
    queue = UnavailableQueue(services.database)
    campaigns = CampaignService(services.database, services.credits, queue, settings)
    campaign = campaigns.create_campaign(shop_id, name="Flash", message="Flash sale now")

    with pytest.raises(QueueUnavailableError):
        campaigns.send(shop_id, campaign.id)

    database = services.database
    assert services.credits.check_available(shop_id).credits == 1000
    assert _campaign_status(database, campaign.id) == "draft"
    assert _count(database, CampaignRecipient, CampaignRecipient.campaign_id == campaign.id) == 0
    with database.session() as db:
        entries = dict(
            db.execute(
                select(WalletTransaction.ref, WalletTransaction.credits).where(
                    WalletTransaction.shop_id == shop_id,
                    WalletTransaction.ref.like(f"campaign:{campaign.id}%"),
                )
            ).all()
        )
        assert services.ledger.ledger_sum(db, shop_id) == 1000
    assert entries == {
        f"campaign:{campaign.id}": -3,
        f"campaign:{campaign.id}:rollback": 3,
    }

    # The draft can be sent again once the queue is back.
    result = services.campaigns.send(shop_id, campaign.id)
    assert result.queued_jobs == 3
    assert services.credits.check_available(shop_id).credits == 997


def _assert_rolled_back(services, shop_id: str, campaign_id: str) -> None:
    database = services.database
    assert services.credits.check_available(shop_id).credits == 1000
    assert _campaign_status(database, campaign_id) == "draft"
    assert _count(database, CampaignRecipient, CampaignRecipient.campaign_id == campaign_id) == 0
    assert _count(database, QueueJob) == 0
    with database.session() as db:
        refs = dict(
            db.execute(
                select(WalletTransaction.ref, WalletTransaction.credits).where(
                    WalletTransaction.shop_id == shop_id,
                    WalletTransaction.ref.like(f"campaign:{campaign_id}%"),
                )
            ).all()
        )
    assert refs == {f"campaign:{campaign_id}": -3, f"campaign:{campaign_id}:rollback": 3}


def test_locked_queue_database_refunds_and_returns_campaign_to_draft(settings, services, seed):
    shop_id = seed.shop(credits=1000)
    seed.contacts(shop_id, 3)
    locked = LockedDatabase(services.database.engine, retry_attempts=2, retry_base_delay_ms=0)
    campaigns = CampaignService(services.database, services.credits, DatabaseJobQueue(locked), settings)
    campaign = campaigns.create_campaign(shop_id, name="Locked", message="Flash sale now")

    with pytest.raises(QueueUnavailableError) as exc_info:
        campaigns.send(shop_id, campaign.id)

    assert "credits were refunded" in exc_info.value.message
    _assert_rolled_back(services, shop_id, campaign.id)


def test_busy_error_from_enqueue_still_releases_the_reservation(settings, services, seed):
    shop_id = seed.shop(credits=1000)
    seed.contacts(shop_id, 3)
    campaigns = CampaignService(services.database, services.credits, BusyQueue(services.database), settings)
    campaign = campaigns.create_campaign(shop_id, name="Busy", message="Flash sale now")

    with pytest.raises(QueueUnavailableError):
        campaigns.send(shop_id, campaign.id)

    _assert_rolled_back(services, shop_id, campaign.id)


def test_scheduled_campaign_is_sent_immediately(services, seed):
    shop_id = seed.shop(credits=10)
    seed.contacts(shop_id, 2)
    campaign = services.campaigns.create_campaign(
        shop_id,
        name="Next week",
        message="Coming soon",
        schedule_type="scheduled",
        schedule_at=datetime.now(timezone.utc) + timedelta(days=7),
    )

    result = services.campaigns.send(shop_id, campaign.id)

    assert result.status == "sending"
    assert result.queued_jobs == 2
    assert services.credits.check_available(shop_id).credits == 8


def test_concurrent_sends_of_one_campaign_debit_once(tmp_path):
    settings = Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'campaigns.db'}",
        queue_backoff_type="fixed",
        queue_backoff_delay_ms=0,
    )
    engine = build_engine(settings)
    Base.metadata.create_all(bind=engine)
    database = Database(engine, retry_attempts=10, retry_base_delay_ms=10)
    services = build_services(
        settings,
        database,
        sms_provider=StubSmsProvider(),
        payment_provider=StubPaymentProvider(),
    )

    def _create_shop(db):
        shop = Shop(shop_domain="race-store.myshopify.com", credits=0, currency="EUR")
        db.add(shop)
        db.flush()
        for index in range(3):
            db.add(Contact(shop_id=shop.id, phone_e164=f"+30690000000{index}", sms_consent="opted_in"))
        db.flush()
        return shop.id

    shop_id = database.run_in_transaction(_create_shop)
    services.credits.credit(shop_id, 10, ref="seed:race", entry_type="adjustment")
    campaign = services.campaigns.create_campaign(shop_id, name="Race", message="Only once")

    barrier = threading.Barrier(4)
    outcomes: list[str] = []
    lock = threading.Lock()

    def _send() -> None:
        barrier.wait()
        try:
            services.campaigns.send(shop_id, campaign.id)
            outcome = "ok"
        except InvalidStateError:
            outcome = "invalid_state"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=_send) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    try:
        assert sorted(outcomes) == ["invalid_state", "invalid_state", "invalid_state", "ok"]
        debits = _count(
            database,
            WalletTransaction,
            WalletTransaction.shop_id == shop_id,
            WalletTransaction.ref == f"campaign:{campaign.id}",
        )
        assert debits == 1
        assert _count(database, CampaignRecipient, CampaignRecipient.campaign_id == campaign.id) == 3
        assert _count(database, QueueJob, QueueJob.group_key == f"campaign:{campaign.id}") == 3
        assert services.credits.check_available(shop_id).credits == 7
        with database.session() as db:
            assert services.ledger.ledger_sum(db, shop_id) == 7
    finally:
        engine.dispose()


def test_audience_filters_by_gender_and_segment(services, seed):
    shop_id = seed.shop(credits=100)
    men = seed.contacts(shop_id, 2, gender="male", prefix="+3071")
    seed.contacts(shop_id, 3, gender="female", prefix="+3072")
    segment_id = seed.segment(shop_id, "VIP", men[:1])

    men_campaign = services.campaigns.create_campaign(shop_id, name="Men", message="Hi", audience="men")
    segment_campaign = services.campaigns.create_campaign(
        shop_id, name="VIP", message="Hi", audience=f"segment:{segment_id}"
    )

    assert services.campaigns.prepare(shop_id, men_campaign.id).recipient_count == 2
    assert services.campaigns.prepare(shop_id, segment_campaign.id).recipient_count == 1


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, "all"),
        ("ALL", "all"),
        ("Women", "women"),
        ("segment:AbC123", "segment:AbC123"),
    ],
)
def test_normalize_audience(raw, expected):
    assert normalize_audience(raw) == expected


def test_unknown_audience_is_rejected(test_context, seed):
    client, _services = test_context
    seed.shop(credits=10)

    res = client.post(
        "/campaigns",
        json={"name": "Bad", "message": "Hello", "audience": "vip-customers"},
        headers=SHOP_HEADERS,
    )

    assert res.status_code == 400
    assert res.json()["error"]["code"] == "validation_error"


def test_campaigns_are_scoped_to_their_shop(test_context, seed):
    client, _services = test_context
    seed.shop(credits=10)
    other_headers = {"X-Shopify-Shop-Domain": "other-store.myshopify.com"}
    campaign_id = _create_campaign(client)

    assert client.get(f"/campaigns/{campaign_id}", headers=other_headers).status_code == 404
    assert client.post(f"/campaigns/{campaign_id}/send", headers=other_headers).status_code == 404
    listing = client.get("/campaigns", headers=other_headers).json()
    assert listing["items"] == []
    assert client.get("/campaigns", headers=SHOP_HEADERS).json()["pagination"]["total"] == 1


def test_requests_without_shop_identity_are_rejected(test_context):
    client, _services = test_context

    res = client.get("/billing/balance")

    assert res.status_code == 401
    assert res.json()["error"]["code"] == "unauthorized"
