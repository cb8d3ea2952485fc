import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from sendly.core.errors import InsufficientCreditsError, ProviderError
from sendly.core.observability import log_event
from sendly.db.session import Database
from sendly.models.campaign import CampaignMetrics, CampaignRecipient
from sendly.models.message_log import MessageLog
from sendly.services.credit_service import CreditService
from sendly.services.delivery_reconciler import DeliveryReconciler
from sendly.services.job_queue import ClaimedJob
from sendly.services.messaging_provider import SmsProvider, SmsSendRequest, SmsSendResult

logger = logging.getLogger("sendly.delivery")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sms_ref(job_key: str) -> str:
    return f"sms:{job_key}"


class DeliveryWorker:
    """Handler for `sms.deliver` jobs.

    Campaign jobs arrive with `skip_credit_check=True` because the send was
    paid for in bulk. Anything else pays one credit per job, charged once
    even if the job is redelivered. Provider failures on the last attempt
    are recorded and the job completes; earlier failures are re-raised so
    the queue reschedules them.
    """

    def __init__(
        self,
        database: Database,
        credits: CreditService,
        sms_provider: SmsProvider,
        reconciler: DeliveryReconciler,
    ):
        self.database = database
        self.credits = credits
        self.sms_provider = sms_provider
        self.reconciler = reconciler

    def handle(self, job: ClaimedJob) -> None:
        if job.payload.get("recipient_id"):
            self._deliver_campaign_recipient(job)
        else:
            self._deliver_direct(job)

    # -- charging --------------------------------------------------------

    def _charge_if_required(self, job: ClaimedJob) -> bool:
        payload = job.payload
        if payload.get("skip_credit_check") is True:
            return True

        shop_id = payload["shop_id"]
        ref = sms_ref(job.job_key)

        def _charge(db: Session) -> bool:
            if self.credits.ledger.has_entry(db, shop_id, ref):
                return False
            self.credits.validate_and_consume(
                shop_id,
                1,
                ref=ref,
                meta={"job_key": job.job_key, "campaign_id": payload.get("campaign_id")},
                db=db,
            )
            return True

        try:
            charged = self.database.run_in_transaction(_charge)
        except InsufficientCreditsError as exc:
            self._log_message(
                payload,
                status="failed",
                error=exc.message,
                recipient_id=payload.get("recipient_id"),
            )
            log_event(
                logger,
                "delivery.skipped.insufficient_credits",
                level=logging.WARNING,
                job_key=job.job_key,
                shop_id=shop_id,
            )
            return False

        if not charged:
            log_event(logger, "delivery.charge.already_applied", job_key=job.job_key, shop_id=shop_id)
        return True

    # -- provider call -----------------------------------------------------

    def _send(self, job: ClaimedJob) -> SmsSendResult:
        payload = job.payload
        return self.sms_provider.send(
            SmsSendRequest(
                to=payload["phone_e164"],
                text=payload["message"],
                sender=payload.get("sender"),
                reference=job.job_key,
            )
        )

    def _log_message(
        self,
        payload: dict[str, Any],
        *,
        status: str,
        provider_message_id: str | None = None,
        error: str | None = None,
        recipient_id: str | None = None,
        db: Session | None = None,
    ) -> None:
        entry = MessageLog(
            shop_id=payload["shop_id"],
            campaign_id=payload.get("campaign_id"),
            recipient_id=recipient_id,
            phone_e164=payload["phone_e164"],
            direction="outbound",
            provider=self.sms_provider.name,
            provider_message_id=provider_message_id,
            status=status,
            error=error[:500] if error else None,
            payload_json={"message": payload["message"], "sender": payload.get("sender")},
        )
        if db is not None:
            db.add(entry)
            return

        def _insert(session: Session) -> None:
            session.add(entry)

        self.database.run_in_transaction(_insert)

    # -- campaign recipients ---------------------------------------------------

    def _deliver_campaign_recipient(self, job: ClaimedJob) -> None:
        payload = job.payload
        recipient_id = payload["recipient_id"]
        campaign_id = payload["campaign_id"]

        with self.database.session() as db:
            status = db.execute(
                select(CampaignRecipient.status).where(
                    CampaignRecipient.id == recipient_id,
                    CampaignRecipient.shop_id == payload["shop_id"],
                )
            ).scalar_one_or_none()

        if status is None:
            log_event(logger, "delivery.recipient.missing", level=logging.WARNING, job_key=job.job_key)
            return
        if status != "pending":
            # Redelivered job; the first attempt already settled this recipient.
            log_event(logger, "delivery.recipient.already_processed", job_key=job.job_key, status=status)
            return

        if not self._charge_if_required(job):
            self._mark_recipient_failed(payload, "Insufficient credits", log_attempt=False)
            self.reconciler.sync_campaign_status(campaign_id)
            return

        try:
            result = self._send(job)
        except ProviderError as exc:
            final = job.is_final_attempt or not exc.retryable
            if not final:
                self._log_message(payload, status="failed", error=exc.message, recipient_id=recipient_id)
                raise
            self._mark_recipient_failed(payload, exc.message)
            log_event(
                logger,
                "delivery.recipient.failed",
                level=logging.WARNING,
                job_key=job.job_key,
                campaign_id=campaign_id,
                attempt=job.attempt,
                error=exc.message,
            )
            self.reconciler.sync_campaign_status(campaign_id)
            return

        self._mark_recipient_sent(payload, result)
        log_event(
            logger,
            "delivery.recipient.sent",
            job_key=job.job_key,
            campaign_id=campaign_id,
            provider_message_id=result.provider_message_id,
        )
        self.reconciler.sync_campaign_status(campaign_id)

    def _mark_recipient_sent(self, payload: dict[str, Any], result: SmsSendResult) -> None:
        recipient_id = payload["recipient_id"]

        def _apply(db: Session) -> None:
            transitioned = db.execute(
                update(CampaignRecipient)
                .where(CampaignRecipient.id == recipient_id, CampaignRecipient.status == "pending")
                .values(
                    status="sent",
                    provider_message_id=result.provider_message_id,
                    sent_at=_utcnow(),
                    error=None,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if transitioned:
                db.execute(
                    update(CampaignMetrics)
                    .where(CampaignMetrics.campaign_id == payload["campaign_id"])
                    .values(total_sent=CampaignMetrics.total_sent + 1)
                    .execution_options(synchronize_session=False)
                )
            self._log_message(
                payload,
                status="sent",
                provider_message_id=result.provider_message_id,
                recipient_id=recipient_id,
                db=db,
            )

        self.database.run_in_transaction(_apply)

    def _mark_recipient_failed(self, payload: dict[str, Any], error: str, *, log_attempt: bool = True) -> None:
        recipient_id = payload["recipient_id"]

        def _apply(db: Session) -> None:
            transitioned = db.execute(
                update(CampaignRecipient)
                .where(CampaignRecipient.id == recipient_id, CampaignRecipient.status == "pending")
                .values(status="failed", error=error[:500])
                .execution_options(synchronize_session=False)
            ).rowcount
            if transitioned:
                db.execute(
                    update(CampaignMetrics)
                    .where(CampaignMetrics.campaign_id == payload["campaign_id"])
                    .values(total_failed=CampaignMetrics.total_failed + 1)
                    .execution_options(synchronize_session=False)
                )
            if log_attempt:
                self._log_message(payload, status="failed", error=error, recipient_id=recipient_id, db=db)

        self.database.run_in_transaction(_apply)

    # -- transactional sends ---------------------------------------------------

    def _deliver_direct(self, job: ClaimedJob) -> None:
        payload = job.payload
        if not self._charge_if_required(job):
            return

        try:
            result = self._send(job)
        except ProviderError as exc:
            self._log_message(payload, status="failed", error=exc.message)
            if exc.retryable and not job.is_final_attempt:
                raise
            # Pay-for-attempt: the credit charged above is kept.
            log_event(
                logger,
                "delivery.direct.failed",
                level=logging.WARNING,
                job_key=job.job_key,
                shop_id=payload["shop_id"],
                error=exc.message,
            )
            return

        self._log_message(payload, status="sent", provider_message_id=result.provider_message_id)
        log_event(
            logger,
            "delivery.direct.sent",
            job_key=job.job_key,
            shop_id=payload["shop_id"],
            provider_message_id=result.provider_message_id,
        )
