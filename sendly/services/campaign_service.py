import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sendly.core.config import Settings
from sendly.core.errors import (
    InvalidStateError,
    NotFoundError,
    QueueUnavailableError,
    TransientError,
    ValidationError,
)
from sendly.core.observability import log_event
from sendly.db.session import Database
from sendly.models.campaign import Campaign, CampaignMetrics, CampaignRecipient
from sendly.models.contact import Contact, Segment, SegmentMembership
from sendly.services.credit_service import CreditService
from sendly.services.job_queue import SMS_DELIVER_JOB, DatabaseJobQueue, JobSpec
from sendly.services.ledger_store import LedgerStore

logger = logging.getLogger("sendly.campaigns")

SCHEDULE_TYPES = {"immediate", "scheduled", "recurring"}
_GENDER_AUDIENCES = {
    "men": "male",
    "male": "male",
    "women": "female",
    "female": "female",
}


def campaign_ref(campaign_id: str) -> str:
    return f"campaign:{campaign_id}"


def campaign_group_key(campaign_id: str) -> str:
    return f"campaign:{campaign_id}"


def campaign_ledger_refs(campaign_id: str) -> list[str]:
    base = campaign_ref(campaign_id)
    return [base, f"{base}:rollback", f"{base}:orphan_refund"]


@dataclass(frozen=True)
class ResolvedRecipient:
    contact_id: str
    phone_e164: str


@dataclass(frozen=True)
class PrepareResult:
    campaign_id: str
    recipient_count: int
    estimated_credits: int
    available_credits: int
    can_send: bool


@dataclass(frozen=True)
class SendResult:
    campaign_id: str
    recipient_count: int
    status: str
    queued_jobs: int


@dataclass(frozen=True)
class _Reservation:
    campaign_id: str
    message: str
    recipients: list[tuple[str, str]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_audience(audience: str | None) -> str:
    value = (audience or "all").strip().lower()
    if value == "all" or value in _GENDER_AUDIENCES:
        return value
    if value.startswith("segment:") and value.split(":", 1)[1].strip():
        # Segment ids are case sensitive.
        return "segment:" + audience.strip().split(":", 1)[1].strip()
    raise ValidationError(
        f"Unsupported audience '{audience}'",
        details={"allowed": ["all", "men", "women", "segment:<id>"]},
    )


class CampaignService:
    def __init__(
        self,
        database: Database,
        credits: CreditService,
        queue: DatabaseJobQueue,
        settings: Settings,
        ledger: LedgerStore | None = None,
    ):
        self.database = database
        self.credits = credits
        self.queue = queue
        self.settings = settings
        self.ledger = ledger or credits.ledger

    # -- lookups ---------------------------------------------------------

    def _campaign_or_404(self, db: Session, shop_id: str, campaign_id: str, *, for_update: bool = False) -> Campaign:
        stmt = select(Campaign).where(Campaign.id == campaign_id, Campaign.shop_id == shop_id)
        if for_update:
            stmt = stmt.with_for_update()
        campaign = db.execute(stmt).scalar_one_or_none()
        if not campaign:
            raise NotFoundError("Campaign not found")
        return campaign

    def get_campaign(self, shop_id: str, campaign_id: str) -> Campaign:
        with self.database.session() as db:
            return self._campaign_or_404(db, shop_id, campaign_id)

    def list_campaigns(
        self,
        shop_id: str,
        *,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[int, list[Campaign]]:
        with self.database.session() as db:
            count_stmt = select(func.count(Campaign.id)).where(Campaign.shop_id == shop_id)
            stmt = select(Campaign).where(Campaign.shop_id == shop_id)
            if status:
                count_stmt = count_stmt.where(Campaign.status == status)
                stmt = stmt.where(Campaign.status == status)
            total = int(db.execute(count_stmt).scalar_one())
            rows = db.execute(
                stmt.order_by(Campaign.created_at.desc(), Campaign.id.desc()).offset(offset).limit(limit)
            ).scalars().all()
        return total, list(rows)

    def create_campaign(
        self,
        shop_id: str,
        *,
        name: str,
        message: str,
        audience: str | None = "all",
        schedule_type: str = "immediate",
        schedule_at: datetime | None = None,
        recurring_days: int | None = None,
    ) -> Campaign:
        """Store a new draft campaign.

        `schedule_type`, `schedule_at` and `recurring_days` are validated and
        stored for display only. No scheduler reads them; `send` always
        dispatches immediately.
        """
        if not name or not name.strip():
            raise ValidationError("Campaign name is required")
        if not message or not message.strip():
            raise ValidationError("Campaign message is required")
        max_chars = self.settings.campaign_message_max_chars
        if len(message) > max_chars:
            raise ValidationError(f"Message is too long (max {max_chars} characters)")
        if schedule_type not in SCHEDULE_TYPES:
            raise ValidationError("Invalid schedule type")
        if schedule_type == "scheduled" and not schedule_at:
            raise ValidationError("Schedule date is required for scheduled campaigns")
        if schedule_type == "recurring" and not recurring_days:
            raise ValidationError("Recurring days is required for recurring campaigns")
        normalized_audience = normalize_audience(audience)

        def _create(db: Session) -> Campaign:
            if normalized_audience.startswith("segment:"):
                self._segment_or_404(db, shop_id, normalized_audience.split(":", 1)[1])
            campaign = Campaign(
                shop_id=shop_id,
                name=name.strip(),
                message=message,
                audience=normalized_audience,
                schedule_type=schedule_type,
                schedule_at=schedule_at,
                recurring_days=recurring_days,
                status="draft",
            )
            db.add(campaign)
            db.flush()
            db.add(CampaignMetrics(campaign_id=campaign.id))
            db.flush()
            db.refresh(campaign)
            return campaign

        campaign = self.database.run_in_transaction(_create)
        log_event(logger, "campaign.created", shop_id=shop_id, campaign_id=campaign.id)
        return campaign

    def _segment_or_404(self, db: Session, shop_id: str, segment_id: str) -> Segment:
        segment = db.execute(
            select(Segment).where(Segment.id == segment_id, Segment.shop_id == shop_id)
        ).scalar_one_or_none()
        if not segment:
            raise NotFoundError("Segment not found")
        return segment

    # -- audience ----------------------------------------------------------

    def resolve_recipients(self, db: Session, shop_id: str, audience: str) -> list[ResolvedRecipient]:
        normalized = normalize_audience(audience)
        stmt = select(Contact.id, Contact.phone_e164).where(
            Contact.shop_id == shop_id,
            Contact.sms_consent == "opted_in",
        )
        if normalized in _GENDER_AUDIENCES:
            stmt = stmt.where(Contact.gender == _GENDER_AUDIENCES[normalized])
        elif normalized.startswith("segment:"):
            segment = self._segment_or_404(db, shop_id, normalized.split(":", 1)[1])
            stmt = stmt.join(SegmentMembership, SegmentMembership.contact_id == Contact.id).where(
                SegmentMembership.segment_id == segment.id
            )

        rows = db.execute(stmt.order_by(Contact.created_at.asc(), Contact.id.asc())).all()
        return [ResolvedRecipient(contact_id=contact_id, phone_e164=phone) for contact_id, phone in rows]

    # -- prepare / send ------------------------------------------------------

    def prepare(self, shop_id: str, campaign_id: str) -> PrepareResult:
        with self.database.session() as db:
            campaign = self._campaign_or_404(db, shop_id, campaign_id)
            if campaign.status != "draft":
                raise InvalidStateError(f"Campaign cannot be prepared (status: {campaign.status})")
            recipients = self.resolve_recipients(db, shop_id, campaign.audience)
            check = self.credits.check_available(shop_id, required=len(recipients), db=db)

        return PrepareResult(
            campaign_id=campaign_id,
            recipient_count=len(recipients),
            estimated_credits=len(recipients),
            available_credits=check.credits,
            can_send=bool(recipients) and check.can_send,
        )

    def send(self, shop_id: str, campaign_id: str) -> SendResult:
        """Debit once for the whole audience, create recipients, then enqueue one job each.

        Scheduled and recurring campaigns are sent right away like any other.
        """

        def _reserve(db: Session) -> _Reservation:
            campaign = self._campaign_or_404(db, shop_id, campaign_id, for_update=True)
            if campaign.status != "draft":
                raise InvalidStateError(f"Campaign cannot be sent (status: {campaign.status})")

            recipients = self.resolve_recipients(db, shop_id, campaign.audience)
            if not recipients:
                raise ValidationError("No recipients found for this campaign audience")

            claimed = db.execute(
                update(Campaign)
                .where(
                    Campaign.id == campaign_id,
                    Campaign.shop_id == shop_id,
                    Campaign.status == "draft",
                )
                .values(status="sending", send_started_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise InvalidStateError("Campaign is already being sent")

            self.credits.validate_and_consume(
                shop_id,
                len(recipients),
                ref=campaign_ref(campaign_id),
                meta={"campaign_id": campaign_id, "recipient_count": len(recipients)},
                db=db,
            )

            rows = [
                CampaignRecipient(
                    campaign_id=campaign_id,
                    shop_id=shop_id,
                    contact_id=recipient.contact_id,
                    phone_e164=recipient.phone_e164,
                    status="pending",
                )
                for recipient in recipients
            ]
            db.add_all(rows)
            self._ensure_metrics(db, campaign_id)
            db.flush()
            return _Reservation(
                campaign_id=campaign_id,
                message=campaign.message,
                recipients=[(row.id, row.phone_e164) for row in rows],
            )

        reservation = self.database.run_in_transaction(_reserve)
        recipient_count = len(reservation.recipients)
        log_event(
            logger,
            "campaign.send.reserved",
            shop_id=shop_id,
            campaign_id=campaign_id,
            recipient_count=recipient_count,
        )

        specs = [
            JobSpec(
                job_type=SMS_DELIVER_JOB,
                job_key=f"campaign:{campaign_id}:recipient:{recipient_id}",
                group_key=campaign_group_key(campaign_id),
                payload={
                    "campaign_id": campaign_id,
                    "shop_id": shop_id,
                    "recipient_id": recipient_id,
                    "phone_e164": phone,
                    "message": reservation.message,
                    "sender": self.settings.mitto_sender,
                    "skip_credit_check": True,
                },
            )
            for recipient_id, phone in reservation.recipients
        ]
        try:
            queued = self.queue.enqueue_many(specs)
        except (QueueUnavailableError, TransientError, SQLAlchemyError) as exc:
            released = self.release_reservation(shop_id, campaign_id, ref_suffix="rollback")
            log_event(
                logger,
                "campaign.send.rollback",
                level=logging.ERROR,
                shop_id=shop_id,
                campaign_id=campaign_id,
                recipient_count=recipient_count,
                refunded=released,
                error=str(exc),
            )
            if released:
                raise QueueUnavailableError(
                    "Could not queue campaign messages; credits were refunded and the campaign is back in draft"
                ) from exc
            raise QueueUnavailableError(
                "Could not queue campaign messages; the send will be reconciled automatically"
            ) from exc

        log_event(
            logger,
            "campaign.send.queued",
            shop_id=shop_id,
            campaign_id=campaign_id,
            recipient_count=recipient_count,
            queued_jobs=queued,
        )
        return SendResult(
            campaign_id=campaign_id,
            recipient_count=recipient_count,
            status="sending",
            queued_jobs=queued,
        )

    def _ensure_metrics(self, db: Session, campaign_id: str) -> None:
        exists = db.execute(
            select(CampaignMetrics.id).where(CampaignMetrics.campaign_id == campaign_id)
        ).scalar_one_or_none()
        if not exists:
            db.add(CampaignMetrics(campaign_id=campaign_id))

    def release_reservation(self, shop_id: str, campaign_id: str, *, ref_suffix: str) -> bool:
        """Undo a send that never reached the queue.

        Refunds whatever the campaign's ledger entries still hold, drops the
        pending recipients and returns the campaign to draft. Refused once any
        delivery job exists or any recipient has left `pending`.
        """

        def _release(db: Session) -> int | None:
            campaign = self._campaign_or_404(db, shop_id, campaign_id, for_update=True)
            if campaign.status not in {"draft", "sending"}:
                return None
            if self.queue.count_for_group(db, campaign_group_key(campaign_id)) > 0:
                return None
            progressed = db.execute(
                select(func.count(CampaignRecipient.id)).where(
                    CampaignRecipient.campaign_id == campaign_id,
                    CampaignRecipient.status != "pending",
                )
            ).scalar_one()
            if progressed:
                return None

            outstanding = -self.ledger.net_for_refs(db, shop_id, campaign_ledger_refs(campaign_id))
            if outstanding > 0:
                self.credits.refund(
                    shop_id,
                    outstanding,
                    ref=f"{campaign_ref(campaign_id)}:{ref_suffix}",
                    meta={"campaign_id": campaign_id, "reason": ref_suffix},
                    db=db,
                )
            db.execute(
                delete(CampaignRecipient)
                .where(CampaignRecipient.campaign_id == campaign_id)
                .execution_options(synchronize_session=False)
            )
            db.execute(
                update(Campaign)
                .where(Campaign.id == campaign_id)
                .values(status="draft", send_started_at=None)
                .execution_options(synchronize_session=False)
            )
            return outstanding

        refunded = self.database.run_in_transaction(_release)
        return refunded is not None

    # -- read models -----------------------------------------------------------

    def get_metrics(self, shop_id: str, campaign_id: str) -> dict:
        with self.database.session() as db:
            campaign = self._campaign_or_404(db, shop_id, campaign_id)
            metrics = db.execute(
                select(CampaignMetrics).where(CampaignMetrics.campaign_id == campaign_id)
            ).scalar_one_or_none()
            status_rows = db.execute(
                select(CampaignRecipient.status, func.count(CampaignRecipient.id))
                .where(CampaignRecipient.campaign_id == campaign_id)
                .group_by(CampaignRecipient.status)
            ).all()

        by_status = {status: int(count) for status, count in status_rows}
        return {
            "campaign_id": campaign.id,
            "status": campaign.status,
            "recipient_count": sum(by_status.values()),
            "recipients_by_status": by_status,
            "total_sent": metrics.total_sent if metrics else 0,
            "total_delivered": metrics.total_delivered if metrics else 0,
            "total_failed": metrics.total_failed if metrics else 0,
        }
