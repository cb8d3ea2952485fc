import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from sendly.core.errors import ProviderError
from sendly.core.observability import log_event
from sendly.db.session import Database
from sendly.models.campaign import Campaign, CampaignMetrics, CampaignRecipient
from sendly.models.message_log import MessageLog
from sendly.services.messaging_provider import SmsProvider

logger = logging.getLogger("sendly.delivery")

_DELIVERED = {"delivered", "delivrd"}
_FAILED = {"failed", "failure", "undelivered", "undeliv", "rejected", "expired"}
_IN_TRANSIT = {"sent", "queued", "accepted", "enroute", "buffered"}


def map_provider_status(raw_status: str | None) -> str:
    """Collapse a Mitto delivery status into sent / delivered / failed."""
    if not raw_status:
        return "sent"
    status = str(raw_status).strip().lower()
    if status in _DELIVERED:
        return "delivered"
    if status in _FAILED:
        return "failed"
    if status not in _IN_TRANSIT:
        log_event(logger, "delivery.status.unknown", level=logging.WARNING, raw_status=raw_status)
    return "sent"


@dataclass(frozen=True)
class DeliveryReportResult:
    outcome: str
    provider_message_id: str | None = None
    campaign_id: str | None = None
    status: str | None = None


@dataclass
class StatusPollSummary:
    checked: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryReconciler:
    """Applies delivery reports to message logs, recipients and campaign metrics.

    Never touches the ledger: credits for campaign sends were settled when the
    send was reserved.
    """

    def __init__(self, database: Database):
        self.database = database

    def apply_delivery_report(self, payload: dict[str, Any]) -> DeliveryReportResult:
        message_id = payload.get("message_id") or payload.get("messageId") or payload.get("id")
        raw_status = payload.get("status") or payload.get("dlr_status") or payload.get("deliveryStatus")
        if not message_id:
            log_event(logger, "delivery.report.ignored", level=logging.WARNING, reason="missing_message_id")
            return DeliveryReportResult(outcome="ignored")

        message_id = str(message_id)
        internal_status = map_provider_status(raw_status)

        def _apply(db: Session) -> DeliveryReportResult:
            log_values: dict[str, Any] = {"delivery_status": raw_status}
            if internal_status in {"delivered", "failed"}:
                log_values["status"] = internal_status
            logs_updated = db.execute(
                update(MessageLog)
                .where(MessageLog.provider_message_id == message_id)
                .values(**log_values)
                .execution_options(synchronize_session=False)
            ).rowcount

            recipient = db.execute(
                select(CampaignRecipient).where(CampaignRecipient.provider_message_id == message_id)
            ).scalar_one_or_none()
            if recipient is None:
                outcome = "updated" if logs_updated else "ignored"
                return DeliveryReportResult(outcome=outcome, provider_message_id=message_id, status=internal_status)

            values: dict[str, Any] = {"delivery_status": raw_status}
            metric_column = None
            if internal_status == "delivered":
                values.update({"status": "delivered", "delivered_at": _utcnow()})
                metric_column = CampaignMetrics.total_delivered
            elif internal_status == "failed":
                values.update({"status": "failed", "error": f"Delivery failed: {raw_status}"})
                metric_column = CampaignMetrics.total_failed

            stmt = update(CampaignRecipient).where(CampaignRecipient.id == recipient.id)
            if metric_column is not None:
                # Only a real transition counts, so replayed reports do not double count.
                stmt = stmt.where(CampaignRecipient.status.in_(["pending", "sent"]))
            transitioned = db.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            ).rowcount

            if metric_column is not None and transitioned:
                db.execute(
                    update(CampaignMetrics)
                    .where(CampaignMetrics.campaign_id == recipient.campaign_id)
                    .values({metric_column: metric_column + 1})
                    .execution_options(synchronize_session=False)
                )
            elif metric_column is not None:
                # Status already terminal; keep the raw provider value only.
                db.execute(
                    update(CampaignRecipient)
                    .where(CampaignRecipient.id == recipient.id)
                    .values(delivery_status=raw_status)
                    .execution_options(synchronize_session=False)
                )

            return DeliveryReportResult(
                outcome="updated" if transitioned or metric_column is None else "unchanged",
                provider_message_id=message_id,
                campaign_id=recipient.campaign_id,
                status=internal_status,
            )

        result = self.database.run_in_transaction(_apply)
        log_event(
            logger,
            "delivery.report.applied",
            provider_message_id=message_id,
            raw_status=raw_status,
            status=internal_status,
            outcome=result.outcome,
            campaign_id=result.campaign_id,
        )
        if result.campaign_id:
            self.sync_campaign_status(result.campaign_id)
        return result

    def sync_campaign_status(self, campaign_id: str) -> str | None:
        """Move a sending campaign to sent/failed once no recipient is pending."""

        def _sync(db: Session) -> str | None:
            rows = db.execute(
                select(CampaignRecipient.status, func.count(CampaignRecipient.id))
                .where(CampaignRecipient.campaign_id == campaign_id)
                .group_by(CampaignRecipient.status)
            ).all()
            counts = {status: int(count) for status, count in rows}
            total = sum(counts.values())
            if total == 0 or counts.get("pending", 0) > 0:
                return None

            target = "failed" if counts.get("failed", 0) == total else "sent"
            changed = db.execute(
                update(Campaign)
                .where(Campaign.id == campaign_id, Campaign.status == "sending")
                .values(status=target, completed_at=_utcnow())
                .execution_options(synchronize_session=False)
            ).rowcount
            return target if changed else None

        target = self.database.run_in_transaction(_sync)
        if target:
            log_event(logger, "campaign.status.finalized", campaign_id=campaign_id, status=target)
        return target

    def refresh_active_campaigns(self, limit: int = 200) -> int:
        with self.database.session() as db:
            campaign_ids = db.execute(
                select(Campaign.id)
                .where(Campaign.status == "sending")
                .order_by(Campaign.send_started_at.asc())
                .limit(limit)
            ).scalars().all()

        finalized = 0
        for campaign_id in campaign_ids:
            if self.sync_campaign_status(campaign_id):
                finalized += 1
        return finalized

    def poll_provider_statuses(
        self,
        provider: SmsProvider,
        *,
        older_than_minutes: int = 15,
        limit: int = 100,
    ) -> StatusPollSummary:
        """Ask the provider about recipients still `sent` after the threshold.

        Covers delivery reports that never arrived. Each answer goes through
        `apply_delivery_report`, so a late callback and a poll for the same
        message count once.
        """
        cutoff = _utcnow() - timedelta(minutes=older_than_minutes)
        with self.database.session() as db:
            message_ids = db.execute(
                select(CampaignRecipient.provider_message_id)
                .where(
                    CampaignRecipient.status == "sent",
                    CampaignRecipient.provider_message_id.is_not(None),
                    CampaignRecipient.sent_at < cutoff,
                )
                .order_by(CampaignRecipient.sent_at.asc())
                .limit(limit)
            ).scalars().all()

        summary = StatusPollSummary()
        for message_id in message_ids:
            summary.checked += 1
            try:
                status = provider.get_message_status(message_id)
            except ProviderError as exc:
                log_event(
                    logger,
                    "delivery.poll.failed",
                    level=logging.WARNING,
                    provider=provider.name,
                    provider_message_id=message_id,
                    error=exc.message,
                )
                summary.errors.append(message_id)
                continue
            result = self.apply_delivery_report(
                {"message_id": message_id, "status": status.delivery_status}
            )
            if result.outcome == "updated" and result.status != "sent":
                summary.updated += 1

        if summary.checked:
            log_event(
                logger,
                "delivery.poll.completed",
                provider=provider.name,
                checked=summary.checked,
                updated=summary.updated,
                failed=len(summary.errors),
            )
        return summary
