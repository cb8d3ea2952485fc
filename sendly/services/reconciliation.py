import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import exists, literal, select

from sendly.core.observability import log_event
from sendly.db.session import Database
from sendly.models.campaign import Campaign
from sendly.models.queue_job import QueueJob
from sendly.models.wallet import WalletTransaction
from sendly.services.campaign_service import CampaignService, campaign_ledger_refs
from sendly.services.ledger_store import LedgerStore

logger = logging.getLogger("sendly.reconciliation")


@dataclass
class SweepSummary:
    inspected: int = 0
    refunded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class OrphanDebitSweeper:
    """Refunds campaign debits whose deliveries were never queued.

    A debit is orphaned when the send transaction committed but no job was
    ever created and the compensating rollback did not run (for example the
    process died in between). Candidates are draft campaigns still carrying
    a net campaign debit, and campaigns stuck in `sending` past the
    staleness threshold with no delivery job at all.
    """

    def __init__(
        self,
        database: Database,
        campaigns: CampaignService,
        ledger: LedgerStore,
        *,
        stale_after_minutes: int = 5,
    ):
        self.database = database
        self.campaigns = campaigns
        self.ledger = ledger
        self.stale_after = timedelta(minutes=stale_after_minutes)

    def _candidates(self) -> list[tuple[str, str]]:
        cutoff = datetime.now(timezone.utc) - self.stale_after
        has_jobs = exists(
            select(QueueJob.id).where(QueueJob.group_key == literal("campaign:") + Campaign.id)
        )
        has_debit = exists(
            select(WalletTransaction.id).where(
                WalletTransaction.shop_id == Campaign.shop_id,
                WalletTransaction.ref == literal("campaign:") + Campaign.id,
            )
        )
        with self.database.session() as db:
            stale_sending = db.execute(
                select(Campaign.id, Campaign.shop_id).where(
                    Campaign.status == "sending",
                    Campaign.send_started_at < cutoff,
                    ~has_jobs,
                )
            ).all()
            draft_with_debit = db.execute(
                select(Campaign.id, Campaign.shop_id).where(
                    Campaign.status == "draft",
                    has_debit,
                )
            ).all()
        return [(row[0], row[1]) for row in [*stale_sending, *draft_with_debit]]

    def sweep(self) -> SweepSummary:
        summary = SweepSummary()
        for campaign_id, shop_id in self._candidates():
            summary.inspected += 1
            with self.database.session() as db:
                outstanding = -self.ledger.net_for_refs(db, shop_id, campaign_ledger_refs(campaign_id))
            if outstanding <= 0:
                summary.skipped.append(campaign_id)
                continue

            released = self.campaigns.release_reservation(shop_id, campaign_id, ref_suffix="orphan_refund")
            if not released:
                summary.skipped.append(campaign_id)
                continue
            summary.refunded.append(campaign_id)
            log_event(
                logger,
                "reconciliation.orphan_debit.refunded",
                level=logging.WARNING,
                shop_id=shop_id,
                campaign_id=campaign_id,
                credits=outstanding,
            )
        return summary
