from dataclasses import dataclass

from sendly.core.config import Settings
from sendly.db.session import Database
from sendly.services.billing_service import BillingService
from sendly.services.campaign_service import CampaignService
from sendly.services.credit_service import CreditService
from sendly.services.delivery_reconciler import DeliveryReconciler
from sendly.services.delivery_worker import DeliveryWorker
from sendly.services.job_queue import SMS_DELIVER_JOB, DatabaseJobQueue, JobWorker
from sendly.services.ledger_store import LedgerStore
from sendly.services.message_service import MessageService
from sendly.services.messaging_provider import SmsProvider, build_sms_provider
from sendly.services.payment_provider import PaymentProvider, build_payment_provider
from sendly.services.payment_reconciler import PaymentReconciler
from sendly.services.reconciliation import OrphanDebitSweeper


@dataclass
class ServiceContainer:
    settings: Settings
    database: Database
    ledger: LedgerStore
    credits: CreditService
    queue: DatabaseJobQueue
    campaigns: CampaignService
    billing: BillingService
    messages: MessageService
    delivery_reconciler: DeliveryReconciler
    payment_reconciler: PaymentReconciler
    delivery_worker: DeliveryWorker
    orphan_sweeper: OrphanDebitSweeper
    sms_provider: SmsProvider
    payment_provider: PaymentProvider

    def job_worker(self) -> JobWorker:
        return JobWorker(self.queue, {SMS_DELIVER_JOB: self.delivery_worker.handle})


def build_services(
    settings: Settings,
    database: Database,
    *,
    sms_provider: SmsProvider | None = None,
    payment_provider: PaymentProvider | None = None,
    queue: DatabaseJobQueue | None = None,
) -> ServiceContainer:
    sms_provider = sms_provider or build_sms_provider(settings)
    payment_provider = payment_provider or build_payment_provider(settings)
    queue = queue or DatabaseJobQueue.from_settings(database, settings)

    ledger = LedgerStore()
    credits = CreditService(database, ledger)
    campaigns = CampaignService(database, credits, queue, settings, ledger)
    delivery_reconciler = DeliveryReconciler(database)

    return ServiceContainer(
        settings=settings,
        database=database,
        ledger=ledger,
        credits=credits,
        queue=queue,
        campaigns=campaigns,
        billing=BillingService(database, credits, payment_provider, settings),
        messages=MessageService(credits, queue, settings),
        delivery_reconciler=delivery_reconciler,
        payment_reconciler=PaymentReconciler(database, credits),
        delivery_worker=DeliveryWorker(database, credits, sms_provider, delivery_reconciler),
        orphan_sweeper=OrphanDebitSweeper(
            database,
            campaigns,
            ledger,
            stale_after_minutes=settings.orphan_debit_stale_minutes,
        ),
        sms_provider=sms_provider,
        payment_provider=payment_provider,
    )
