import logging
from dataclasses import dataclass

from sendly.core.config import Settings
from sendly.core.errors import InsufficientCreditsError
from sendly.core.id_utils import generate_shortuuid
from sendly.core.observability import log_event
from sendly.services.credit_service import CreditService
from sendly.services.job_queue import SMS_DELIVER_JOB, DatabaseJobQueue

logger = logging.getLogger("sendly.messages")


@dataclass(frozen=True)
class QueuedMessage:
    job_key: str
    queued: bool


class MessageService:
    """Single transactional SMS, charged one credit by the delivery worker."""

    def __init__(self, credits: CreditService, queue: DatabaseJobQueue, settings: Settings):
        self.credits = credits
        self.queue = queue
        self.settings = settings

    def queue_transactional(
        self,
        shop_id: str,
        *,
        phone_e164: str,
        message: str,
        sender: str | None = None,
        idempotency_key: str | None = None,
    ) -> QueuedMessage:
        # Advisory only; the worker performs the authoritative debit.
        check = self.credits.check_available(shop_id, required=1)
        if not check.can_send:
            raise InsufficientCreditsError(required=1, available=check.credits)

        job_key = f"transactional:{shop_id}:{idempotency_key or generate_shortuuid()}"
        created = self.queue.enqueue(
            SMS_DELIVER_JOB,
            {
                "shop_id": shop_id,
                "phone_e164": phone_e164,
                "message": message,
                "sender": sender or self.settings.mitto_sender,
                "skip_credit_check": False,
            },
            job_key=job_key,
        )
        log_event(logger, "message.transactional.queued", shop_id=shop_id, job_key=job_key, created=created)
        return QueuedMessage(job_key=job_key, queued=created)
