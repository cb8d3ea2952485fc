from fastapi import APIRouter, Depends

from sendly.core.api_docs import error_responses
from sendly.core.deps import get_current_shop, get_services
from sendly.models.shop import Shop
from sendly.schemas.message import TransactionalMessageIn, TransactionalMessageOut
from sendly.services.container import ServiceContainer

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post(
    "/send",
    response_model=TransactionalMessageOut,
    summary="Queue a single transactional SMS",
    responses=error_responses(400, 401, 422, 500, 503, examples=("insufficient_credits",)),
)
def send_message(
    payload: TransactionalMessageIn,
    shop: Shop = Depends(get_current_shop),
    services: ServiceContainer = Depends(get_services),
):
    queued = services.messages.queue_transactional(
        shop.id,
        phone_e164=payload.phone_e164,
        message=payload.message,
        sender=payload.sender,
        idempotency_key=payload.idempotency_key,
    )
    return TransactionalMessageOut(job_key=queued.job_key, queued=queued.queued)
