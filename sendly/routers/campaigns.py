from fastapi import APIRouter, Depends, Query

from sendly.core.api_docs import error_responses
from sendly.core.deps import get_current_shop, get_services
from sendly.models.campaign import Campaign
from sendly.models.shop import Shop
from sendly.schemas.campaign import (
    CampaignCreateIn,
    CampaignListOut,
    CampaignMetricsOut,
    CampaignOut,
    CampaignPrepareOut,
    CampaignSendOut,
    CampaignStatus,
)
from sendly.schemas.common import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, build_pagination
from sendly.services.container import ServiceContainer

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


def _campaign_out(campaign: Campaign) -> CampaignOut:
    return CampaignOut(
        id=campaign.id,
        name=campaign.name,
        message=campaign.message,
        audience=campaign.audience,
        schedule_type=campaign.schedule_type,
        schedule_at=campaign.schedule_at,
        recurring_days=campaign.recurring_days,
        status=campaign.status,
        send_started_at=campaign.send_started_at,
        completed_at=campaign.completed_at,
        created_at=campaign.created_at,
    )


@router.post(
    "",
    response_model=CampaignOut,
    summary="Create draft campaign",
    responses=error_responses(400, 401, 404, 422, 500),
)
def create_campaign(
    payload: CampaignCreateIn,
    shop: Shop = Depends(get_current_shop),
    services: ServiceContainer = Depends(get_services),
):
    campaign = services.campaigns.create_campaign(
        shop.id,
        name=payload.name,
        message=payload.message,
        audience=payload.audience,
        schedule_type=payload.schedule_type,
        schedule_at=payload.schedule_at,
        recurring_days=payload.recurring_days,
    )
    return _campaign_out(campaign)


@router.get(
    "",
    response_model=CampaignListOut,
    summary="List campaigns",
    responses=error_responses(401, 422, 500),
)
def list_campaigns(
    status: CampaignStatus | None = Query(default=None),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    shop: Shop = Depends(get_current_shop),
    services: ServiceContainer = Depends(get_services),
):
    total, rows = services.campaigns.list_campaigns(shop.id, status=status, limit=limit, offset=offset)
    items = [_campaign_out(row) for row in rows]
    return CampaignListOut(
        items=items,
        pagination=build_pagination(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.get(
    "/{campaign_id}",
    response_model=CampaignOut,
    summary="Get campaign",
    responses=error_responses(401, 404, 500),
)
def get_campaign(
    campaign_id: str,
    shop: Shop = Depends(get_current_shop),
    services: ServiceContainer = Depends(get_services),
):
    return _campaign_out(services.campaigns.get_campaign(shop.id, campaign_id))


@router.post(
    "/{campaign_id}/prepare",
    response_model=CampaignPrepareOut,
    summary="Estimate recipients and credits for a draft campaign",
    responses=error_responses(400, 401, 404, 500, examples=("invalid_state",)),
)
def prepare_campaign(
    campaign_id: str,
    shop: Shop = Depends(get_current_shop),
    services: ServiceContainer = Depends(get_services),
):
    result = services.campaigns.prepare(shop.id, campaign_id)
    return CampaignPrepareOut(
        campaign_id=result.campaign_id,
        recipient_count=result.recipient_count,
        estimated_credits=result.estimated_credits,
        available_credits=result.available_credits,
        can_send=result.can_send,
    )


@router.post(
    "/{campaign_id}/send",
    response_model=CampaignSendOut,
    summary="Debit credits and queue one SMS per recipient",
    responses=error_responses(
        400, 401, 404, 500, 503, examples=("insufficient_credits", "invalid_state", "transient_error")
    ),
)
def send_campaign(
    campaign_id: str,
    shop: Shop = Depends(get_current_shop),
    services: ServiceContainer = Depends(get_services),
):
    result = services.campaigns.send(shop.id, campaign_id)
    return CampaignSendOut(
        campaign_id=result.campaign_id,
        recipient_count=result.recipient_count,
        status=result.status,
        queued_jobs=result.queued_jobs,
    )


@router.get(
    "/{campaign_id}/metrics",
    response_model=CampaignMetricsOut,
    summary="Campaign delivery metrics",
    responses=error_responses(401, 404, 500),
)
def get_campaign_metrics(
    campaign_id: str,
    shop: Shop = Depends(get_current_shop),
    services: ServiceContainer = Depends(get_services),
):
    return CampaignMetricsOut(**services.campaigns.get_metrics(shop.id, campaign_id))
