from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from sendly.schemas.common import PaginationMeta

CampaignStatus = Literal["draft", "sending", "sent", "failed"]
ScheduleType = Literal["immediate", "scheduled", "recurring"]


class CampaignCreateIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=2000)
    audience: str = Field(default="all", max_length=120)
    schedule_type: ScheduleType = "immediate"
    schedule_at: datetime | None = None
    recurring_days: int | None = Field(default=None, ge=1, le=365)

    @model_validator(mode="after")
    def validate_schedule(self) -> "CampaignCreateIn":
        if self.schedule_type == "scheduled" and self.schedule_at is None:
            raise ValueError("schedule_at is required for scheduled campaigns")
        return self


class CampaignOut(BaseModel):
    id: str
    name: str
    message: str
    audience: str
    schedule_type: ScheduleType
    schedule_at: datetime | None = None
    recurring_days: int | None = None
    status: CampaignStatus
    send_started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime


class CampaignListOut(BaseModel):
    items: list[CampaignOut]
    pagination: PaginationMeta


class CampaignPrepareOut(BaseModel):
    campaign_id: str
    recipient_count: int
    estimated_credits: int
    available_credits: int
    can_send: bool


class CampaignSendOut(BaseModel):
    campaign_id: str
    recipient_count: int
    status: Literal["sending"]
    queued_jobs: int


class CampaignMetricsOut(BaseModel):
    campaign_id: str
    status: CampaignStatus
    recipient_count: int
    recipients_by_status: dict[str, int]
    total_sent: int
    total_delivered: int
    total_failed: int
