from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from sendly.schemas.common import PaginationMeta

WalletEntryType = Literal["purchase", "debit", "refund", "adjustment"]
BillingStatus = Literal["pending", "completed", "failed"]


class BalanceOut(BaseModel):
    credits: int
    currency: str

    model_config = ConfigDict(json_schema_extra={"example": {"credits": 997, "currency": "EUR"}})


class CreditPackageOut(BaseModel):
    id: str
    name: str
    credits: int
    amount: int
    currency: str


class CreditPackageListOut(BaseModel):
    items: list[CreditPackageOut]


class PurchaseIn(BaseModel):
    package_id: str = Field(min_length=1, max_length=60)
    success_url: str | None = Field(default=None, max_length=2000)
    cancel_url: str | None = Field(default=None, max_length=2000)


class PurchaseOut(BaseModel):
    transaction_id: str
    session_id: str
    checkout_url: str | None = None
    package_id: str
    credits: int
    amount: int
    currency: str


class WalletTransactionOut(BaseModel):
    id: str
    type: WalletEntryType
    credits: int
    balance_after: int
    ref: str | None = None
    meta: dict[str, Any] | None = None
    created_at: datetime


class WalletTransactionListOut(BaseModel):
    items: list[WalletTransactionOut]
    pagination: PaginationMeta


class BillingTransactionOut(BaseModel):
    id: str
    package_type: str
    credits_added: int
    amount: int
    currency: str
    status: BillingStatus
    stripe_session_id: str | None = None
    credits_refunded: int
    amount_refunded: int
    completed_at: datetime | None = None
    created_at: datetime


class BillingHistoryOut(BaseModel):
    items: list[BillingTransactionOut]
    pagination: PaginationMeta


class UsageStatsOut(BaseModel):
    credits: int
    window_days: int
    purchased: int
    consumed: int
    refunded: int
    clawed_back: int
    adjusted: int
