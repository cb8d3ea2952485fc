from fastapi import APIRouter, Depends, Query

from sendly.core.api_docs import error_responses
from sendly.core.deps import get_current_shop, get_services
from sendly.models.billing import BillingTransaction
from sendly.models.shop import Shop
from sendly.models.wallet import WalletTransaction
from sendly.schemas.billing import (
    BalanceOut,
    BillingHistoryOut,
    BillingStatus,
    BillingTransactionOut,
    CreditPackageListOut,
    CreditPackageOut,
    PurchaseIn,
    PurchaseOut,
    UsageStatsOut,
    WalletEntryType,
    WalletTransactionListOut,
    WalletTransactionOut,
)
from sendly.schemas.common import MAX_PAGE_SIZE, build_pagination
from sendly.services.container import ServiceContainer

router = APIRouter(prefix="/billing", tags=["billing"])


def _wallet_out(row: WalletTransaction) -> WalletTransactionOut:
    return WalletTransactionOut(
        id=row.id,
        type=row.type,
        credits=row.credits,
        balance_after=row.balance_after,
        ref=row.ref,
        meta=row.meta_json,
        created_at=row.created_at,
    )


def _billing_out(row: BillingTransaction) -> BillingTransactionOut:
    return BillingTransactionOut(
        id=row.id,
        package_type=row.package_type,
        credits_added=row.credits_added,
        amount=row.amount,
        currency=row.currency,
        status=row.status,
        stripe_session_id=row.stripe_session_id,
        credits_refunded=row.credits_refunded,
        amount_refunded=row.amount_refunded,
        completed_at=row.completed_at,
        created_at=row.created_at,
    )


@router.get(
    "/balance",
    response_model=BalanceOut,
    summary="Current credit balance",
    responses=error_responses(401, 500),
)
def get_balance(
    shop: Shop = Depends(get_current_shop),
    services: ServiceContainer = Depends(get_services),
):
    balance = services.billing.get_balance(shop.id)
    return BalanceOut(credits=balance.credits, currency=balance.currency)


@router.get(
    "/packages",
    response_model=CreditPackageListOut,
    summary="List purchasable credit packages",
    responses=error_responses(401, 500),
)
def list_packages(
    shop: Shop = Depends(get_current_shop),
    services: ServiceContainer = Depends(get_services),
):
    return CreditPackageListOut(
        items=[
            CreditPackageOut(
                id=package.id,
                name=package.name,
                credits=package.credits,
                amount=package.amount,
                currency=package.currency,
            )
            for package in services.billing.list_packages()
        ]
    )


@router.post(
    "/purchase",
    response_model=PurchaseOut,
    summary="Start a credit package checkout",
    responses=error_responses(400, 401, 404, 422, 500, 502),
)
def purchase_credits(
    payload: PurchaseIn,
    shop: Shop = Depends(get_current_shop),
    services: ServiceContainer = Depends(get_services),
):
    result = services.billing.create_purchase(
        shop,
        payload.package_id,
        success_url=payload.success_url,
        cancel_url=payload.cancel_url,
    )
    return PurchaseOut(
        transaction_id=result.transaction_id,
        session_id=result.session_id,
        checkout_url=result.checkout_url,
        package_id=result.package_id,
        credits=result.credits,
        amount=result.amount,
        currency=result.currency,
    )


@router.get(
    "/transactions",
    response_model=WalletTransactionListOut,
    summary="Credit ledger history",
    responses=error_responses(401, 422, 500),
)
def list_wallet_transactions(
    type: WalletEntryType | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    shop: Shop = Depends(get_current_shop),
    services: ServiceContainer = Depends(get_services),
):
    total, rows = services.billing.transaction_history(shop.id, entry_type=type, limit=limit, offset=offset)
    items = [_wallet_out(row) for row in rows]
    return WalletTransactionListOut(
        items=items,
        pagination=build_pagination(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.get(
    "/history",
    response_model=BillingHistoryOut,
    summary="Credit purchase history",
    responses=error_responses(401, 422, 500),
)
def list_billing_history(
    status: BillingStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    shop: Shop = Depends(get_current_shop),
    services: ServiceContainer = Depends(get_services),
):
    total, rows = services.billing.billing_history(shop.id, status=status, limit=limit, offset=offset)
    items = [_billing_out(row) for row in rows]
    return BillingHistoryOut(
        items=items,
        pagination=build_pagination(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.get(
    "/usage",
    response_model=UsageStatsOut,
    summary="Credit usage over a trailing window",
    responses=error_responses(401, 422, 500),
)
def get_usage(
    days: int = Query(default=30, ge=1, le=365),
    shop: Shop = Depends(get_current_shop),
    services: ServiceContainer = Depends(get_services),
):
    stats = services.credits.usage_stats(shop.id, days=days)
    return UsageStatsOut(
        credits=stats.credits,
        window_days=stats.window_days,
        purchased=stats.purchased,
        consumed=stats.consumed,
        refunded=stats.refunded,
        clawed_back=stats.clawed_back,
        adjusted=stats.adjusted,
    )
