import logging
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from sendly.core.config import CreditPackage, Settings
from sendly.core.currencies import resolve_currency
from sendly.core.errors import NotFoundError, ProviderError
from sendly.core.observability import log_event
from sendly.db.session import Database
from sendly.models.billing import BillingTransaction
from sendly.models.shop import Shop
from sendly.models.wallet import WalletTransaction
from sendly.services.credit_service import CreditService
from sendly.services.payment_provider import CheckoutRequest, PaymentProvider

logger = logging.getLogger("sendly.billing")


@dataclass(frozen=True)
class Balance:
    credits: int
    currency: str


@dataclass(frozen=True)
class PurchaseResult:
    transaction_id: str
    session_id: str
    checkout_url: str | None
    package_id: str
    credits: int
    amount: int
    currency: str


class BillingService:
    def __init__(
        self,
        database: Database,
        credits: CreditService,
        payment_provider: PaymentProvider,
        settings: Settings,
    ):
        self.database = database
        self.credits = credits
        self.payment_provider = payment_provider
        self.settings = settings

    def get_balance(self, shop_id: str) -> Balance:
        with self.database.session() as db:
            row = db.execute(select(Shop.credits, Shop.currency).where(Shop.id == shop_id)).first()
        if row is None:
            raise NotFoundError("Shop not found")
        return Balance(credits=int(row[0]), currency=row[1])

    def list_packages(self) -> list[CreditPackage]:
        return list(self.settings.credit_packages)

    def create_purchase(
        self,
        shop: Shop,
        package_id: str,
        *,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> PurchaseResult:
        package = self.settings.package_by_id(package_id)
        if package is None:
            raise NotFoundError(f"Unknown credit package '{package_id}'")
        currency = resolve_currency(
            package.currency,
            allowed=self.settings.supported_currencies,
            default=self.settings.default_currency,
        )

        def _create(db: Session) -> str:
            tx = BillingTransaction(
                shop_id=shop.id,
                credits_added=package.credits,
                amount=package.amount,
                currency=currency,
                package_type=package.id,
                status="pending",
            )
            db.add(tx)
            db.flush()
            return tx.id

        transaction_id = self.database.run_in_transaction(_create)

        try:
            checkout = self.payment_provider.create_checkout(
                CheckoutRequest(
                    shop_id=shop.id,
                    shop_domain=shop.shop_domain,
                    transaction_id=transaction_id,
                    package_id=package.id,
                    package_name=package.name,
                    credits=package.credits,
                    amount=package.amount,
                    currency=currency,
                    success_url=success_url or self.settings.billing_success_url,
                    cancel_url=cancel_url or self.settings.billing_cancel_url,
                    stripe_price_id=package.stripe_price_id,
                )
            )
        except ProviderError:
            self._mark_failed(transaction_id)
            raise

        def _attach(db: Session) -> None:
            db.execute(
                update(BillingTransaction)
                .where(BillingTransaction.id == transaction_id)
                .values(stripe_session_id=checkout.session_id)
                .execution_options(synchronize_session=False)
            )

        self.database.run_in_transaction(_attach)
        log_event(
            logger,
            "billing.purchase.created",
            shop_id=shop.id,
            transaction_id=transaction_id,
            package_id=package.id,
            session_id=checkout.session_id,
        )
        return PurchaseResult(
            transaction_id=transaction_id,
            session_id=checkout.session_id,
            checkout_url=checkout.checkout_url,
            package_id=package.id,
            credits=package.credits,
            amount=package.amount,
            currency=currency,
        )

    def _mark_failed(self, transaction_id: str) -> None:
        def _apply(db: Session) -> None:
            db.execute(
                update(BillingTransaction)
                .where(BillingTransaction.id == transaction_id, BillingTransaction.status == "pending")
                .values(status="failed")
                .execution_options(synchronize_session=False)
            )

        self.database.run_in_transaction(_apply)

    def transaction_history(
        self,
        shop_id: str,
        *,
        entry_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[int, list[WalletTransaction]]:
        with self.database.session() as db:
            return self.credits.ledger.history(db, shop_id, entry_type=entry_type, limit=limit, offset=offset)

    def billing_history(
        self,
        shop_id: str,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[int, list[BillingTransaction]]:
        with self.database.session() as db:
            count_stmt = select(func.count(BillingTransaction.id)).where(BillingTransaction.shop_id == shop_id)
            stmt = select(BillingTransaction).where(BillingTransaction.shop_id == shop_id)
            if status:
                count_stmt = count_stmt.where(BillingTransaction.status == status)
                stmt = stmt.where(BillingTransaction.status == status)
            total = int(db.execute(count_stmt).scalar_one())
            rows = db.execute(
                stmt.order_by(BillingTransaction.created_at.desc(), BillingTransaction.id.desc())
                .offset(offset)
                .limit(limit)
            ).scalars().all()
        return total, list(rows)
