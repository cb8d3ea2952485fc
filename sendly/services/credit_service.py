import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, TypeVar

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from sendly.core.errors import InsufficientCreditsError, NotFoundError, ValidationError
from sendly.core.observability import log_event
from sendly.db.session import Database
from sendly.models.shop import Shop
from sendly.models.wallet import WalletTransaction
from sendly.services.ledger_store import LedgerStore

logger = logging.getLogger("sendly.credits")

T = TypeVar("T")


@dataclass(frozen=True)
class CreditCheck:
    credits: int
    required: int
    can_send: bool

    @property
    def missing(self) -> int:
        return max(self.required - self.credits, 0)


@dataclass(frozen=True)
class ConsumeResult:
    consumed: int
    credits_remaining: int


@dataclass(frozen=True)
class CreditResult:
    added: int
    credits: int


@dataclass(frozen=True)
class UsageStats:
    credits: int
    window_days: int
    purchased: int
    consumed: int
    refunded: int
    clawed_back: int
    adjusted: int


def _validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Credit amount must be an integer")
    if amount <= 0:
        raise ValidationError("Credit amount must be positive")


class CreditService:
    """The only path through which shop balances change.

    Every mutating method accepts an optional `db`. When given, the
    operation joins the caller's transaction and the caller commits; when
    omitted it runs in its own transaction with transient-conflict retry.
    """

    def __init__(self, database: Database, ledger: LedgerStore | None = None):
        self.database = database
        self.ledger = ledger or LedgerStore()

    def _run(self, db: Session | None, fn: Callable[[Session], T]) -> T:
        if db is not None:
            return fn(db)
        return self.database.run_in_transaction(fn)

    def _current_balance(self, db: Session, shop_id: str, *, for_update: bool = False) -> int:
        stmt = select(Shop.credits).where(Shop.id == shop_id)
        if for_update:
            stmt = stmt.with_for_update()
        balance = db.execute(stmt).scalar_one_or_none()
        if balance is None:
            raise NotFoundError("Shop not found")
        return int(balance)

    def check_available(self, shop_id: str, *, required: int = 1, db: Session | None = None) -> CreditCheck:
        def _check(session: Session) -> CreditCheck:
            balance = self._current_balance(session, shop_id)
            return CreditCheck(credits=balance, required=required, can_send=balance >= required)

        if db is not None:
            return _check(db)
        with self.database.session() as session:
            return _check(session)

    def validate_for_messages(self, shop_id: str, message_count: int) -> CreditCheck:
        if message_count < 0:
            raise ValidationError("Message count cannot be negative")
        return self.check_available(shop_id, required=message_count)

    def validate_and_consume(
        self,
        shop_id: str,
        amount: int,
        *,
        ref: str,
        meta: dict[str, Any] | None = None,
        db: Session | None = None,
    ) -> ConsumeResult:
        _validate_amount(amount)

        def _consume(session: Session) -> ConsumeResult:
            balance = self._current_balance(session, shop_id, for_update=True)
            if balance < amount:
                raise InsufficientCreditsError(required=amount, available=balance)
            remaining = self.ledger.apply_delta(
                session,
                shop_id,
                -amount,
                entry_type="debit",
                ref=ref,
                meta=meta,
                require_available=amount,
            )
            return ConsumeResult(consumed=amount, credits_remaining=remaining)

        try:
            result = self._run(db, _consume)
        except InsufficientCreditsError as exc:
            log_event(
                logger,
                "credits.insufficient",
                level=logging.WARNING,
                shop_id=shop_id,
                ref=ref,
                required=amount,
                available=exc.available_credits,
            )
            raise

        log_event(
            logger,
            "credits.consumed",
            shop_id=shop_id,
            ref=ref,
            amount=amount,
            credits_remaining=result.credits_remaining,
        )
        return result

    def refund(
        self,
        shop_id: str,
        amount: int,
        *,
        ref: str,
        meta: dict[str, Any] | None = None,
        db: Session | None = None,
    ) -> CreditResult:
        return self._add(shop_id, amount, ref=ref, meta=meta, db=db, entry_type="refund")

    def credit(
        self,
        shop_id: str,
        amount: int,
        *,
        ref: str,
        meta: dict[str, Any] | None = None,
        db: Session | None = None,
        entry_type: str = "purchase",
    ) -> CreditResult:
        return self._add(shop_id, amount, ref=ref, meta=meta, db=db, entry_type=entry_type)

    def _add(
        self,
        shop_id: str,
        amount: int,
        *,
        ref: str,
        meta: dict[str, Any] | None,
        db: Session | None,
        entry_type: str,
    ) -> CreditResult:
        _validate_amount(amount)

        def _apply(session: Session) -> CreditResult:
            balance = self.ledger.apply_delta(
                session,
                shop_id,
                amount,
                entry_type=entry_type,
                ref=ref,
                meta=meta,
            )
            return CreditResult(added=amount, credits=balance)

        result = self._run(db, _apply)
        log_event(
            logger,
            f"credits.{entry_type}",
            shop_id=shop_id,
            ref=ref,
            amount=amount,
            credits=result.credits,
        )
        return result

    def debit_unchecked(
        self,
        shop_id: str,
        amount: int,
        *,
        ref: str,
        meta: dict[str, Any] | None = None,
        db: Session | None = None,
    ) -> CreditResult:
        """Remove credits for a payment refund; the balance may go negative."""
        _validate_amount(amount)

        def _apply(session: Session) -> CreditResult:
            balance = self.ledger.apply_delta(
                session,
                shop_id,
                -amount,
                entry_type="refund",
                ref=ref,
                meta=meta,
            )
            return CreditResult(added=-amount, credits=balance)

        result = self._run(db, _apply)
        log_event(
            logger,
            "credits.clawback",
            shop_id=shop_id,
            ref=ref,
            amount=amount,
            credits=result.credits,
        )
        return result

    def usage_stats(self, shop_id: str, *, days: int = 30) -> UsageStats:
        since = datetime.now(timezone.utc) - timedelta(days=days)
        with self.database.session() as db:
            balance = self._current_balance(db, shop_id)
            amount = WalletTransaction.credits
            rows = db.execute(
                select(
                    WalletTransaction.type,
                    func.coalesce(func.sum(case((amount > 0, amount), else_=0)), 0),
                    func.coalesce(func.sum(case((amount < 0, amount), else_=0)), 0),
                )
                .where(
                    WalletTransaction.shop_id == shop_id,
                    WalletTransaction.created_at >= since,
                )
                .group_by(WalletTransaction.type)
            ).all()

        # Refund entries run both ways: campaign refunds add credits, payment clawbacks remove them.
        credited = {entry_type: int(positive) for entry_type, positive, _negative in rows}
        debited = {entry_type: -int(negative) for entry_type, _positive, negative in rows}
        return UsageStats(
            credits=balance,
            window_days=days,
            purchased=credited.get("purchase", 0),
            consumed=debited.get("debit", 0),
            refunded=credited.get("refund", 0),
            clawed_back=debited.get("refund", 0),
            adjusted=credited.get("adjustment", 0) - debited.get("adjustment", 0),
        )
