import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from sendly.core.observability import log_event
from sendly.db.session import Database
from sendly.models.billing import BillingTransaction
from sendly.services.credit_service import CreditService

logger = logging.getLogger("sendly.billing")


@dataclass(frozen=True)
class WebhookOutcome:
    status: str
    event_type: str | None = None
    transaction_id: str | None = None
    credits: int | None = None
    reason: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def refunded_credits(credits_added: int, amount: int, refunded_amount: int) -> int:
    """Credits matching a (cumulative) refunded amount, rounded down."""
    if amount <= 0:
        return 0
    refunded_amount = max(0, min(refunded_amount, amount))
    return (credits_added * refunded_amount) // amount


class PaymentReconciler:
    """Turns Stripe events into billing state transitions and ledger entries.

    Idempotency is anchored on the BillingTransaction row: every transition
    is a compare-and-set, so replays and concurrent deliveries of the same
    event apply at most once.
    """

    def __init__(self, database: Database, credits: CreditService):
        self.database = database
        self.credits = credits
        self._handlers: dict[str, Callable[[dict[str, Any]], WebhookOutcome]] = {
            "checkout.session.completed": self._checkout_completed,
            "checkout.session.expired": self._checkout_expired,
            "payment_intent.payment_failed": self._payment_failed,
            "charge.refunded": self._refunded,
            "payment_intent.refunded": self._refunded,
        }

    def handle_event(self, event: dict[str, Any]) -> WebhookOutcome:
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        handler = self._handlers.get(event_type or "")
        if handler is None:
            outcome = WebhookOutcome(status="ignored", reason="unhandled_event_type")
        else:
            outcome = handler(obj)

        outcome = WebhookOutcome(
            status=outcome.status,
            event_type=event_type,
            transaction_id=outcome.transaction_id,
            credits=outcome.credits,
            reason=outcome.reason,
        )
        log_event(
            logger,
            "webhook.stripe.processed",
            stripe_event_id=event.get("id"),
            event_type=event_type,
            status=outcome.status,
            transaction_id=outcome.transaction_id,
            credits=outcome.credits,
            reason=outcome.reason,
        )
        return outcome

    def _find_transaction(
        self,
        db: Session,
        *,
        transaction_id: str | None = None,
        session_id: str | None = None,
        payment_id: str | None = None,
    ) -> BillingTransaction | None:
        clauses = []
        if transaction_id:
            clauses.append(BillingTransaction.id == transaction_id)
        if session_id:
            clauses.append(BillingTransaction.stripe_session_id == session_id)
        if payment_id:
            clauses.append(BillingTransaction.stripe_payment_id == payment_id)
        if not clauses:
            return None
        return db.execute(
            select(BillingTransaction)
            .where(or_(*clauses))
            .order_by(BillingTransaction.created_at.asc())
            .limit(1)
            .with_for_update()
        ).scalar_one_or_none()

    def _checkout_completed(self, obj: dict[str, Any]) -> WebhookOutcome:
        session_id = obj.get("id")
        metadata = obj.get("metadata") or {}
        if obj.get("payment_status") != "paid":
            return WebhookOutcome(status="ignored", reason="payment_not_paid")

        def _apply(db: Session) -> WebhookOutcome:
            tx = self._find_transaction(db, transaction_id=metadata.get("transactionId"), session_id=session_id)
            if tx is None:
                return WebhookOutcome(status="ignored", reason="transaction_not_found")

            store_id = metadata.get("storeId") or metadata.get("shopId")
            if store_id and store_id != tx.shop_id:
                log_event(
                    logger,
                    "webhook.stripe.shop_mismatch",
                    level=logging.WARNING,
                    transaction_id=tx.id,
                    metadata_shop_id=store_id,
                )
                return WebhookOutcome(status="ignored", transaction_id=tx.id, reason="shop_mismatch")

            if tx.status == "completed":
                return WebhookOutcome(status="already_processed", transaction_id=tx.id)

            values: dict[str, Any] = {"status": "completed", "completed_at": _utcnow()}
            if obj.get("payment_intent"):
                values["stripe_payment_id"] = obj["payment_intent"]
            if session_id and not tx.stripe_session_id:
                values["stripe_session_id"] = session_id
            claimed = db.execute(
                update(BillingTransaction)
                .where(
                    BillingTransaction.id == tx.id,
                    BillingTransaction.status.in_(["pending", "failed"]),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed != 1:
                return WebhookOutcome(status="already_processed", transaction_id=tx.id)

            self.credits.credit(
                tx.shop_id,
                tx.credits_added,
                ref=f"stripe:{session_id or tx.id}",
                meta={
                    "billing_transaction_id": tx.id,
                    "package_type": tx.package_type,
                    "amount": tx.amount,
                    "currency": tx.currency,
                },
                db=db,
            )
            return WebhookOutcome(status="processed", transaction_id=tx.id, credits=tx.credits_added)

        return self.database.run_in_transaction(_apply)

    def _checkout_expired(self, obj: dict[str, Any]) -> WebhookOutcome:
        metadata = obj.get("metadata") or {}

        def _apply(db: Session) -> WebhookOutcome:
            tx = self._find_transaction(db, transaction_id=metadata.get("transactionId"), session_id=obj.get("id"))
            if tx is None:
                return WebhookOutcome(status="ignored", reason="transaction_not_found")
            changed = db.execute(
                update(BillingTransaction)
                .where(BillingTransaction.id == tx.id, BillingTransaction.status == "pending")
                .values(status="failed")
                .execution_options(synchronize_session=False)
            ).rowcount
            return WebhookOutcome(
                status="processed" if changed else "already_processed",
                transaction_id=tx.id,
            )

        return self.database.run_in_transaction(_apply)

    def _payment_failed(self, obj: dict[str, Any]) -> WebhookOutcome:
        payment_id = obj.get("id")
        transaction_id = (obj.get("metadata") or {}).get("transactionId")

        def _apply(db: Session) -> WebhookOutcome:
            clauses = []
            if payment_id:
                clauses.append(BillingTransaction.stripe_payment_id == payment_id)
            if transaction_id:
                clauses.append(BillingTransaction.id == transaction_id)
            if not clauses:
                return WebhookOutcome(status="ignored", reason="transaction_not_found")
            changed = db.execute(
                update(BillingTransaction)
                .where(or_(*clauses), BillingTransaction.status == "pending")
                .values(status="failed")
                .execution_options(synchronize_session=False)
            ).rowcount
            if not changed:
                return WebhookOutcome(status="ignored", transaction_id=transaction_id, reason="no_pending_transaction")
            return WebhookOutcome(status="processed", transaction_id=transaction_id)

        return self.database.run_in_transaction(_apply)

    def _refunded(self, obj: dict[str, Any]) -> WebhookOutcome:
        if obj.get("object") == "payment_intent":
            payment_id = obj.get("id")
        else:
            payment_id = obj.get("payment_intent") or obj.get("id")
        transaction_id = (obj.get("metadata") or {}).get("transactionId")
        cumulative = obj.get("amount_refunded")
        if cumulative is None:
            cumulative = obj.get("amount")
        if cumulative is None:
            return WebhookOutcome(status="ignored", reason="missing_refund_amount")
        cumulative = int(cumulative)

        def _apply(db: Session) -> WebhookOutcome:
            tx = self._find_transaction(db, transaction_id=transaction_id, payment_id=payment_id)
            if tx is None or tx.status != "completed":
                return WebhookOutcome(status="ignored", reason="transaction_not_found")

            target_amount = max(0, min(cumulative, tx.amount))
            target_credits = refunded_credits(tx.credits_added, tx.amount, target_amount)
            delta = target_credits - tx.credits_refunded
            if target_amount <= tx.amount_refunded and delta <= 0:
                return WebhookOutcome(status="already_processed", transaction_id=tx.id)

            claimed = db.execute(
                update(BillingTransaction)
                .where(
                    BillingTransaction.id == tx.id,
                    BillingTransaction.amount_refunded == tx.amount_refunded,
                    BillingTransaction.credits_refunded == tx.credits_refunded,
                )
                .values(
                    amount_refunded=max(target_amount, tx.amount_refunded),
                    credits_refunded=max(target_credits, tx.credits_refunded),
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed != 1:
                return WebhookOutcome(status="already_processed", transaction_id=tx.id)

            if delta > 0:
                self.credits.debit_unchecked(
                    tx.shop_id,
                    delta,
                    ref=f"stripe_refund:{payment_id}:{target_amount}",
                    meta={
                        "billing_transaction_id": tx.id,
                        "refunded_amount": target_amount,
                        "amount": tx.amount,
                    },
                    db=db,
                )
            return WebhookOutcome(status="processed", transaction_id=tx.id, credits=max(delta, 0))

        return self.database.run_in_transaction(_apply)
