from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from sendly.core.errors import InsufficientCreditsError, NotFoundError
from sendly.models.shop import Shop
from sendly.models.wallet import WALLET_ENTRY_TYPES, WalletTransaction


class LedgerStore:
    """Balance projection plus append-only wallet log.

    Every method works inside the caller's session and never commits; the
    balance update and the log insert land in the same transaction.
    """

    def apply_delta(
        self,
        db: Session,
        shop_id: str,
        credits: int,
        *,
        entry_type: str,
        ref: str | None,
        meta: dict[str, Any] | None = None,
        require_available: int | None = None,
    ) -> int:
        if entry_type not in WALLET_ENTRY_TYPES:
            raise ValueError(f"Unknown wallet entry type '{entry_type}'")

        stmt = update(Shop).where(Shop.id == shop_id)
        if require_available is not None:
            # Check and write in one statement so concurrent debits cannot both pass.
            stmt = stmt.where(Shop.credits >= require_available)
        result = db.execute(
            stmt.values(credits=Shop.credits + credits).execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            current = self.balance(db, shop_id)
            if current is None:
                raise NotFoundError("Shop not found")
            raise InsufficientCreditsError(required=require_available or 0, available=current)

        balance_after = self.balance(db, shop_id)
        db.add(
            WalletTransaction(
                shop_id=shop_id,
                type=entry_type,
                credits=credits,
                balance_after=balance_after,
                ref=ref,
                meta_json=meta,
            )
        )
        db.flush()
        return balance_after

    def balance(self, db: Session, shop_id: str) -> int | None:
        return db.execute(select(Shop.credits).where(Shop.id == shop_id)).scalar_one_or_none()

    def has_entry(self, db: Session, shop_id: str, ref: str) -> bool:
        entry_id = db.execute(
            select(WalletTransaction.id)
            .where(
                WalletTransaction.shop_id == shop_id,
                WalletTransaction.ref == ref,
            )
            .limit(1)
        ).scalar_one_or_none()
        return entry_id is not None

    def net_for_refs(self, db: Session, shop_id: str, refs: list[str]) -> int:
        total = db.execute(
            select(func.coalesce(func.sum(WalletTransaction.credits), 0)).where(
                WalletTransaction.shop_id == shop_id,
                WalletTransaction.ref.in_(refs),
            )
        ).scalar_one()
        return int(total)

    def ledger_sum(self, db: Session, shop_id: str) -> int:
        total = db.execute(
            select(func.coalesce(func.sum(WalletTransaction.credits), 0)).where(
                WalletTransaction.shop_id == shop_id
            )
        ).scalar_one()
        return int(total)

    def history(
        self,
        db: Session,
        shop_id: str,
        *,
        entry_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[int, list[WalletTransaction]]:
        count_stmt = select(func.count(WalletTransaction.id)).where(WalletTransaction.shop_id == shop_id)
        stmt = select(WalletTransaction).where(WalletTransaction.shop_id == shop_id)
        if entry_type:
            count_stmt = count_stmt.where(WalletTransaction.type == entry_type)
            stmt = stmt.where(WalletTransaction.type == entry_type)

        total = int(db.execute(count_stmt).scalar_one())
        rows = db.execute(
            stmt.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .offset(offset)
            .limit(limit)
        ).scalars().all()
        return total, list(rows)
