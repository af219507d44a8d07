# escrowguard/services/ledger.py
"""
Financial ledger invariants:

- Append-only. Rows are never deleted and amount / type are never updated.
- The only mutation is settlement: status pending -> completed | failed.
- Sign convention: positive credits the seller, negative debits.
- Seller balance = sum of completed entries for that seller and currency.
- Entries are written inside the same transaction as the hold / refund
  change they record; nothing here commits.
"""
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from escrowguard.errors import InvalidState
from escrowguard.models import EntryStatus, LedgerEntry, TransactionType, now_utc

# entries that move money back to the buyer
REVERSING_TYPES = (
    TransactionType.REFUND,
    TransactionType.REFUND_INITIATED,
    TransactionType.RETURN_APPROVED,
    TransactionType.REFUND_COMPLETED,
)


def append_entry(
    db: Session,
    *,
    seller_id: UUID,
    transaction_type: TransactionType,
    amount_cents: int,
    currency: str,
    status: EntryStatus = EntryStatus.PENDING,
    order_id: Optional[UUID] = None,
    refund_id: Optional[UUID] = None,
    payment_id: Optional[UUID] = None,
    description: Optional[str] = None,
) -> LedgerEntry:
    now = now_utc()
    entry = LedgerEntry(
        seller_id=seller_id,
        order_id=order_id,
        refund_id=refund_id,
        payment_id=payment_id,
        transaction_type=transaction_type,
        amount_cents=int(amount_cents),
        currency=currency,
        status=status,
        description=description,
        created_at=now,
        settled_at=now if status != EntryStatus.PENDING else None,
    )
    db.add(entry)
    db.flush()  # assigns the id without committing
    return entry


def settle_entry(db: Session, entry_id: UUID, status: EntryStatus) -> None:
    """Guarded pending -> completed/failed; a second settlement is refused."""
    if status == EntryStatus.PENDING:
        raise InvalidState("Ledger entries can only settle to completed or failed")
    result = db.execute(
        update(LedgerEntry)
        .where(LedgerEntry.id == entry_id, LedgerEntry.status == EntryStatus.PENDING)
        .values(status=status, settled_at=now_utc())
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise InvalidState("Ledger entry is not pending")


def seller_balances(db: Session, seller_id: UUID) -> Dict[str, int]:
    rows = db.execute(
        select(LedgerEntry.currency, func.coalesce(func.sum(LedgerEntry.amount_cents), 0))
        .where(LedgerEntry.seller_id == seller_id, LedgerEntry.status == EntryStatus.COMPLETED)
        .group_by(LedgerEntry.currency)
    ).all()
    return {currency: int(total) for currency, total in rows}


def seller_balance(db: Session, seller_id: UUID, currency: str) -> int:
    return seller_balances(db, seller_id).get(currency.upper(), 0)


def completed_reversals_for_order(db: Session, order_id: UUID) -> int:
    """Cents already given back to the buyer for this order (a positive number)."""
    total = db.execute(
        select(func.coalesce(func.sum(LedgerEntry.amount_cents), 0)).where(
            LedgerEntry.order_id == order_id,
            LedgerEntry.status == EntryStatus.COMPLETED,
            LedgerEntry.transaction_type.in_(REVERSING_TYPES),
        )
    ).scalar_one()
    return -int(total)


def has_completed_entry(db: Session, order_id: UUID, transaction_type: TransactionType) -> bool:
    return db.execute(
        select(func.count(LedgerEntry.id)).where(
            LedgerEntry.order_id == order_id,
            LedgerEntry.transaction_type == transaction_type,
            LedgerEntry.status == EntryStatus.COMPLETED,
        )
    ).scalar_one() > 0


def entries_for_order(db: Session, order_id: UUID) -> List[LedgerEntry]:
    return list(
        db.execute(
            select(LedgerEntry).where(LedgerEntry.order_id == order_id).order_by(LedgerEntry.created_at)
        ).scalars()
    )


def payout_history(db: Session, seller_id: UUID, currency: str, limit: int = 50) -> List[LedgerEntry]:
    return list(
        db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.seller_id == seller_id, LedgerEntry.currency == currency.upper())
            .order_by(LedgerEntry.created_at.desc())
            .limit(limit)
        ).scalars()
    )


def pending_entry_for_refund(db: Session, refund_id: UUID) -> Optional[LedgerEntry]:
    return db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.refund_id == refund_id, LedgerEntry.status == EntryStatus.PENDING,
               LedgerEntry.transaction_type.in_(REVERSING_TYPES))
        .order_by(LedgerEntry.created_at)
        .limit(1)
    ).scalar_one_or_none()


def completed_payouts_total(db: Session, seller_id: UUID, currency: str) -> int:
    stmt = select(func.coalesce(func.sum(LedgerEntry.amount_cents), 0)).where(
        LedgerEntry.seller_id == seller_id,
        LedgerEntry.currency == currency.upper(),
        LedgerEntry.transaction_type == TransactionType.PAYOUT,
        LedgerEntry.status == EntryStatus.COMPLETED,
    )
    return int(db.execute(stmt).scalar_one())
