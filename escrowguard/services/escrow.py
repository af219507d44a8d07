# escrowguard/services/escrow.py
"""
Escrow holds.

- One 'active' hold per order (partial unique index), opened when payment is
  confirmed. A hold leaves 'active' exactly once: to 'released' (seller is
  paid) or to 'refunded' (money goes back to the buyer). Never back.
- Expiry is derived: created_at + escrow_hold_days. Nothing is stored.
- Escrow balance is computed live from active holds joined to orders; the
  ledger only records realized movements.
- A refund that moves the hold to 'refunded' ends custody (an
  'escrow_reversal' credit) only when it succeeds. If it fails, the funds
  stay held and the next refund for the order picks up custody.
- A release and its 'payout' ledger credit are written in the same
  transaction, and the status change is a guarded UPDATE so two concurrent
  releases cannot both succeed.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from escrowguard.config import settings
from escrowguard.db import atomic
from escrowguard.errors import Conflict, EscrowError, InvalidState, NotFound
from escrowguard.metrics import holds_opened_total, holds_released_total
from escrowguard.models import (
    EntryStatus, HoldStatus, OPEN_REFUND_STATUSES, Order, OrderStatus, Payment, PaymentHold,
    PaymentStatus, PayoutStatus, Refund, TransactionType, as_utc, now_utc
)
from escrowguard.security import Action, Actor, ensure_can_act_on
from escrowguard.services import ledger

logger = logging.getLogger(__name__)

DAY = timedelta(days=1)


@dataclass(frozen=True)
class HoldView:
    hold: PaymentHold
    order: Order
    expires_at: datetime
    days_remaining: int

    @property
    def auto_release_eligible(self) -> bool:
        return self.days_remaining == 0


def hold_expires_at(created_at: datetime) -> datetime:
    return as_utc(created_at) + timedelta(days=settings.escrow_hold_days)


def days_remaining(created_at: datetime, now: datetime) -> int:
    left = (hold_expires_at(created_at) - now) / DAY
    return max(0, math.ceil(left))


def lock_order(db: Session, order_id: UUID) -> Order:
    order = db.execute(select(Order).where(Order.id == order_id).with_for_update()).scalar_one_or_none()
    if not order:
        raise NotFound("Order not found")
    return order


def active_hold_for_order(db: Session, order_id: UUID) -> Optional[PaymentHold]:
    return db.execute(
        select(PaymentHold).where(PaymentHold.order_id == order_id, PaymentHold.hold_status == HoldStatus.ACTIVE)
    ).scalar_one_or_none()


def has_open_refund(db: Session, order_id: UUID) -> bool:
    return db.execute(
        select(func.count(Refund.id)).where(Refund.order_id == order_id, Refund.refund_status.in_(OPEN_REFUND_STATUSES))
    ).scalar_one() > 0


def _move_hold(db: Session, order_id: UUID, to_status: HoldStatus, now: datetime) -> bool:
    """Compare-and-swap active -> released/refunded. False when no active hold was there."""
    stamp = {"released_at": now} if to_status == HoldStatus.RELEASED else {"refunded_at": now}
    result = db.execute(
        update(PaymentHold)
        .where(PaymentHold.order_id == order_id, PaymentHold.hold_status == HoldStatus.ACTIVE)
        .values(hold_status=to_status, **stamp)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def refund_active_hold(db: Session, order_id: UUID, now: datetime) -> bool:
    return _move_hold(db, order_id, HoldStatus.REFUNDED, now)


def custody_unsettled(db: Session, order_id: UUID) -> bool:
    """The hold went to 'refunded' but no refund has gone through yet, so the funds are still held."""
    refunded = db.execute(
        select(func.count(PaymentHold.id)).where(
            PaymentHold.order_id == order_id, PaymentHold.hold_status == HoldStatus.REFUNDED
        )
    ).scalar_one() > 0
    return refunded and not ledger.has_completed_entry(db, order_id, TransactionType.ESCROW_REVERSAL)


def take_custody(db: Session, order_id: UUID, now: datetime) -> bool:
    """
    True when a new refund is funded from escrow: either it moves the active
    hold to 'refunded' now, or an earlier refund did and then failed.
    """
    return refund_active_hold(db, order_id, now) or custody_unsettled(db, order_id)


def release_into_payout(db: Session, order: Order, now: datetime, reason: str) -> bool:
    """
    Hold -> released paired with a completed 'payout' credit. No commit.
    Returns False when the order had no active hold.
    """
    if not _move_hold(db, order.id, HoldStatus.RELEASED, now):
        return False
    ledger.append_entry(
        db,
        seller_id=order.seller_id,
        order_id=order.id,
        transaction_type=TransactionType.PAYOUT,
        amount_cents=order.amount_cents,
        currency=order.currency,
        status=EntryStatus.COMPLETED,
        description=f"Escrow release for order {str(order.id)[:8]} ({reason})",
    )
    order.payout_status = PayoutStatus.PAID
    holds_released_total.labels(reason).inc()
    return True


def confirm_payment(db: Session, actor: Actor, order_id: UUID, transaction_ref: str,
                    *, now: Optional[datetime] = None) -> PaymentHold:
    """Record the completed payment and put the order's funds in escrow."""
    now = now or now_utc()
    with atomic(db):
        order = lock_order(db, order_id)
        ensure_can_act_on(actor, order, Action.CONFIRM_PAYMENT, "Only the seller can confirm payment for this order")
        if order.order_status != OrderStatus.PENDING:
            if order.order_status == OrderStatus.CANCELED:
                raise InvalidState("Order has been canceled")
            raise Conflict("Payment already confirmed for this order")

        payment = db.execute(select(Payment).where(Payment.order_id == order.id)).scalar_one_or_none()
        if payment and payment.status == PaymentStatus.COMPLETED:
            raise Conflict("Payment already confirmed for this order")
        if not payment:
            payment = Payment(order_id=order.id, buyer_id=order.buyer_id,
                              amount_cents=order.amount_cents, currency=order.currency)
            db.add(payment)
        payment.status = PaymentStatus.COMPLETED
        payment.transaction_ref = transaction_ref
        db.flush()

        hold = PaymentHold(order_id=order.id, payment_id=payment.id, hold_status=HoldStatus.ACTIVE, created_at=now)
        db.add(hold)
        order.order_status = OrderStatus.CONFIRMED
        order.payout_status = PayoutStatus.IN_ESCROW
        db.flush()

        ledger.append_entry(
            db,
            seller_id=order.seller_id,
            order_id=order.id,
            payment_id=payment.id,
            transaction_type=TransactionType.SALE,
            amount_cents=order.amount_cents,
            currency=order.currency,
            status=EntryStatus.PENDING,
            description=f"Payment hold for order {str(order.id)[:8]}",
        )
    holds_opened_total.inc()
    logger.info(f"Hold {hold.id} opened for order {order_id}: {order.amount_cents} {order.currency}")
    return hold


def get_seller_escrow_balance(db: Session, seller_id: UUID, currency: str) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(Order.amount_cents), 0))
        .select_from(PaymentHold)
        .join(Order, PaymentHold.order_id == Order.id)
        .where(
            Order.seller_id == seller_id,
            Order.currency == currency.upper(),
            PaymentHold.hold_status == HoldStatus.ACTIVE,
        )
    ).scalar_one()
    return int(total)


def get_seller_active_holds(db: Session, seller_id: UUID, currency: str,
                            *, now: Optional[datetime] = None) -> List[HoldView]:
    now = now or now_utc()
    rows = db.execute(
        select(PaymentHold, Order)
        .join(Order, PaymentHold.order_id == Order.id)
        .where(
            Order.seller_id == seller_id,
            Order.currency == currency.upper(),
            PaymentHold.hold_status == HoldStatus.ACTIVE,
        )
        .order_by(PaymentHold.created_at)
    ).all()
    return [
        HoldView(
            hold=hold,
            order=order,
            expires_at=hold_expires_at(hold.created_at),
            days_remaining=days_remaining(hold.created_at, now),
        )
        for hold, order in rows
    ]


def release_hold(db: Session, actor: Actor, order_id: UUID, *, now: Optional[datetime] = None) -> PaymentHold:
    """
    Pay the seller out of escrow. Admins (the payout process) may release at
    any time; a seller only once the hold window has elapsed.
    """
    now = now or now_utc()
    with atomic(db):
        order = lock_order(db, order_id)
        ensure_can_act_on(actor, order, Action.RELEASE_FUNDS, "Cannot release funds for this order")
        hold = active_hold_for_order(db, order.id)
        if not hold:
            raise InvalidState("Order has no active escrow hold")
        if not actor.is_admin and days_remaining(hold.created_at, now) > 0:
            raise InvalidState("Escrow hold period has not elapsed yet")
        if has_open_refund(db, order.id):
            raise InvalidState("Order has a refund in progress")
        if not release_into_payout(db, order, now, "manual"):
            raise Conflict("Escrow hold was already released or refunded")
    db.refresh(hold)
    logger.info(f"Hold {hold.id} released for order {order_id}")
    return hold


def eligible_for_auto_release(db: Session, now: datetime) -> List[UUID]:
    cutoff = now - timedelta(days=settings.escrow_hold_days)
    return list(db.execute(
        select(PaymentHold.order_id).where(
            PaymentHold.hold_status == HoldStatus.ACTIVE,
            PaymentHold.created_at <= cutoff,
        )
    ).scalars())


def auto_release_expired_holds(db: Session, *, now: Optional[datetime] = None) -> int:
    """Sweeper entry point. Each hold is released in its own transaction."""
    now = now or now_utc()
    order_ids = eligible_for_auto_release(db, now)
    db.rollback()  # end the read so each release starts clean
    released = 0
    for order_id in order_ids:
        try:
            with atomic(db):
                order = lock_order(db, order_id)
                if has_open_refund(db, order.id):
                    logger.info(f"Auto-release skipped for order {order_id}: refund in progress")
                    continue
                if release_into_payout(db, order, now, "auto"):
                    released += 1
        except EscrowError as exc:
            logger.warning(f"Auto-release failed for order {order_id}: {exc.message}")
    if released:
        logger.info(f"Auto-released {released} escrow holds")
    return released


def escrow_summary(db: Session, seller_id: UUID, currency: str, *, now: Optional[datetime] = None) -> dict:
    now = now or now_utc()
    balance = get_seller_escrow_balance(db, seller_id, currency)
    holds = get_seller_active_holds(db, seller_id, currency, now=now)
    history = ledger.payout_history(db, seller_id, currency, limit=10)
    return {
        "currency": currency.upper(),
        "balance_cents": balance,
        "active_holds": len(holds),
        "upcoming_releases": sum(1 for h in holds if h.days_remaining <= 7),
        "total_paid_out_cents": ledger.completed_payouts_total(db, seller_id, currency),
        "available_balance_cents": ledger.seller_balance(db, seller_id, currency),
        "recent_entries": history[:5],
        "holds": holds,
    }
