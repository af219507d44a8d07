# escrowguard/services/refunds.py
"""
Refund / return state machine.

Two flows share one table and one set of guards:

  direct:  pending -> refunded | failed
  return:  return_requested -> return_approved | return_rejected | canceled
           return_approved  -> refunded

Guards applied to every new flow, in this order, before anything is written:
  1. the caller may act on the order (buyer or seller side, admins anywhere)
  2. no other flow for the order is open (also a partial unique index)
  3. amount <= order amount - refunds already completed for the order

Every status change is a guarded UPDATE on the current status, so two
concurrent decisions on the same flow cannot both land.
"""
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from time import perf_counter
from typing import Dict, FrozenSet, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from escrowguard.config import settings
from escrowguard.db import atomic
from escrowguard.errors import Conflict, InvalidState, NotFound
from escrowguard.metrics import refund_latency, refund_transitions_total
from escrowguard.models import (
    DeliveryStatus, EntryStatus, Order, OrderStatus, Payment, PaymentStatus, Refund, RefundFlowKind,
    RefundStatus, RefundType, TransactionType, as_utc, now_utc
)
from escrowguard.money import Money
from escrowguard.notifications import NotificationSink, fire_and_forget
from escrowguard.security import Action, Actor, ensure_can_act_on
from escrowguard.services import ledger
from escrowguard.services.escrow import has_open_refund, lock_order, take_custody

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundFlow:
    kind: RefundFlowKind
    entry_status: RefundStatus
    transitions: Dict[RefundStatus, FrozenSet[RefundStatus]]

    def can_move(self, current: RefundStatus, target: RefundStatus) -> bool:
        return target in self.transitions.get(current, frozenset())


DIRECT_REFUND = RefundFlow(
    kind=RefundFlowKind.DIRECT,
    entry_status=RefundStatus.PENDING,
    transitions={
        RefundStatus.PENDING: frozenset({RefundStatus.REFUNDED, RefundStatus.FAILED}),
    },
)

RETURN_FLOW = RefundFlow(
    kind=RefundFlowKind.RETURN,
    entry_status=RefundStatus.RETURN_REQUESTED,
    transitions={
        RefundStatus.RETURN_REQUESTED: frozenset({
            RefundStatus.RETURN_APPROVED, RefundStatus.RETURN_REJECTED, RefundStatus.CANCELED,
        }),
        RefundStatus.RETURN_APPROVED: frozenset({RefundStatus.REFUNDED}),
    },
)

FLOWS = {flow.kind: flow for flow in (DIRECT_REFUND, RETURN_FLOW)}

RETURN_REASONS = (
    "defective", "wrong_item", "not_as_described", "damaged", "changed_mind", "other",
)


def flow_of(refund: Refund) -> RefundFlow:
    return FLOWS[refund.flow]


def generate_rma_number(now: datetime) -> str:
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(9))
    return f"RMA-{int(now.timestamp() * 1000)}-{suffix}"


def restocked_amount(refund: Refund, restock_percentage: int) -> int:
    """round(amount x pct / 100), halves up."""
    return Money(refund.amount_cents, refund.currency).percent_rounded(restock_percentage).amount_cents


def refundable_cents(db: Session, order: Order) -> int:
    return order.amount_cents - ledger.completed_reversals_for_order(db, order.id)


def _resolve_amount(order: Order, refund_type: RefundType, amount_cents: Optional[int]) -> int:
    if refund_type == RefundType.PARTIAL:
        if amount_cents is None:
            raise InvalidState("Partial refunds need an amount")
        return amount_cents
    return order.amount_cents if amount_cents is None else amount_cents


def _guard_new_flow(db: Session, order: Order, amount_cents: int) -> None:
    if has_open_refund(db, order.id):
        raise Conflict("A refund is already in progress for this order")
    if amount_cents <= 0:
        raise InvalidState("Refund amount must be positive")
    if amount_cents > refundable_cents(db, order):
        raise InvalidState("Refund amount cannot exceed order amount")


def _completed_payment(db: Session, order: Order) -> Payment:
    payment = db.execute(select(Payment).where(Payment.order_id == order.id)).scalar_one_or_none()
    if not payment:
        raise NotFound("Payment record not found for this order")
    if payment.status != PaymentStatus.COMPLETED:
        raise InvalidState(f"Payment is {payment.status.value}")
    return payment


def _get_refund(db: Session, refund_id: UUID, *, for_update: bool = False) -> Refund:
    stmt = select(Refund).where(Refund.id == refund_id)
    if for_update:
        stmt = stmt.with_for_update()
    refund = db.execute(stmt).scalar_one_or_none()
    if not refund:
        raise NotFound("Refund not found")
    return refund


def _advance(db: Session, refund: Refund, target: RefundStatus, **values) -> None:
    """Compare-and-swap the flow from its current status to target. No commit."""
    current = refund.refund_status
    flow = flow_of(refund)
    if not flow.can_move(current, target):
        raise InvalidState(f"Cannot move a {flow.kind.value} refund from {current.value} to {target.value}")
    result = db.execute(
        update(Refund)
        .where(Refund.id == refund.id, Refund.refund_status == current)
        .values(refund_status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Conflict("Refund was changed by another request")
    refund_transitions_total.labels(flow.kind.value, target.value).inc()


def _end_custody(db: Session, order: Order, refund: Refund, description: str) -> None:
    """Funds held in escrow leave custody: the held amount is credited, the refund debit nets it."""
    ledger.append_entry(
        db,
        seller_id=order.seller_id,
        order_id=order.id,
        refund_id=refund.id,
        transaction_type=TransactionType.ESCROW_REVERSAL,
        amount_cents=order.amount_cents,
        currency=order.currency,
        status=EntryStatus.COMPLETED,
        description=description,
    )


def _open_direct_refund(db: Session, order: Order, *, amount_cents: int, refund_type: RefundType,
                        reason: str, entry_type: TransactionType, now: datetime,
                        rma_number: Optional[str] = None, description: Optional[str] = None) -> Refund:
    payment = _completed_payment(db, order)
    _guard_new_flow(db, order, amount_cents)

    refund = Refund(
        order_id=order.id,
        payment_id=payment.id,
        buyer_id=order.buyer_id,
        seller_id=order.seller_id,
        flow=RefundFlowKind.DIRECT,
        amount_cents=amount_cents,
        currency=order.currency,
        refund_type=refund_type,
        reason=reason,
        description=description,
        refund_status=DIRECT_REFUND.entry_status,
        rma_number=rma_number,
        requested_at=now,
    )
    db.add(refund)
    db.flush()

    refund.from_escrow = take_custody(db, order.id, now)
    ledger.append_entry(
        db,
        seller_id=order.seller_id,
        order_id=order.id,
        refund_id=refund.id,
        payment_id=payment.id,
        transaction_type=entry_type,
        amount_cents=-amount_cents,
        currency=order.currency,
        status=EntryStatus.PENDING,
        description=f"Refund for order {str(order.id)[:8]}: {reason}",
    )
    refund_transitions_total.labels(RefundFlowKind.DIRECT.value, refund.refund_status.value).inc()
    return refund


def refund_payment(db: Session, actor: Actor, order_id: UUID, reason: str, *,
                   refund_type: RefundType = RefundType.FULL, amount_cents: Optional[int] = None,
                   now: Optional[datetime] = None) -> Refund:
    """Seller-issued refund. Settled later by the payment provider (settle_refund)."""
    start = perf_counter()
    now = now or now_utc()
    try:
        with atomic(db):
            order = lock_order(db, order_id)
            ensure_can_act_on(actor, order, Action.ISSUE_REFUND, "Only the seller can issue refunds for this order")
            amount = _resolve_amount(order, refund_type, amount_cents)
            refund = _open_direct_refund(db, order, amount_cents=amount, refund_type=refund_type,
                                         reason=reason, entry_type=TransactionType.REFUND, now=now)
    finally:
        refund_latency.observe(perf_counter() - start)
    logger.info(f"Refund {refund.id} opened for order {order_id}: {amount} {refund.currency}")
    return refund


def initiate_refund(db: Session, actor: Actor, order_id: UUID, reason: str, *,
                    refund_type: RefundType = RefundType.FULL, amount_cents: Optional[int] = None,
                    description: Optional[str] = None, now: Optional[datetime] = None) -> Refund:
    """Buyer-initiated refund of a delivered order."""
    start = perf_counter()
    now = now or now_utc()
    try:
        with atomic(db):
            order = lock_order(db, order_id)
            ensure_can_act_on(actor, order, Action.REQUEST_REFUND, "Cannot initiate refund for this order")
            if order.delivery_status != DeliveryStatus.DELIVERED:
                raise InvalidState("Can only refund delivered orders")
            amount = _resolve_amount(order, refund_type, amount_cents)
            refund = _open_direct_refund(db, order, amount_cents=amount, refund_type=refund_type,
                                         reason=reason, entry_type=TransactionType.REFUND_INITIATED,
                                         now=now, rma_number=generate_rma_number(now),
                                         description=description)
    finally:
        refund_latency.observe(perf_counter() - start)
    logger.info(f"Refund {refund.id} initiated by buyer for order {order_id}: {amount} {refund.currency}")
    return refund


def settle_refund(db: Session, actor: Actor, refund_id: UUID, succeeded: bool,
                  *, now: Optional[datetime] = None) -> Refund:
    """The payment provider's answer for a direct refund."""
    now = now or now_utc()
    with atomic(db):
        refund = _get_refund(db, refund_id, for_update=True)
        ensure_can_act_on(actor, refund, Action.SETTLE, "Only the platform can settle refunds")
        if refund.flow != RefundFlowKind.DIRECT:
            raise InvalidState("Returns are completed by the seller, not settled")
        order = lock_order(db, refund.order_id)
        entry = ledger.pending_entry_for_refund(db, refund.id)
        if entry is None:
            raise InvalidState("Refund has no pending ledger entry")

        if succeeded:
            if refund.amount_cents > refundable_cents(db, order):
                raise InvalidState("Refund amount cannot exceed order amount")
            target, entry_status = RefundStatus.REFUNDED, EntryStatus.COMPLETED
        else:
            target, entry_status = RefundStatus.FAILED, EntryStatus.FAILED

        stamp = {"refunded_at": now} if succeeded else {"processed_at": now}
        _advance(db, refund, target, **stamp)
        ledger.settle_entry(db, entry.id, entry_status)
        if succeeded and refund.from_escrow:
            _end_custody(db, order, refund, f"Escrow closed by refund {str(refund.id)[:8]}")

        if succeeded and refundable_cents(db, order) == 0:
            payment = db.get(Payment, refund.payment_id)
            if payment is not None:
                payment.status = PaymentStatus.REFUNDED
            if order.delivery_status != DeliveryStatus.DELIVERED:
                order.order_status = OrderStatus.CANCELED
                order.updated_at = now
    db.refresh(refund)
    logger.info(f"Refund {refund_id} settled as {refund.refund_status.value}")
    return refund


def request_return(db: Session, actor: Actor, order_id: UUID, reason: str, description: str,
                   sink: NotificationSink, *, now: Optional[datetime] = None) -> Refund:
    start = perf_counter()
    now = now or now_utc()
    try:
        with atomic(db):
            order = lock_order(db, order_id)
            ensure_can_act_on(actor, order, Action.REQUEST_REFUND, "You can only return your own orders")
            if order.order_status in (OrderStatus.PENDING, OrderStatus.CANCELED, OrderStatus.RETURNED):
                raise InvalidState(f"Cannot return an order that is {order.order_status.value}")

            days_since_order = (now - as_utc(order.order_date)) // timedelta(days=1)
            if days_since_order > settings.return_window_days:
                raise InvalidState(
                    f"Return window has expired. Items must be returned within "
                    f"{settings.return_window_days} days."
                )

            amount = refundable_cents(db, order)
            _guard_new_flow(db, order, amount)

            refund = Refund(
                order_id=order.id,
                payment_id=None,
                buyer_id=order.buyer_id,
                seller_id=order.seller_id,
                flow=RefundFlowKind.RETURN,
                amount_cents=amount,
                currency=order.currency,
                refund_type=RefundType.FULL,
                reason=reason,
                description=description,
                refund_status=RETURN_FLOW.entry_status,
                rma_number=generate_rma_number(now),
                requested_at=now,
            )
            payment = db.execute(select(Payment).where(Payment.order_id == order.id)).scalar_one_or_none()
            if payment is not None:
                refund.payment_id = payment.id
            db.add(refund)
            db.flush()

            # informational; nothing moves until the seller decides
            ledger.append_entry(
                db,
                seller_id=order.seller_id,
                order_id=order.id,
                refund_id=refund.id,
                transaction_type=TransactionType.RETURN_REQUEST,
                amount_cents=0,
                currency=order.currency,
                status=EntryStatus.PENDING,
                description=f"Return requested for order {str(order.id)[:8]}: {reason}",
            )
            refund_transitions_total.labels(RefundFlowKind.RETURN.value, refund.refund_status.value).inc()
    finally:
        refund_latency.observe(perf_counter() - start)

    logger.info(f"Return {refund.id} requested for order {order_id} ({refund.rma_number})")
    fire_and_forget(sink, "return_requested", seller_id=refund.seller_id, refund_id=refund.id, order_id=order_id)
    return refund


def process_return(db: Session, actor: Actor, refund_id: UUID, approved: bool, sink: NotificationSink, *,
                   seller_note: Optional[str] = None, restock_percentage: int = 100,
                   now: Optional[datetime] = None) -> Refund:
    start = perf_counter()
    now = now or now_utc()
    if not 0 <= restock_percentage <= 100:
        raise InvalidState("Restock percentage must be between 0 and 100")
    try:
        with atomic(db):
            refund = _get_refund(db, refund_id, for_update=True)
            order = lock_order(db, refund.order_id)
            ensure_can_act_on(actor, order, Action.PROCESS_RETURN, "Cannot process return for this order")
            if refund.refund_status != RefundStatus.RETURN_REQUESTED:
                raise InvalidState("Return is not awaiting a decision")

            if approved:
                refund_amount = restocked_amount(refund, restock_percentage)
                if refund_amount > 0:
                    ledger.append_entry(
                        db,
                        seller_id=order.seller_id,
                        order_id=order.id,
                        refund_id=refund.id,
                        transaction_type=TransactionType.RETURN_APPROVED,
                        amount_cents=-refund_amount,
                        currency=order.currency,
                        status=EntryStatus.PENDING,
                        description=f"Return approved ({restock_percentage}% refund)",
                    )
                _advance(db, refund, RefundStatus.RETURN_APPROVED, processed_at=now,
                         seller_note=seller_note, restock_percentage=restock_percentage)
            else:
                _advance(db, refund, RefundStatus.RETURN_REJECTED, processed_at=now, seller_note=seller_note)
    finally:
        refund_latency.observe(perf_counter() - start)

    db.refresh(refund)
    logger.info(f"Return {refund_id} {'approved' if approved else 'rejected'}")
    if not approved:
        fire_and_forget(sink, "return_rejected", buyer_id=refund.buyer_id, refund_id=refund.id,
                        order_id=refund.order_id)
    return refund


def complete_refund(db: Session, actor: Actor, refund_id: UUID, sink: NotificationSink, *,
                    received_condition: Optional[str] = None, notes: Optional[str] = None,
                    now: Optional[datetime] = None) -> Refund:
    """Seller has the item back; the buyer is refunded the restocked amount."""
    start = perf_counter()
    now = now or now_utc()
    try:
        with atomic(db):
            refund = _get_refund(db, refund_id, for_update=True)
            order = lock_order(db, refund.order_id)
            ensure_can_act_on(actor, order, Action.PROCESS_RETURN, "Cannot complete refund for this order")
            if refund.refund_status != RefundStatus.RETURN_APPROVED:
                raise InvalidState("Return must be approved before completing refund")

            refund_amount = restocked_amount(refund, refund.restock_percentage)
            if refund_amount > refundable_cents(db, order):
                raise InvalidState("Refund amount cannot exceed order amount")

            from_escrow = take_custody(db, order.id, now)
            ledger.append_entry(
                db,
                seller_id=order.seller_id,
                order_id=order.id,
                refund_id=refund.id,
                transaction_type=TransactionType.REFUND_COMPLETED,
                amount_cents=-refund_amount,
                currency=order.currency,
                status=EntryStatus.COMPLETED,
                description=f"Refund completed for {refund.rma_number}",
            )
            if from_escrow:
                _end_custody(db, order, refund, f"Escrow closed by return {refund.rma_number}")
            _advance(db, refund, RefundStatus.REFUNDED, refunded_at=now, from_escrow=from_escrow,
                     received_condition=received_condition, notes=notes)

            order.order_status = OrderStatus.RETURNED
            order.updated_at = now
            if refundable_cents(db, order) == 0 and refund.payment_id is not None:
                payment = db.get(Payment, refund.payment_id)
                payment.status = PaymentStatus.REFUNDED
    finally:
        refund_latency.observe(perf_counter() - start)

    db.refresh(refund)
    logger.info(f"Return {refund_id} refunded: {refund_amount} {refund.currency}")
    fire_and_forget(sink, "refund_completed", buyer_id=refund.buyer_id, refund_id=refund.id,
                    amount_cents=refund_amount, currency=refund.currency)
    return refund


def cancel_refund(db: Session, actor: Actor, refund_id: UUID, *, now: Optional[datetime] = None) -> Refund:
    now = now or now_utc()
    with atomic(db):
        refund = _get_refund(db, refund_id, for_update=True)
        ensure_can_act_on(actor, refund, Action.REQUEST_REFUND, "You can only cancel your own returns")
        if refund.refund_status != RefundStatus.RETURN_REQUESTED:
            raise InvalidState("Only a requested return can be canceled")
        _advance(db, refund, RefundStatus.CANCELED, canceled_at=now)
    db.refresh(refund)
    logger.info(f"Return {refund_id} canceled by buyer")
    return refund


def get_refund_status(db: Session, actor: Actor, order_id: UUID) -> Optional[Refund]:
    order = db.get(Order, order_id)
    if not order:
        raise NotFound("Order not found")
    ensure_can_act_on(actor, order, Action.VIEW, "You cannot view this order")
    return db.execute(
        select(Refund).where(Refund.order_id == order_id).order_by(Refund.requested_at.desc()).limit(1)
    ).scalar_one_or_none()


def list_my_returns(db: Session, actor: Actor, *, limit: int = 20, offset: int = 0) -> List[Refund]:
    return list(db.execute(
        select(Refund)
        .where(Refund.buyer_id == actor.id, Refund.flow == RefundFlowKind.RETURN)
        .order_by(Refund.requested_at.desc())
        .limit(limit)
        .offset(offset)
    ).scalars())
