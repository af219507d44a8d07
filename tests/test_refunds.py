# tests/test_refunds.py
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from escrowguard.errors import Conflict, InvalidState, NotFound, Unauthorized
from escrowguard.models import (
    DeliveryStatus, EntryStatus, HoldStatus, LedgerEntry, OrderStatus, Payment, PaymentStatus, Refund,
    RefundStatus, RefundType, TransactionType
)
from escrowguard.security import Actor, Role
from escrowguard.services import escrow, ledger, orders, refunds


def _entries(db, order_id, kind):
    return db.execute(
        select(LedgerEntry).where(LedgerEntry.order_id == order_id, LedgerEntry.transaction_type == kind)
    ).scalars().all()


def test_seller_refund_moves_hold_and_writes_pending_debit(db, seller, paid_order):
    order = paid_order(amount_cents=10000)
    refund = refunds.refund_payment(db, seller, order.id, "Item out of stock")

    assert refund.refund_status == RefundStatus.PENDING
    assert refund.from_escrow is True
    [debit] = _entries(db, order.id, TransactionType.REFUND)
    assert (debit.amount_cents, debit.status) == (-10000, EntryStatus.PENDING)
    assert escrow.active_hold_for_order(db, order.id) is None
    assert escrow.get_seller_escrow_balance(db, seller.id, "NGN") == 0


def test_refund_requires_a_payment(db, seller, make_order):
    order = make_order()
    with pytest.raises(NotFound, match="Payment record not found"):
        refunds.refund_payment(db, seller, order.id, "Changed my mind")


def test_only_the_seller_issues_refunds(db, buyer, paid_order):
    order = paid_order()
    with pytest.raises(Unauthorized):
        refunds.refund_payment(db, buyer, order.id, "Please refund me")
    # nothing written
    assert db.scalar(select(func.count(Refund.id))) == 0


def test_cannot_refund_more_than_paid(db, seller, paid_order):
    order = paid_order(amount_cents=5000)
    with pytest.raises(InvalidState, match="cannot exceed order amount"):
        refunds.refund_payment(db, seller, order.id, "Overcharged", refund_type=RefundType.PARTIAL,
                               amount_cents=5001)
    # the hold is untouched when a guard fails
    assert escrow.active_hold_for_order(db, order.id) is not None


def test_one_open_refund_per_order(db, seller, paid_order):
    order = paid_order()
    refunds.refund_payment(db, seller, order.id, "Partial", refund_type=RefundType.PARTIAL, amount_cents=1000)
    with pytest.raises(Conflict):
        refunds.refund_payment(db, seller, order.id, "Again", refund_type=RefundType.PARTIAL, amount_cents=1000)


def test_settlement_completes_refund_and_closes_custody(db, admin, seller, paid_order):
    order = paid_order(amount_cents=10000)
    refund = refunds.refund_payment(db, seller, order.id, "Damaged in transit")
    settled = refunds.settle_refund(db, admin, refund.id, True)

    assert settled.refund_status == RefundStatus.REFUNDED
    [debit] = _entries(db, order.id, TransactionType.REFUND)
    assert debit.status == EntryStatus.COMPLETED
    [credit] = _entries(db, order.id, TransactionType.ESCROW_REVERSAL)
    assert (credit.amount_cents, credit.status) == (10000, EntryStatus.COMPLETED)
    # the seller never received the money, so nothing is charged to them
    assert ledger.seller_balance(db, seller.id, "NGN") == 0
    db.refresh(order)
    assert order.order_status == OrderStatus.CANCELED


def test_partial_refund_from_escrow_leaves_seller_the_remainder(db, admin, seller, paid_order):
    order = paid_order(amount_cents=10000)
    refund = refunds.refund_payment(db, seller, order.id, "Missing accessory",
                                    refund_type=RefundType.PARTIAL, amount_cents=2500)
    refunds.settle_refund(db, admin, refund.id, True)
    assert ledger.seller_balance(db, seller.id, "NGN") == 7500
    assert ledger.completed_reversals_for_order(db, order.id) == 2500


def test_refund_after_payout_is_charged_to_seller(db, admin, seller, paid_order):
    order = paid_order(amount_cents=8000)
    escrow.release_hold(db, admin, order.id)
    refund = refunds.refund_payment(db, seller, order.id, "Goodwill gesture",
                                    refund_type=RefundType.PARTIAL, amount_cents=3000)
    assert refund.from_escrow is False
    refunds.settle_refund(db, admin, refund.id, True)
    assert ledger.seller_balance(db, seller.id, "NGN") == 5000


def test_failed_settlement(db, admin, seller, paid_order):
    order = paid_order(amount_cents=10000)
    refund = refunds.refund_payment(db, seller, order.id, "Card declined refund")
    failed = refunds.settle_refund(db, admin, refund.id, False)

    assert failed.refund_status == RefundStatus.FAILED
    [debit] = _entries(db, order.id, TransactionType.REFUND)
    assert debit.status == EntryStatus.FAILED
    assert ledger.completed_reversals_for_order(db, order.id) == 0
    # the money is still held for the buyer: nothing reaches the seller
    assert _entries(db, order.id, TransactionType.ESCROW_REVERSAL) == []
    assert ledger.seller_balance(db, seller.id, "NGN") == 0
    assert escrow.active_hold_for_order(db, order.id) is None
    with pytest.raises(InvalidState):
        escrow.release_hold(db, admin, order.id)


def test_retry_after_failed_settlement_closes_custody_once(db, admin, seller, paid_order):
    order = paid_order(amount_cents=10000)
    first = refunds.refund_payment(db, seller, order.id, "Card declined refund")
    refunds.settle_refund(db, admin, first.id, False)

    # a failed refund ends the flow; the retry still draws on the held funds
    retry = refunds.refund_payment(db, seller, order.id, "Retry refund", refund_type=RefundType.PARTIAL,
                                   amount_cents=4000)
    assert retry.from_escrow is True
    refunds.settle_refund(db, admin, retry.id, True)

    [credit] = _entries(db, order.id, TransactionType.ESCROW_REVERSAL)
    assert (credit.amount_cents, credit.refund_id) == (10000, retry.id)
    assert ledger.seller_balance(db, seller.id, "NGN") == 6000

    # custody is closed; a later refund is charged to the seller
    later = refunds.refund_payment(db, seller, order.id, "Goodwill", refund_type=RefundType.PARTIAL,
                                   amount_cents=1000)
    assert later.from_escrow is False


def test_settling_twice_is_refused(db, admin, seller, paid_order):
    order = paid_order()
    refund = refunds.refund_payment(db, seller, order.id, "Wrong size")
    refunds.settle_refund(db, admin, refund.id, True)
    with pytest.raises(InvalidState):
        refunds.settle_refund(db, admin, refund.id, True)


def test_only_the_platform_settles(db, seller, paid_order):
    order = paid_order()
    refund = refunds.refund_payment(db, seller, order.id, "Wrong size")
    with pytest.raises(Unauthorized):
        refunds.settle_refund(db, seller, refund.id, True)


def test_no_over_refund_across_successive_partials(db, admin, seller, paid_order):
    order = paid_order(amount_cents=10000)
    for amount in (4000, 6000):
        r = refunds.refund_payment(db, seller, order.id, "Partial refund", refund_type=RefundType.PARTIAL,
                                   amount_cents=amount)
        refunds.settle_refund(db, admin, r.id, True)

    with pytest.raises(InvalidState, match="cannot exceed"):
        refunds.refund_payment(db, seller, order.id, "One more", refund_type=RefundType.PARTIAL, amount_cents=1)
    assert ledger.completed_reversals_for_order(db, order.id) <= order.amount_cents
    db.refresh(order)
    assert order.order_status == OrderStatus.CANCELED


def test_payment_marked_refunded_once_fully_refunded(db, admin, seller, paid_order):
    order = paid_order(amount_cents=10000)
    refund = refunds.refund_payment(db, seller, order.id, "Out of stock")
    refunds.settle_refund(db, admin, refund.id, True)
    db.refresh(refund)
    assert refund.payment_id is not None
    assert db.get(Payment, refund.payment_id).status == PaymentStatus.REFUNDED


def test_open_refund_blocks_release(db, admin, seller, paid_order):
    order = paid_order()
    escrow_hold = escrow.active_hold_for_order(db, order.id)
    assert escrow_hold.hold_status == HoldStatus.ACTIVE

    refunds.refund_payment(db, seller, order.id, "Partial", refund_type=RefundType.PARTIAL, amount_cents=100)
    # the refund froze the hold
    with pytest.raises(InvalidState):
        escrow.release_hold(db, admin, order.id)


def test_buyer_initiated_refund_needs_delivery(db, buyer, seller, paid_order):
    order = paid_order()
    with pytest.raises(InvalidState, match="delivered"):
        refunds.initiate_refund(db, buyer, order.id, "Never arrived in one piece")

    orders.confirm_delivery(db, buyer, order.id)
    refund = refunds.initiate_refund(db, buyer, order.id, "Arrived broken, please refund")

    assert refund.rma_number.startswith("RMA-")
    [debit] = _entries(db, order.id, TransactionType.REFUND_INITIATED)
    assert debit.amount_cents == -order.amount_cents
    db.refresh(order)
    assert order.delivery_status == DeliveryStatus.DELIVERED


def test_only_the_buyer_initiates(db, seller, paid_order):
    order = paid_order()
    with pytest.raises(Unauthorized):
        refunds.initiate_refund(db, seller, order.id, "Refund on behalf of buyer")


def test_refund_status_lookup(db, buyer, seller, paid_order):
    order = paid_order()
    assert refunds.get_refund_status(db, buyer, order.id) is None
    refunds.refund_payment(db, seller, order.id, "Out of stock")
    assert refunds.get_refund_status(db, buyer, order.id).refund_status == RefundStatus.PENDING
    stranger = Actor(id=uuid4(), role=Role.BUYER)
    with pytest.raises(Unauthorized):
        refunds.get_refund_status(db, stranger, order.id)
