# escrowguard/services/orders.py
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from escrowguard.db import atomic
from escrowguard.errors import InvalidState, NotFound
from escrowguard.models import (
    DeliveryStatus, Listing, Order, OrderStatus, SupplyCapacity, now_utc
)
from escrowguard.security import Action, Actor, ensure_can_act_on
from escrowguard.services import inventory
from escrowguard.services.escrow import active_hold_for_order, lock_order

logger = logging.getLogger(__name__)

# seller-driven fulfilment; pending -> confirmed happens on payment confirmation
FULFILMENT_FLOW = [
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
]
CANCELABLE = (OrderStatus.PENDING, OrderStatus.CONFIRMED)


def get_order(db: Session, actor: Actor, order_id: UUID) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise NotFound("Order not found")
    ensure_can_act_on(actor, order, Action.VIEW, "You cannot view this order")
    return order


def update_order_status(db: Session, actor: Actor, order_id: UUID, status: OrderStatus,
                        *, tracking_number: Optional[str] = None, now: Optional[datetime] = None) -> Order:
    now = now or now_utc()
    with atomic(db):
        order = lock_order(db, order_id)
        ensure_can_act_on(actor, order, Action.FULFILL, "Only the seller can update this order")
        if order.order_status not in FULFILMENT_FLOW:
            raise InvalidState(f"Cannot update an order that is {order.order_status.value}")
        if status not in FULFILMENT_FLOW[1:]:
            raise InvalidState(f"Sellers cannot move an order to {status.value}")
        if FULFILMENT_FLOW.index(status) <= FULFILMENT_FLOW.index(order.order_status):
            raise InvalidState(f"Order is already {order.order_status.value}")

        order.order_status = status
        if status == OrderStatus.SHIPPED:
            order.delivery_status = DeliveryStatus.IN_TRANSIT
        elif status == OrderStatus.DELIVERED:
            order.delivery_status = DeliveryStatus.DELIVERED
        if tracking_number:
            order.tracking_number = tracking_number
        order.updated_at = now
    db.refresh(order)
    logger.info(f"Order {order_id} moved to {status.value}")
    return order


def _restock(db: Session, order: Order) -> None:
    listing = db.get(Listing, order.listing_id)
    if listing is None or listing.supply_capacity != SupplyCapacity.LIMITED:
        return
    db.execute(
        update(Listing)
        .where(Listing.id == listing.id)
        .values(quantity_available=Listing.quantity_available + order.quantity)
        .execution_options(synchronize_session=False)
    )


def cancel_order(db: Session, actor: Actor, order_id: UUID, reason: Optional[str] = None,
                 *, now: Optional[datetime] = None) -> Order:
    """
    Either party may cancel before money is in escrow. Once a hold is active
    the funds have to go back through a refund instead.
    """
    now = now or now_utc()
    with atomic(db):
        order = lock_order(db, order_id)
        ensure_can_act_on(actor, order, Action.CANCEL, "You cannot cancel this order")
        if order.order_status not in CANCELABLE:
            raise InvalidState(f"Cannot cancel an order that is {order.order_status.value}")
        if active_hold_for_order(db, order.id):
            raise InvalidState("Order has been paid; issue a refund instead")
        order.order_status = OrderStatus.CANCELED
        order.updated_at = now
        _restock(db, order)
        inventory.release_for_order(db, order.id, now)
    db.refresh(order)
    logger.info(f"Order {order_id} canceled by {actor.role.value} {actor.id}: {reason or 'no reason given'}")
    return order


def confirm_delivery(db: Session, actor: Actor, order_id: UUID, *, now: Optional[datetime] = None) -> Order:
    """Buyer acknowledges receipt. Escrow is untouched; release follows the hold window."""
    now = now or now_utc()
    with atomic(db):
        order = lock_order(db, order_id)
        ensure_can_act_on(actor, order, Action.CONFIRM_DELIVERY, "Only the buyer can confirm delivery")
        if order.order_status not in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED):
            raise InvalidState(f"Cannot confirm delivery of an order that is {order.order_status.value}")
        order.order_status = OrderStatus.DELIVERED
        order.delivery_status = DeliveryStatus.DELIVERED
        order.updated_at = now
    db.refresh(order)
    logger.info(f"Delivery confirmed for order {order_id}")
    return order
