# escrowguard/services/inventory.py
"""
Short-lived stock holds.

available = total stock - sum(quantity of reservations still 'reserved').
The listing's reserved_quantity counter mirrors that sum and is only moved by
guarded UPDATEs, so two concurrent reservations cannot both take the last unit.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from escrowguard.config import settings
from escrowguard.db import atomic
from escrowguard.errors import InvalidState, NotFound
from escrowguard.metrics import reservations_total
from escrowguard.models import (
    InventoryReservation, Listing, ReservationStatus, SupplyCapacity, now_utc
)
from escrowguard.security import Action, Actor, ensure_can_act_on
from escrowguard.services.catalog import get_listing

logger = logging.getLogger(__name__)


def reserved_quantity(db: Session, listing_id: UUID) -> int:
    return int(db.execute(
        select(func.coalesce(func.sum(InventoryReservation.quantity), 0)).where(
            InventoryReservation.listing_id == listing_id,
            InventoryReservation.status == ReservationStatus.RESERVED,
        )
    ).scalar_one())


def availability(db: Session, listing_id: UUID) -> dict:
    listing = get_listing(db, listing_id)
    reserved = reserved_quantity(db, listing_id)
    if listing.supply_capacity != SupplyCapacity.LIMITED:
        return {"listing_id": listing_id, "total_stock": None, "reserved": reserved, "available": None}
    total = listing.quantity_available or 0
    return {
        "listing_id": listing_id,
        "total_stock": total,
        "reserved": reserved,
        "available": max(0, total - reserved),
    }


def _get_reservation(db: Session, reservation_id: UUID) -> InventoryReservation:
    reservation = db.get(InventoryReservation, reservation_id)
    if not reservation:
        raise NotFound("Reservation not found")
    return reservation


def _take_counter(db: Session, listing: Listing, quantity: int) -> None:
    stmt = update(Listing).where(Listing.id == listing.id)
    if listing.supply_capacity == SupplyCapacity.LIMITED:
        # compare-and-swap: only succeeds while enough unreserved stock remains
        stmt = stmt.where(
            func.coalesce(Listing.quantity_available, 0) - Listing.reserved_quantity >= quantity
        )
    result = db.execute(
        stmt.values(reserved_quantity=Listing.reserved_quantity + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        available = max(0, (listing.quantity_available or 0) - (listing.reserved_quantity or 0))
        raise InvalidState(f"Only {available} items available")


def _give_back_counter(db: Session, listing_id: UUID, quantity: int) -> None:
    # floored at zero
    db.execute(
        update(Listing)
        .where(Listing.id == listing_id)
        .values(reserved_quantity=case(
            (Listing.reserved_quantity >= quantity, Listing.reserved_quantity - quantity),
            else_=0,
        ))
        .execution_options(synchronize_session=False)
    )


def _transition(db: Session, reservation: InventoryReservation, to_status: ReservationStatus,
                now: datetime, order_id: Optional[UUID] = None) -> None:
    values = {"status": to_status}
    if to_status == ReservationStatus.CONFIRMED:
        values["confirmed_at"] = now
        if order_id is not None:
            values["order_id"] = order_id
    else:
        values["released_at"] = now
    result = db.execute(
        update(InventoryReservation)
        .where(InventoryReservation.id == reservation.id,
               InventoryReservation.status == ReservationStatus.RESERVED)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidState(f"Reservation is already {reservation.status.value}")
    _give_back_counter(db, reservation.listing_id, reservation.quantity)
    reservations_total.labels(to_status.value).inc()


def hold_stock(db: Session, listing_id: UUID, quantity: int, *, cart_item_id: Optional[UUID] = None,
               order_id: Optional[UUID] = None, buyer_id: Optional[UUID] = None,
               now: Optional[datetime] = None) -> InventoryReservation:
    """Reserve without committing; callers own the transaction."""
    if quantity <= 0:
        raise InvalidState("Quantity must be positive")
    now = now or now_utc()
    listing = get_listing(db, listing_id, for_update=True)
    _take_counter(db, listing, quantity)
    reservation = InventoryReservation(
        listing_id=listing_id,
        cart_item_id=cart_item_id,
        order_id=order_id,
        buyer_id=buyer_id,
        quantity=quantity,
        status=ReservationStatus.RESERVED,
        expires_at=now + timedelta(minutes=settings.reservation_ttl_minutes),
        created_at=now,
    )
    db.add(reservation)
    db.flush()
    reservations_total.labels("reserved").inc()
    return reservation


def reserve(db: Session, listing_id: UUID, quantity: int, *, cart_item_id: Optional[UUID] = None,
            order_id: Optional[UUID] = None, buyer_id: Optional[UUID] = None,
            now: Optional[datetime] = None) -> InventoryReservation:
    with atomic(db):
        reservation = hold_stock(db, listing_id, quantity, cart_item_id=cart_item_id,
                                 order_id=order_id, buyer_id=buyer_id, now=now)
    logger.info(f"Reserved {quantity} of listing {listing_id} as {reservation.id}")
    return reservation


def release(db: Session, reservation_id: UUID, *, actor: Optional[Actor] = None,
            now: Optional[datetime] = None) -> InventoryReservation:
    with atomic(db):
        reservation = _get_reservation(db, reservation_id)
        if actor is not None:
            ensure_can_act_on(actor, reservation, Action.PURCHASE, "You can only release your own reservations")
        _transition(db, reservation, ReservationStatus.RELEASED, now or now_utc())
    db.refresh(reservation)
    return reservation


def confirm(db: Session, reservation_id: UUID, *, order_id: Optional[UUID] = None, actor: Optional[Actor] = None,
            now: Optional[datetime] = None) -> InventoryReservation:
    with atomic(db):
        reservation = _get_reservation(db, reservation_id)
        if actor is not None:
            ensure_can_act_on(actor, reservation, Action.PURCHASE, "You can only confirm your own reservations")
        _transition(db, reservation, ReservationStatus.CONFIRMED, now or now_utc(), order_id=order_id)
    db.refresh(reservation)
    return reservation


def reservations_for_cart_item(db: Session, cart_item_id: UUID) -> List[InventoryReservation]:
    return list(db.execute(
        select(InventoryReservation).where(
            InventoryReservation.cart_item_id == cart_item_id,
            InventoryReservation.status == ReservationStatus.RESERVED,
        )
    ).scalars())


def release_for_cart_item(db: Session, cart_item_id: UUID, now: datetime) -> int:
    """Release whatever the cart line still holds; no commit."""
    held = reservations_for_cart_item(db, cart_item_id)
    for reservation in held:
        _transition(db, reservation, ReservationStatus.RELEASED, now)
    return len(held)


def release_for_order(db: Session, order_id: UUID, now: datetime) -> int:
    held = list(db.execute(
        select(InventoryReservation).where(
            InventoryReservation.order_id == order_id,
            InventoryReservation.status == ReservationStatus.RESERVED,
        )
    ).scalars())
    for reservation in held:
        _transition(db, reservation, ReservationStatus.RELEASED, now)
    return len(held)


def confirm_for_cart_item(db: Session, cart_item_id: UUID, order_id: UUID, now: datetime) -> int:
    held = reservations_for_cart_item(db, cart_item_id)
    for reservation in held:
        _transition(db, reservation, ReservationStatus.CONFIRMED, now, order_id=order_id)
    return len(held)


def expired_reservations(db: Session, now: datetime) -> List[InventoryReservation]:
    return list(db.execute(
        select(InventoryReservation).where(
            InventoryReservation.status == ReservationStatus.RESERVED,
            InventoryReservation.expires_at < now,
        )
    ).scalars())


def release_expired_reservations(db: Session, *, now: Optional[datetime] = None) -> int:
    """Sweeper entry point: release every reservation past its expiry."""
    now = now or now_utc()
    with atomic(db):
        expired = expired_reservations(db, now)
        for reservation in expired:
            _transition(db, reservation, ReservationStatus.RELEASED, now)
    if expired:
        logger.info(f"Released {len(expired)} expired reservations")
    return len(expired)
