# escrowguard/services/cart.py
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrowguard.db import atomic
from escrowguard.errors import InvalidState, NotFound
from escrowguard.models import Cart, CartItem, Discount, now_utc
from escrowguard.notifications import NotificationSink, fire_and_forget
from escrowguard.services import inventory
from escrowguard.services.catalog import ensure_purchasable, get_listing

logger = logging.getLogger(__name__)


def find_cart(db: Session, buyer_id: UUID, *, for_update: bool = False) -> Optional[Cart]:
    stmt = select(Cart).where(Cart.buyer_id == buyer_id)
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def ensure_cart(db: Session, buyer_id: UUID) -> Cart:
    cart = find_cart(db, buyer_id, for_update=True)
    if cart:
        return cart
    cart = Cart(buyer_id=buyer_id)
    db.add(cart)
    db.flush()
    return cart


def _find_item(db: Session, cart: Cart, listing_id: UUID) -> Optional[CartItem]:
    return db.execute(
        select(CartItem).where(CartItem.cart_id == cart.id, CartItem.listing_id == listing_id)
    ).scalar_one_or_none()


def get_cart(db: Session, buyer_id: UUID) -> Cart:
    with atomic(db):
        cart = ensure_cart(db, buyer_id)
    db.refresh(cart)
    return cart


def add_to_cart(db: Session, buyer_id: UUID, listing_id: UUID, quantity: int,
                sink: NotificationSink) -> CartItem:
    if quantity <= 0:
        raise InvalidState("Quantity must be positive")
    with atomic(db):
        cart = ensure_cart(db, buyer_id)
        listing = get_listing(db, listing_id)
        ensure_purchasable(listing)
        for other in cart.items:
            if other.currency != listing.currency:
                raise InvalidState("A cart can only hold items in one currency")

        item = _find_item(db, cart, listing_id)
        if item:
            # the frozen price of the existing line is kept
            item.quantity += quantity
        else:
            item = CartItem(
                cart_id=cart.id,
                listing_id=listing.id,
                quantity=quantity,
                unit_price_cents=listing.price_cents,
                currency=listing.currency,
            )
            db.add(item)
        db.flush()
    fire_and_forget(sink, "item_added_to_cart", buyer_id=buyer_id, listing_id=listing_id, quantity=quantity)
    return item


def remove_item(db: Session, buyer_id: UUID, listing_id: UUID, sink: NotificationSink,
                *, now: Optional[datetime] = None) -> None:
    with atomic(db):
        cart = ensure_cart(db, buyer_id)
        item = _find_item(db, cart, listing_id)
        if not item:
            raise NotFound("Item not in cart")
        inventory.release_for_cart_item(db, item.id, now or now_utc())
        db.delete(item)
    fire_and_forget(sink, "item_removed_from_cart", buyer_id=buyer_id, listing_id=listing_id)


def set_item_quantity(db: Session, buyer_id: UUID, listing_id: UUID, quantity: int,
                      sink: NotificationSink) -> Optional[CartItem]:
    if quantity < 0:
        raise InvalidState("Quantity cannot be negative")
    if quantity == 0:
        remove_item(db, buyer_id, listing_id, sink)
        return None
    with atomic(db):
        cart = ensure_cart(db, buyer_id)
        item = _find_item(db, cart, listing_id)
        if not item:
            raise NotFound("Item not in cart")
        item.quantity = quantity
    db.refresh(item)
    return item


def empty_cart(db: Session, cart: Cart, now: datetime) -> None:
    """Drop every line and the discount; releases held stock. No commit."""
    for item in list(cart.items):
        inventory.release_for_cart_item(db, item.id, now)
        db.delete(item)
    cart.discount_id = None
    db.flush()


def clear_cart(db: Session, buyer_id: UUID, sink: NotificationSink, *, now: Optional[datetime] = None) -> None:
    with atomic(db):
        cart = ensure_cart(db, buyer_id)
        empty_cart(db, cart, now or now_utc())
    fire_and_forget(sink, "cart_cleared", buyer_id=buyer_id)


def apply_discount(db: Session, buyer_id: UUID, code: str, *, now: Optional[datetime] = None) -> Cart:
    now = now or now_utc()
    with atomic(db):
        cart = ensure_cart(db, buyer_id)
        discount = db.execute(select(Discount).where(Discount.code == code)).scalar_one_or_none()
        if not discount or not discount.active:
            raise InvalidState("Invalid discount code")
        if not discount.is_usable(now):
            raise InvalidState("Discount expired")
        cart.discount_id = discount.id
    db.refresh(cart)
    logger.info(f"Discount {discount.code} applied to cart {cart.id}")
    return cart
