# escrowguard/services/checkout.py
"""
Cart -> orders.

One order per cart line, each priced at unit_price_cents x quantity as frozen
when the line was added. A cart-level discount only changes the checkout
total: orders keep their full line amounts and the discount is reported
alongside them.

Everything between locking the cart and emptying it runs in one transaction:
if any order insert or stock update fails, no order exists, no stock moved
and the cart is untouched.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from time import perf_counter
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from escrowguard.db import atomic
from escrowguard.errors import InvalidState
from escrowguard.metrics import checkout_latency, checkouts_total, orders_created_total
from escrowguard.models import (
    BuyerAddress, Cart, CartItem, Discount, Listing, Order, OrderStatus, DeliveryStatus,
    PayoutStatus, SupplyCapacity, now_utc
)
from escrowguard.money import Money
from escrowguard.notifications import NotificationSink, fire_and_forget
from escrowguard.services import inventory
from escrowguard.services.cart import empty_cart, find_cart
from escrowguard.services.catalog import (
    ensure_purchasable, get_default_billing_address, get_listing, save_default_address
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutTotals:
    subtotal: Money
    discount: Money
    total: Money


@dataclass
class CheckoutResult:
    orders: List[Order]
    totals: CheckoutTotals


def discount_cents(subtotal: Money, discount: Optional[Discount], now: datetime) -> Money:
    if discount is None or not discount.is_usable(now):
        return Money.zero(subtotal.currency)
    off = Money.zero(subtotal.currency)
    if discount.percent_off:
        off = off + subtotal.percent_floor(discount.percent_off)
    if discount.amount_off_cents:
        off = off + Money(discount.amount_off_cents, subtotal.currency)
    return off


def compute_totals(items: Iterable[CartItem], discount: Optional[Discount], now: datetime) -> CheckoutTotals:
    items = list(items)
    if not items:
        raise InvalidState("Cart is empty")
    currency = items[0].currency
    subtotal = Money.zero(currency)
    for item in items:
        # Money refuses to add across currencies
        subtotal = subtotal + Money(item.unit_price_cents, item.currency).times(item.quantity)
    off = discount_cents(subtotal, discount, now)
    return CheckoutTotals(subtotal=subtotal, discount=off, total=(subtotal - off).clamp_min_zero())


def _create_order(db: Session, *, buyer_id: UUID, item: CartItem, listing: Listing,
                  address: BuyerAddress, payment_method: Optional[str], now: datetime) -> Order:
    order = Order(
        buyer_id=buyer_id,
        seller_id=listing.seller_id,
        listing_id=listing.id,
        quantity=item.quantity,
        amount_cents=Money(item.unit_price_cents, item.currency).times(item.quantity).amount_cents,
        currency=item.currency,
        order_status=OrderStatus.PENDING,
        delivery_status=DeliveryStatus.NOT_SHIPPED,
        payout_status=PayoutStatus.IN_ESCROW,
        shipping_address=address.one_line(),
        customer_name=address.full_name,
        customer_email=address.email,
        payment_method=payment_method,
        order_date=now,
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    db.flush()
    return order


def decrement_stock(db: Session, listing: Listing, quantity: int) -> None:
    """Limited-supply listings only; floors at zero."""
    if listing.supply_capacity != SupplyCapacity.LIMITED or listing.quantity_available is None:
        return
    db.execute(
        update(Listing)
        .where(Listing.id == listing.id)
        .values(quantity_available=case(
            (Listing.quantity_available >= quantity, Listing.quantity_available - quantity),
            else_=0,
        ))
        .execution_options(synchronize_session=False)
    )


def _lock_cart(db: Session, buyer_id: UUID) -> Cart:
    cart = find_cart(db, buyer_id, for_update=True)
    if not cart or not cart.items:
        raise InvalidState("Cart is empty")
    return cart


def checkout(db: Session, buyer_id: UUID, sink: NotificationSink, *, shipping: Optional[dict] = None,
             payment_method: Optional[str] = None, now: Optional[datetime] = None) -> CheckoutResult:
    start = perf_counter()
    now = now or now_utc()
    try:
        with atomic(db):
            cart = _lock_cart(db, buyer_id)
            if not shipping and not get_default_billing_address(db, buyer_id):
                raise InvalidState("Shipping information required")

            items = list(cart.items)
            totals = compute_totals(items, cart.discount, now)

            listings = {}
            for item in items:
                listing = get_listing(db, item.listing_id, for_update=True)
                ensure_purchasable(listing)
                listings[item.id] = listing

            # guards done; writes start here
            if shipping:
                address = save_default_address(db, buyer_id, shipping)
            else:
                address = get_default_billing_address(db, buyer_id)

            orders = []
            for item in items:
                listing = listings[item.id]
                order = _create_order(db, buyer_id=buyer_id, item=item, listing=listing,
                                      address=address, payment_method=payment_method, now=now)
                decrement_stock(db, listing, item.quantity)
                inventory.confirm_for_cart_item(db, item.id, order.id, now)
                orders.append(order)

            empty_cart(db, cart, now)
    finally:
        checkout_latency.observe(perf_counter() - start)

    checkouts_total.inc()
    orders_created_total.inc(len(orders))
    logger.info(
        f"Checkout for buyer {buyer_id}: {len(orders)} orders, subtotal={totals.subtotal.amount_cents} "
        f"discount={totals.discount.amount_cents} total={totals.total.amount_cents} {totals.total.currency}"
    )
    fire_and_forget(sink, "cart_cleared", buyer_id=buyer_id)
    for order in orders:
        fire_and_forget(sink, "order_placed", buyer_id=buyer_id, order_id=order.id)
    return CheckoutResult(orders=orders, totals=totals)
