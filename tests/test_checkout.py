# tests/test_checkout.py
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from conftest import headers
from escrowguard.errors import InvalidState
from escrowguard.models import CartItem, Discount, Listing, ListingStatus, Order, SupplyCapacity, now_utc
from escrowguard.services import cart as cart_service
from escrowguard.services import checkout as checkout_service

SHIPPING = {
    "full_name": "Ada Obi", "email": "ada@example.com", "address": "12 Marina Road",
    "city": "Lagos", "state": "Lagos", "postal_code": "101001", "country": "NG",
}


def _line(unit_price_cents, quantity, currency="NGN"):
    return CartItem(unit_price_cents=unit_price_cents, quantity=quantity, currency=currency)


@pytest.mark.parametrize(
    "percent_off, amount_off, expected_discount, expected_total",
    [
        (20, None, 2000, 8000),
        (None, 500, 500, 9500),
        (20, 500, 2500, 7500),
    ],
)
def test_discount_math(percent_off, amount_off, expected_discount, expected_total):
    discount = Discount(code="X", percent_off=percent_off, amount_off_cents=amount_off, active=True)
    totals = checkout_service.compute_totals([_line(5000, 2)], discount, now_utc())
    assert totals.subtotal.amount_cents == 10000
    assert totals.discount.amount_cents == expected_discount
    assert totals.total.amount_cents == expected_total


def test_total_never_negative():
    discount = Discount(code="BIG", amount_off_cents=50000, active=True)
    totals = checkout_service.compute_totals([_line(1000, 1)], discount, now_utc())
    assert totals.total.amount_cents == 0


def test_expired_discount_is_ignored_at_checkout():
    discount = Discount(code="OLD", percent_off=50, active=True, expires_at=now_utc() - timedelta(days=1))
    totals = checkout_service.compute_totals([_line(1000, 1)], discount, now_utc())
    assert totals.discount.amount_cents == 0


def test_stock_decrement_floors_at_zero(db, make_listing):
    listing = make_listing(stock=2)
    checkout_service.decrement_stock(db, listing, 5)
    db.commit()
    db.refresh(listing)
    assert listing.quantity_available == 0


def test_unlimited_listing_stock_is_untouched(db, buyer, make_listing, make_address, sink):
    listing = make_listing(supply=SupplyCapacity.UNLIMITED)
    make_address(buyer.id)
    cart_service.add_to_cart(db, buyer.id, listing.id, 4, sink)
    checkout_service.checkout(db, buyer.id, sink)
    db.refresh(listing)
    assert listing.quantity_available is None


def test_checkout_requires_shipping_information(db, buyer, make_listing, sink):
    listing = make_listing()
    cart_service.add_to_cart(db, buyer.id, listing.id, 1, sink)

    with pytest.raises(InvalidState, match="Shipping information required"):
        checkout_service.checkout(db, buyer.id, sink)

    # nothing written, cart kept
    assert db.scalar(select(func.count(Order.id))) == 0
    assert len(cart_service.get_cart(db, buyer.id).items) == 1


def test_shipping_given_at_checkout_becomes_default_address(db, buyer, make_listing, sink):
    listing = make_listing()
    cart_service.add_to_cart(db, buyer.id, listing.id, 1, sink)
    result = checkout_service.checkout(db, buyer.id, sink, shipping=SHIPPING, payment_method="card")

    order = result.orders[0]
    assert order.customer_name == "Ada Obi"
    assert "Marina Road" in order.shipping_address
    assert order.payment_method == "card"


def test_empty_cart_cannot_check_out(db, buyer, make_address, sink):
    make_address(buyer.id)
    with pytest.raises(InvalidState, match="Cart is empty"):
        checkout_service.checkout(db, buyer.id, sink)


def test_one_order_per_line_and_cart_cleared(db, buyer, make_listing, make_address, make_discount, sink):
    a = make_listing(price_cents=6000)
    b = make_listing(price_cents=4000)
    make_address(buyer.id)
    make_discount(code="TWENTY", percent_off=20)
    cart_service.add_to_cart(db, buyer.id, a.id, 1, sink)
    cart_service.add_to_cart(db, buyer.id, b.id, 1, sink)
    cart_service.apply_discount(db, buyer.id, "TWENTY")

    result = checkout_service.checkout(db, buyer.id, sink)

    assert len(result.orders) == 2
    assert result.totals.total.amount_cents == 8000
    cart = cart_service.get_cart(db, buyer.id)
    assert cart.items == [] and cart.discount_id is None
    assert sink.names()[-3:] == ["cart_cleared", "order_placed", "order_placed"]


def test_order_amounts_stay_at_full_line_price_when_cart_discount_applies(
    db, buyer, make_listing, make_address, make_discount, sink
):
    # Policy: the cart discount is reported at checkout level only; orders are
    # never apportioned, so their sum is the undiscounted subtotal.
    a = make_listing(price_cents=6000)
    b = make_listing(price_cents=4000)
    make_address(buyer.id)
    make_discount(code="TWENTY", percent_off=20)
    cart_service.add_to_cart(db, buyer.id, a.id, 1, sink)
    cart_service.add_to_cart(db, buyer.id, b.id, 1, sink)
    cart_service.apply_discount(db, buyer.id, "TWENTY")

    result = checkout_service.checkout(db, buyer.id, sink)

    assert sorted(o.amount_cents for o in result.orders) == [4000, 6000]
    assert sum(o.amount_cents for o in result.orders) == result.totals.subtotal.amount_cents
    assert result.totals.discount.amount_cents == 2000


def test_order_price_is_frozen_at_add_to_cart_time(db, buyer, make_listing, make_address, sink):
    listing = make_listing(price_cents=5000)
    make_address(buyer.id)
    cart_service.add_to_cart(db, buyer.id, listing.id, 2, sink)

    listing.price_cents = 9000
    db.commit()

    result = checkout_service.checkout(db, buyer.id, sink)
    assert result.orders[0].amount_cents == 10000


def test_checkout_is_atomic_when_an_order_insert_fails(db, buyer, make_listing, make_address, sink, monkeypatch):
    first = make_listing(stock=3)
    second = make_listing(stock=3)
    make_address(buyer.id)
    cart_service.add_to_cart(db, buyer.id, first.id, 2, sink)
    cart_service.add_to_cart(db, buyer.id, second.id, 1, sink)

    original = checkout_service._create_order
    calls = {"n": 0}

    def fail_on_second(db, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise RuntimeError("order insert failed")
        return original(db, **kwargs)

    monkeypatch.setattr(checkout_service, "_create_order", fail_on_second)

    with pytest.raises(RuntimeError):
        checkout_service.checkout(db, buyer.id, sink)

    assert db.scalar(select(func.count(Order.id))) == 0
    stock = dict(db.execute(select(Listing.id, Listing.quantity_available)).all())
    assert stock[first.id] == 3 and stock[second.id] == 3
    assert len(cart_service.get_cart(db, buyer.id).items) == 2


def test_cart_refuses_mixed_currencies(db, buyer, make_listing, sink):
    naira = make_listing(currency="NGN")
    dollars = make_listing(currency="USD")
    cart_service.add_to_cart(db, buyer.id, naira.id, 1, sink)
    with pytest.raises(InvalidState, match="one currency"):
        cart_service.add_to_cart(db, buyer.id, dollars.id, 1, sink)


@pytest.mark.parametrize("status", [ListingStatus.DRAFT, ListingStatus.REJECTED, ListingStatus.ARCHIVED])
def test_only_approved_listings_can_be_bought(db, buyer, make_listing, sink, status):
    listing = make_listing(status=status)
    with pytest.raises(InvalidState):
        cart_service.add_to_cart(db, buyer.id, listing.id, 1, sink)


def test_adding_same_listing_twice_bumps_quantity(db, buyer, make_listing, sink):
    listing = make_listing()
    cart_service.add_to_cart(db, buyer.id, listing.id, 1, sink)
    cart_service.add_to_cart(db, buyer.id, listing.id, 2, sink)
    cart = cart_service.get_cart(db, buyer.id)
    assert [i.quantity for i in cart.items] == [3]


def test_discount_codes_are_checked(db, buyer, make_discount):
    make_discount(code="OFF", active=False, percent_off=10)
    make_discount(code="GONE", percent_off=10, expires_at=now_utc() - timedelta(hours=1))
    with pytest.raises(InvalidState, match="Invalid discount code"):
        cart_service.apply_discount(db, buyer.id, "NOPE")
    with pytest.raises(InvalidState, match="Invalid discount code"):
        cart_service.apply_discount(db, buyer.id, "OFF")
    with pytest.raises(InvalidState, match="Discount expired"):
        cart_service.apply_discount(db, buyer.id, "GONE")


def test_checkout_over_http(client, buyer, make_listing, make_address):
    listing = make_listing(price_cents=2500)
    make_address(buyer.id)
    r = client.post("/cart/items", json={"listing_id": str(listing.id), "quantity": 2}, headers=headers(buyer))
    assert r.status_code == 201

    r = client.post("/checkout", json={}, headers=headers(buyer, "chk-1"))
    assert r.status_code == 201
    body = r.json()
    assert body["total_cents"] == 5000 and body["currency"] == "NGN"
    assert body["orders"][0]["order_status"] == "pending"

    assert client.get("/cart", headers=headers(buyer)).json()["items"] == []
