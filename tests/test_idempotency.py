# tests/test_idempotency.py
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import func, select

from conftest import headers
from escrowguard.models import IdempotencyKey, Order, now_utc
from escrowguard.security import Actor, Role


def _fill_cart(client, buyer, listing, quantity=1):
    r = client.post("/cart/items", json={"listing_id": str(listing.id), "quantity": quantity},
                    headers=headers(buyer))
    assert r.status_code == 201


def test_same_key_replays_checkout(client, db, buyer, make_listing, make_address):
    listing = make_listing(price_cents=1200)
    make_address(buyer.id)
    _fill_cart(client, buyer, listing)

    r1 = client.post("/checkout", json={}, headers=headers(buyer, "abc"))
    assert r1.status_code == 201

    # cart is empty now, but the replay never runs checkout again
    r2 = client.post("/checkout", json={}, headers=headers(buyer, "abc"))
    assert r2.status_code == 201
    assert r2.json() == r1.json()
    assert db.scalar(select(func.count(Order.id))) == 1


def test_reusing_key_on_different_order_returns_409_for_refund(client, seller, paid_order):
    a = paid_order()
    b = paid_order()

    r1 = client.post("/refunds", json={"order_id": str(a.id), "reason": "Out of stock"},
                     headers=headers(seller, "abc"))
    assert r1.status_code == 201

    r2 = client.post("/refunds", json={"order_id": str(b.id), "reason": "Out of stock"},
                     headers=headers(seller, "abc"))
    assert r2.status_code == 409
    assert "different request" in r2.json()["detail"]


def test_another_caller_cannot_replay_a_refund_key(client, seller, paid_order):
    order = paid_order()
    body = {"order_id": str(order.id), "reason": "Out of stock"}

    r1 = client.post("/refunds", json=body, headers=headers(seller, "k1"))
    assert r1.status_code == 201

    stranger = Actor(id=uuid4(), role=Role.BUYER)
    r2 = client.post("/refunds", json=body, headers=headers(stranger, "k1"))
    assert r2.status_code == 409
    assert "seller_id" not in r2.json()

    # the owner still gets the cached response
    r3 = client.post("/refunds", json=body, headers=headers(seller, "k1"))
    assert r3.json() == r1.json()


def test_key_in_flight_returns_425(client, db, buyer):
    db.add(IdempotencyKey(key="busy", request_fingerprint=f"POST:/checkout:{buyer.id}",
                          locked_until=now_utc() + timedelta(seconds=30)))
    db.commit()

    r = client.post("/checkout", json={}, headers=headers(buyer, "busy"))
    assert r.status_code == 425


def test_failed_action_releases_the_key(client, buyer, make_listing, make_address):
    make_address(buyer.id)
    r = client.post("/checkout", json={}, headers=headers(buyer, "retry-me"))
    assert r.status_code == 400 and r.json()["detail"] == "Cart is empty"

    # the same key goes through once the cause is fixed
    _fill_cart(client, buyer, make_listing())
    r = client.post("/checkout", json={}, headers=headers(buyer, "retry-me"))
    assert r.status_code == 201


def test_missing_key_is_rejected(client, buyer):
    r = client.post("/checkout", json={}, headers=headers(buyer))
    assert r.status_code == 422
