# tests/conftest.py
import os
from datetime import timedelta
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

# In-memory SQLite on a single shared connection
os.environ.setdefault("DATABASE_URL", "sqlite://")

from escrowguard.main import app  # noqa
from escrowguard.db import SessionLocal, engine  # noqa
from escrowguard.models import (  # noqa
    Base, BuyerAddress, Discount, Listing, ListingStatus, Order, OrderStatus, SupplyCapacity, now_utc
)
from escrowguard.security import Actor, Role  # noqa
from escrowguard.services import escrow  # noqa


@pytest.fixture(autouse=True)
def create_schema_and_clean_db():
    # Fresh tables per test so they don't interfere
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    with SessionLocal() as session:
        yield session


class RecordingSink:
    """Keeps every notification as (event, kwargs)."""

    def __init__(self):
        self.events = []

    def __getattr__(self, name):
        if not name.startswith("notify_"):
            raise AttributeError(name)

        def record(**kwargs):
            self.events.append((name[len("notify_"):], kwargs))

        return record

    def names(self):
        return [event for event, _ in self.events]


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def seller():
    return Actor(id=uuid4(), role=Role.SELLER)


@pytest.fixture
def buyer():
    return Actor(id=uuid4(), role=Role.BUYER)


@pytest.fixture
def admin():
    return Actor(id=uuid4(), role=Role.ADMIN)


def headers(actor, idem_key=None):
    h = {"X-Actor-Id": str(actor.id), "X-Actor-Role": actor.role.value}
    if idem_key:
        h["Idempotency-Key"] = idem_key
    return h


@pytest.fixture
def make_listing(db, seller):
    def _make(price_cents=5000, currency="NGN", stock=3, supply=SupplyCapacity.LIMITED,
              status=ListingStatus.APPROVED, seller_id=None):
        listing = Listing(
            seller_id=seller_id or seller.id,
            title="Hand-dyed adire fabric",
            price_cents=price_cents,
            currency=currency,
            status=status,
            supply_capacity=supply,
            quantity_available=stock if supply == SupplyCapacity.LIMITED else None,
        )
        db.add(listing)
        db.commit()
        return listing

    return _make


@pytest.fixture
def make_address(db):
    def _make(buyer_id):
        address = BuyerAddress(
            buyer_id=buyer_id,
            full_name="Ada Obi",
            email="ada@example.com",
            address="12 Marina Road",
            city="Lagos",
            state="Lagos",
            postal_code="101001",
            country="NG",
            is_default=True,
        )
        db.add(address)
        db.commit()
        return address

    return _make


@pytest.fixture
def make_discount(db):
    def _make(code="SAVE", percent_off=None, amount_off_cents=None, active=True, expires_at=None):
        discount = Discount(code=code, percent_off=percent_off, amount_off_cents=amount_off_cents,
                            active=active, expires_at=expires_at)
        db.add(discount)
        db.commit()
        return discount

    return _make


@pytest.fixture
def make_order(db, buyer, seller, make_listing):
    """An order as checkout would leave it: pending, full line price."""
    def _make(amount_cents=10000, currency="NGN", order_date=None, buyer_id=None, seller_id=None):
        listing = make_listing(price_cents=amount_cents, currency=currency, seller_id=seller_id)
        when = order_date or now_utc()
        order = Order(
            buyer_id=buyer_id or buyer.id,
            seller_id=seller_id or seller.id,
            listing_id=listing.id,
            quantity=1,
            amount_cents=amount_cents,
            currency=currency,
            order_status=OrderStatus.PENDING,
            shipping_address="12 Marina Road, Lagos",
            order_date=when,
            created_at=when,
            updated_at=when,
        )
        db.add(order)
        db.commit()
        return order

    return _make


@pytest.fixture
def paid_order(db, seller, make_order):
    """Order whose payment is confirmed: one active hold, pending sale entry."""
    def _make(amount_cents=10000, currency="NGN", paid_at=None, order_date=None, **kwargs):
        order = make_order(amount_cents=amount_cents, currency=currency,
                           order_date=order_date or paid_at, **kwargs)
        actor = Actor(id=order.seller_id, role=Role.SELLER)
        escrow.confirm_payment(db, actor, order.id, f"txn-{uuid4().hex[:8]}", now=paid_at or now_utc())
        db.refresh(order)
        return order

    return _make


def days_ago(n):
    return now_utc() - timedelta(days=n)
