# escrowguard/models.py
from datetime import datetime, timezone
import enum
from uuid import uuid4

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Enum, ForeignKey, Index, Integer,
    String, Text, CHAR, JSON, UniqueConstraint, Uuid, text
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def now_utc():
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything we write is UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _enum(enum_cls, name: str):
    # store the lowercase wire values, not the member names
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class ListingStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    ARCHIVED = "archived"

class SupplyCapacity(str, enum.Enum):
    LIMITED = "limited"
    UNLIMITED = "unlimited"

class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELED = "canceled"
    RETURNED = "returned"

class DeliveryStatus(str, enum.Enum):
    NOT_SHIPPED = "not_shipped"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"

class PayoutStatus(str, enum.Enum):
    IN_ESCROW = "in_escrow"
    PROCESSING = "processing"
    PAID = "paid"

class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

class HoldStatus(str, enum.Enum):
    ACTIVE = "active"
    RELEASED = "released"
    REFUNDED = "refunded"

class TransactionType(str, enum.Enum):
    SALE = "sale"
    PAYOUT = "payout"
    REFUND = "refund"
    REFUND_INITIATED = "refund_initiated"
    RETURN_REQUEST = "return_request"
    RETURN_APPROVED = "return_approved"
    REFUND_COMPLETED = "refund_completed"
    ESCROW_REVERSAL = "escrow_reversal"

class EntryStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

class RefundType(str, enum.Enum):
    FULL = "full"
    PARTIAL = "partial"
    STORE_CREDIT = "store_credit"

class RefundFlowKind(str, enum.Enum):
    DIRECT = "direct"
    RETURN = "return"

class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    RETURN_REQUESTED = "return_requested"
    RETURN_APPROVED = "return_approved"
    RETURN_REJECTED = "return_rejected"
    REFUNDED = "refunded"
    FAILED = "failed"
    CANCELED = "canceled"

class ReservationStatus(str, enum.Enum):
    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    RELEASED = "released"


OPEN_REFUND_STATUSES = (
    RefundStatus.PENDING,
    RefundStatus.RETURN_REQUESTED,
    RefundStatus.RETURN_APPROVED,
)


class Listing(Base):
    __tablename__ = "listings"

    id = Column(Uuid, primary_key=True, default=uuid4)
    seller_id = Column(Uuid, nullable=False, index=True)
    title = Column(String, nullable=False)
    price_cents = Column(Integer, nullable=True)
    currency = Column(CHAR(3), nullable=True)
    status = Column(_enum(ListingStatus, "listing_status"), nullable=False, default=ListingStatus.DRAFT)
    supply_capacity = Column(_enum(SupplyCapacity, "supply_capacity"), nullable=False, default=SupplyCapacity.UNLIMITED)
    quantity_available = Column(Integer, nullable=True)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        CheckConstraint("reserved_quantity >= 0", name="listings_reserved_nonneg"),
        CheckConstraint("quantity_available IS NULL OR quantity_available >= 0", name="listings_stock_nonneg"),
    )

class BuyerAddress(Base):
    __tablename__ = "buyer_addresses"

    id = Column(Uuid, primary_key=True, default=uuid4)
    buyer_id = Column(Uuid, nullable=False, index=True)
    full_name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone_number = Column(String, nullable=True)
    address = Column(String, nullable=False)
    city = Column(String, nullable=False)
    state = Column(String, nullable=False)
    postal_code = Column(String, nullable=True)
    country = Column(String, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    def one_line(self) -> str:
        parts = [self.address, self.city, self.state, self.postal_code, self.country]
        return ", ".join(p for p in parts if p)

class Discount(Base):
    __tablename__ = "discounts"

    id = Column(Uuid, primary_key=True, default=uuid4)
    code = Column(String, nullable=False, unique=True)
    percent_off = Column(Integer, nullable=True)
    amount_off_cents = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        CheckConstraint("percent_off IS NULL OR (percent_off >= 0 AND percent_off <= 100)", name="discounts_percent_range"),
        CheckConstraint("amount_off_cents IS NULL OR amount_off_cents >= 0", name="discounts_amount_nonneg"),
    )

    def is_usable(self, now: datetime) -> bool:
        expires_at = as_utc(self.expires_at)
        return bool(self.active) and (expires_at is None or expires_at > now)

class Cart(Base):
    __tablename__ = "carts"

    id = Column(Uuid, primary_key=True, default=uuid4)
    buyer_id = Column(Uuid, nullable=False, unique=True)
    discount_id = Column(Uuid, ForeignKey("discounts.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc)

    items = relationship("CartItem", back_populates="cart", order_by="CartItem.created_at")
    discount = relationship("Discount")

    @property
    def discount_code(self):
        return self.discount.code if self.discount else None

class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Uuid, primary_key=True, default=uuid4)
    cart_id = Column(Uuid, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False)
    listing_id = Column(Uuid, ForeignKey("listings.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    # frozen at add-to-cart time
    unit_price_cents = Column(Integer, nullable=False)
    currency = Column(CHAR(3), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    cart = relationship("Cart", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="cart_items_quantity_positive"),
        UniqueConstraint("cart_id", "listing_id", name="cart_items_one_line_per_listing"),
    )

class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid4)
    buyer_id = Column(Uuid, nullable=False, index=True)
    seller_id = Column(Uuid, nullable=False, index=True)
    listing_id = Column(Uuid, ForeignKey("listings.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    # unit price x quantity at checkout; never recomputed from the listing
    amount_cents = Column(Integer, nullable=False)
    currency = Column(CHAR(3), nullable=False)
    order_status = Column(_enum(OrderStatus, "order_status"), nullable=False, default=OrderStatus.PENDING)
    delivery_status = Column(_enum(DeliveryStatus, "delivery_status"), nullable=False, default=DeliveryStatus.NOT_SHIPPED)
    payout_status = Column(_enum(PayoutStatus, "payout_status"), nullable=False, default=PayoutStatus.IN_ESCROW)
    shipping_address = Column(Text, nullable=False)
    customer_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    tracking_number = Column(String, nullable=True)
    order_date = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="orders_amount_positive"),
        CheckConstraint("quantity > 0", name="orders_quantity_positive"),
    )

    holds = relationship("PaymentHold", back_populates="order")
    ledger_entries = relationship("LedgerEntry", back_populates="order")

class Payment(Base):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, unique=True)
    buyer_id = Column(Uuid, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(CHAR(3), nullable=False)
    status = Column(_enum(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.PENDING)
    transaction_ref = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc)

class PaymentHold(Base):
    __tablename__ = "payment_holds"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False)
    payment_id = Column(Uuid, ForeignKey("payments.id"), nullable=False)
    hold_status = Column(_enum(HoldStatus, "hold_status"), nullable=False, default=HoldStatus.ACTIVE)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    released_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    order = relationship("Order", back_populates="holds")

    __table_args__ = (
        Index(
            "payment_holds_one_active_per_order", "order_id", unique=True,
            postgresql_where=text("hold_status = 'active'"),
            sqlite_where=text("hold_status = 'active'"),
        ),
    )

class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id = Column(Uuid, primary_key=True, default=uuid4)
    seller_id = Column(Uuid, nullable=False, index=True)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=True, index=True)
    refund_id = Column(Uuid, ForeignKey("refunds.id"), nullable=True, index=True)
    payment_id = Column(Uuid, ForeignKey("payments.id"), nullable=True)
    transaction_type = Column(_enum(TransactionType, "transaction_type"), nullable=False)
    # positive credits the seller, negative debits
    amount_cents = Column(Integer, nullable=False)
    currency = Column(CHAR(3), nullable=False)
    status = Column(_enum(EntryStatus, "entry_status"), nullable=False, default=EntryStatus.PENDING)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    settled_at = Column(DateTime(timezone=True), nullable=True)

    order = relationship("Order", back_populates="ledger_entries")

class Refund(Base):
    __tablename__ = "refunds"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False)
    payment_id = Column(Uuid, ForeignKey("payments.id"), nullable=True)
    buyer_id = Column(Uuid, nullable=False, index=True)
    seller_id = Column(Uuid, nullable=False, index=True)
    flow = Column(_enum(RefundFlowKind, "refund_flow"), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(CHAR(3), nullable=False)
    refund_type = Column(_enum(RefundType, "refund_type"), nullable=False, default=RefundType.FULL)
    reason = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    refund_status = Column(_enum(RefundStatus, "refund_status"), nullable=False)
    rma_number = Column(String, nullable=True, unique=True)
    restock_percentage = Column(Integer, nullable=False, default=100)
    # the order's hold was still active and was refunded by this flow
    from_escrow = Column(Boolean, nullable=False, default=False)
    seller_note = Column(Text, nullable=True)
    received_condition = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    requested_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="refunds_amount_nonneg"),
        CheckConstraint("restock_percentage >= 0 AND restock_percentage <= 100", name="refunds_restock_range"),
        Index(
            "refunds_one_open_flow_per_order", "order_id", unique=True,
            postgresql_where=text("refund_status IN ('pending', 'return_requested', 'return_approved')"),
            sqlite_where=text("refund_status IN ('pending', 'return_requested', 'return_approved')"),
        ),
    )

class InventoryReservation(Base):
    __tablename__ = "inventory_reservations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    listing_id = Column(Uuid, ForeignKey("listings.id"), nullable=False, index=True)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=True)
    cart_item_id = Column(Uuid, nullable=True)
    # who asked for the hold; only they (or an admin) may release or confirm it
    buyer_id = Column(Uuid, nullable=True, index=True)
    quantity = Column(Integer, nullable=False)
    status = Column(_enum(ReservationStatus, "reservation_status"), nullable=False, default=ReservationStatus.RESERVED)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="reservations_quantity_positive"),
        # serves the expiry sweep: status = 'reserved' AND expires_at < now
        Index("inventory_reservations_sweep", "status", "expires_at"),
    )

class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"

    key = Column(String, primary_key=True)
    request_fingerprint = Column(String, nullable=True)
    status_code = Column(Integer, nullable=True)
    response_body = Column(JSON, nullable=True)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
