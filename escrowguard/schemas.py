from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from typing import List, Literal, Optional

from escrowguard.models import (
    DeliveryStatus, EntryStatus, HoldStatus, OrderStatus, PayoutStatus, RefundFlowKind,
    RefundStatus, RefundType, ReservationStatus, TransactionType
)
from escrowguard.services.refunds import RETURN_REASONS


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# Cart
class CartItemIn(BaseModel):
    listing_id: UUID
    # Validate using Field constraints
    quantity: int = Field(1, gt=0, le=1000)

class CartItemQuantityIn(BaseModel):
    quantity: int = Field(..., ge=0, le=1000, description="0 removes the line")

class DiscountIn(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)

class CartItemOut(ORMModel):
    id: UUID
    listing_id: UUID
    quantity: int
    unit_price_cents: int
    currency: str

class CartOut(ORMModel):
    id: UUID
    buyer_id: UUID
    items: List[CartItemOut]
    discount_code: Optional[str] = None


# Checkout
class ShippingIn(BaseModel):
    full_name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    phone_number: Optional[str] = None
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: Optional[str] = None
    country: str = Field(..., min_length=2)

class CheckoutIn(BaseModel):
    shipping: Optional[ShippingIn] = None
    payment_method: Optional[str] = None

class OrderOut(ORMModel):
    id: UUID
    buyer_id: UUID
    seller_id: UUID
    listing_id: UUID
    quantity: int
    amount_cents: int
    currency: str
    order_status: OrderStatus
    delivery_status: DeliveryStatus
    payout_status: PayoutStatus
    tracking_number: Optional[str] = None
    order_date: datetime

class OrderDetail(OrderOut):
    shipping_address: str
    customer_name: Optional[str] = None
    payment_method: Optional[str] = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

class CheckoutOut(BaseModel):
    orders: List[OrderOut]
    subtotal_cents: int
    discount_cents: int
    total_cents: int
    currency: str


# Orders
class OrderStatusIn(BaseModel):
    status: Literal["processing", "shipped", "delivered"]
    tracking_number: Optional[str] = None

class CancelIn(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

class ConfirmPaymentIn(BaseModel):
    transaction_ref: str = Field(..., min_length=1, max_length=128)


# Escrow
class HoldOut(BaseModel):
    id: UUID
    order_id: UUID
    hold_status: HoldStatus
    amount_cents: int
    currency: str
    created_at: datetime
    expires_at: datetime
    days_remaining: int
    auto_release_eligible: bool

class EscrowBalanceOut(BaseModel):
    seller_id: UUID
    currency: str
    balance_cents: int

class LedgerEntryOut(ORMModel):
    id: UUID
    order_id: Optional[UUID] = None
    refund_id: Optional[UUID] = None
    transaction_type: TransactionType
    amount_cents: int
    currency: str
    status: EntryStatus
    description: Optional[str] = None
    created_at: datetime

class EscrowSummaryOut(BaseModel):
    currency: str
    balance_cents: int
    active_holds: int
    upcoming_releases: int
    total_paid_out_cents: int
    available_balance_cents: int
    recent_entries: List[LedgerEntryOut]


# Refunds / returns
class RefundIn(BaseModel):
    order_id: UUID
    reason: str = Field(..., min_length=5, max_length=500)
    refund_type: RefundType = RefundType.FULL
    amount_cents: Optional[int] = Field(None, gt=0)

class InitiateRefundIn(BaseModel):
    order_id: UUID
    reason: str = Field(..., min_length=10, max_length=500)
    description: Optional[str] = Field(None, max_length=2000)
    refund_type: RefundType = RefundType.FULL
    amount_cents: Optional[int] = Field(None, gt=0)

class ReturnIn(BaseModel):
    order_id: UUID
    reason: str
    description: str = Field(..., min_length=10, max_length=2000)

    @field_validator("reason")
    @classmethod
    def known_reason(cls, v: str) -> str:
        if v not in RETURN_REASONS:
            raise ValueError(f"reason must be one of {', '.join(RETURN_REASONS)}")
        return v

class ProcessReturnIn(BaseModel):
    approved: bool
    seller_note: Optional[str] = Field(None, max_length=1000)
    restock_percentage: int = Field(100, ge=0, le=100)

class CompleteRefundIn(BaseModel):
    received_condition: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=2000)

class SettleRefundIn(BaseModel):
    succeeded: bool = True

class RefundOut(ORMModel):
    id: UUID
    order_id: UUID
    buyer_id: UUID
    seller_id: UUID
    flow: RefundFlowKind
    amount_cents: int
    currency: str
    refund_type: RefundType
    reason: str
    refund_status: RefundStatus
    rma_number: Optional[str] = None
    restock_percentage: int
    seller_note: Optional[str] = None
    requested_at: datetime
    processed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


# Inventory
class ReserveIn(BaseModel):
    listing_id: UUID
    quantity: int = Field(..., gt=0)
    cart_item_id: Optional[UUID] = None
    order_id: Optional[UUID] = None

class ConfirmReservationIn(BaseModel):
    order_id: Optional[UUID] = None

class ReservationOut(ORMModel):
    id: UUID
    listing_id: UUID
    quantity: int
    status: ReservationStatus
    expires_at: datetime
    order_id: Optional[UUID] = None
    cart_item_id: Optional[UUID] = None
    buyer_id: Optional[UUID] = None

class AvailabilityOut(BaseModel):
    listing_id: UUID
    total_stock: Optional[int] = None
    reserved: int
    available: Optional[int] = None
