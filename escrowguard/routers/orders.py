from uuid import UUID

from fastapi import APIRouter, Depends

from escrowguard.db import SessionLocal
from escrowguard.models import OrderStatus
from escrowguard.routers.deps import rate_limited
from escrowguard.routers.escrow import hold_out
from escrowguard.schemas import CancelIn, ConfirmPaymentIn, HoldOut, OrderDetail, OrderStatusIn
from escrowguard.security import Actor, current_actor
from escrowguard.services import escrow, orders

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/{order_id}", response_model=OrderDetail)
def get_order(order_id: UUID, actor: Actor = Depends(current_actor)):
    with SessionLocal() as db:
        return OrderDetail.model_validate(orders.get_order(db, actor, order_id))


@router.post("/{order_id}/status", response_model=OrderDetail)
def update_status(order_id: UUID, payload: OrderStatusIn, actor: Actor = Depends(current_actor)):
    with SessionLocal() as db:
        order = orders.update_order_status(db, actor, order_id, OrderStatus(payload.status),
                                           tracking_number=payload.tracking_number)
        return OrderDetail.model_validate(order)


@router.post("/{order_id}/cancel", response_model=OrderDetail)
def cancel_order(order_id: UUID, payload: CancelIn, actor: Actor = Depends(current_actor)):
    with SessionLocal() as db:
        return OrderDetail.model_validate(orders.cancel_order(db, actor, order_id, payload.reason))


@router.post("/{order_id}/confirm-delivery", response_model=OrderDetail)
def confirm_delivery(order_id: UUID, actor: Actor = Depends(current_actor)):
    with SessionLocal() as db:
        return OrderDetail.model_validate(orders.confirm_delivery(db, actor, order_id))


@router.post("/{order_id}/confirm-payment", response_model=HoldOut, status_code=201)
def confirm_payment(order_id: UUID, payload: ConfirmPaymentIn, actor: Actor = Depends(rate_limited)):
    with SessionLocal() as db:
        hold = escrow.confirm_payment(db, actor, order_id, payload.transaction_ref)
        db.refresh(hold)
        return hold_out(hold, hold.order)


@router.post("/{order_id}/release", response_model=HoldOut)
def release(order_id: UUID, actor: Actor = Depends(rate_limited)):
    with SessionLocal() as db:
        hold = escrow.release_hold(db, actor, order_id)
        return hold_out(hold, hold.order)
