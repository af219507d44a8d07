from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from escrowguard.db import SessionLocal
from escrowguard.notifications import NotificationSink
from escrowguard.routers.deps import get_sink
from escrowguard.schemas import CartItemIn, CartItemOut, CartItemQuantityIn, CartOut, DiscountIn
from escrowguard.security import Actor, current_actor
from escrowguard.services import cart as cart_service

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get("", response_model=CartOut)
def get_cart(actor: Actor = Depends(current_actor)):
    with SessionLocal() as db:
        cart = cart_service.get_cart(db, actor.id)
        return CartOut.model_validate(cart)


@router.post("/items", response_model=CartItemOut, status_code=201)
def add_item(payload: CartItemIn, actor: Actor = Depends(current_actor), sink: NotificationSink = Depends(get_sink)):
    with SessionLocal() as db:
        item = cart_service.add_to_cart(db, actor.id, payload.listing_id, payload.quantity, sink)
        db.refresh(item)
        return CartItemOut.model_validate(item)


@router.put("/items/{listing_id}")
def set_item_quantity(listing_id: UUID, payload: CartItemQuantityIn, actor: Actor = Depends(current_actor),
                      sink: NotificationSink = Depends(get_sink)):
    with SessionLocal() as db:
        item = cart_service.set_item_quantity(db, actor.id, listing_id, payload.quantity, sink)
        if item is None:
            return Response(status_code=204)
        return CartItemOut.model_validate(item)


@router.delete("/items/{listing_id}", status_code=204)
def remove_item(listing_id: UUID, actor: Actor = Depends(current_actor), sink: NotificationSink = Depends(get_sink)):
    with SessionLocal() as db:
        cart_service.remove_item(db, actor.id, listing_id, sink)
    return Response(status_code=204)


@router.delete("", status_code=204)
def clear_cart(actor: Actor = Depends(current_actor), sink: NotificationSink = Depends(get_sink)):
    with SessionLocal() as db:
        cart_service.clear_cart(db, actor.id, sink)
    return Response(status_code=204)


@router.post("/discount", response_model=CartOut)
def apply_discount(payload: DiscountIn, actor: Actor = Depends(current_actor)):
    with SessionLocal() as db:
        cart = cart_service.apply_discount(db, actor.id, payload.code)
        return CartOut.model_validate(cart)
