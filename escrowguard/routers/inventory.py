from uuid import UUID

from fastapi import APIRouter, Depends

from escrowguard.db import SessionLocal
from escrowguard.schemas import AvailabilityOut, ConfirmReservationIn, ReservationOut, ReserveIn
from escrowguard.security import Actor, current_actor
from escrowguard.services import inventory

router = APIRouter(prefix="/inventory", tags=["inventory"])


@router.post("/reservations", response_model=ReservationOut, status_code=201)
def reserve(payload: ReserveIn, actor: Actor = Depends(current_actor)):
    with SessionLocal() as db:
        reservation = inventory.reserve(db, payload.listing_id, payload.quantity,
                                        cart_item_id=payload.cart_item_id, order_id=payload.order_id,
                                        buyer_id=actor.id)
        db.refresh(reservation)
        return ReservationOut.model_validate(reservation)


@router.post("/reservations/{reservation_id}/release", response_model=ReservationOut)
def release(reservation_id: UUID, actor: Actor = Depends(current_actor)):
    with SessionLocal() as db:
        return ReservationOut.model_validate(inventory.release(db, reservation_id, actor=actor))


@router.post("/reservations/{reservation_id}/confirm", response_model=ReservationOut)
def confirm(reservation_id: UUID, payload: ConfirmReservationIn, actor: Actor = Depends(current_actor)):
    with SessionLocal() as db:
        reservation = inventory.confirm(db, reservation_id, order_id=payload.order_id, actor=actor)
        return ReservationOut.model_validate(reservation)


@router.get("/{listing_id}", response_model=AvailabilityOut)
def availability(listing_id: UUID, actor: Actor = Depends(current_actor)):
    with SessionLocal() as db:
        return AvailabilityOut(**inventory.availability(db, listing_id))
