from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import JSONResponse

from escrowguard.db import SessionLocal
from escrowguard.notifications import NotificationSink
from escrowguard.routers.deps import get_sink, rate_limited
from escrowguard.schemas import (
    CompleteRefundIn, InitiateRefundIn, ProcessReturnIn, RefundIn, RefundOut, ReturnIn, SettleRefundIn
)
from escrowguard.security import Actor, current_actor
from escrowguard.services import refunds
from escrowguard.services.idempotency import run_idempotent

router = APIRouter(tags=["refunds"])


def _fingerprint(path: str, actor: Actor, payload) -> str:
    return f"POST:{path}:{actor.id}:{payload.order_id}:{payload.refund_type.value}:{payload.amount_cents}"


@router.post("/refunds", response_model=RefundOut, status_code=201)
def refund_payment(payload: RefundIn, actor: Actor = Depends(rate_limited),
                   Idempotency_Key: str = Header(alias="Idempotency-Key")):
    with SessionLocal() as db:
        def action():
            refund = refunds.refund_payment(db, actor, payload.order_id, payload.reason,
                                            refund_type=payload.refund_type, amount_cents=payload.amount_cents)
            return 201, RefundOut.model_validate(refund).model_dump(mode="json")

        status_code, body = run_idempotent(db, Idempotency_Key, _fingerprint("/refunds", actor, payload), "refund", action)
        return JSONResponse(status_code=status_code, content=body)


@router.post("/refunds/initiate", response_model=RefundOut, status_code=201)
def initiate_refund(payload: InitiateRefundIn, actor: Actor = Depends(rate_limited),
                    Idempotency_Key: str = Header(alias="Idempotency-Key")):
    with SessionLocal() as db:
        def action():
            refund = refunds.initiate_refund(db, actor, payload.order_id, payload.reason,
                                             refund_type=payload.refund_type, amount_cents=payload.amount_cents,
                                             description=payload.description)
            return 201, RefundOut.model_validate(refund).model_dump(mode="json")

        status_code, body = run_idempotent(
            db, Idempotency_Key, _fingerprint("/refunds/initiate", actor, payload), "refund_initiate", action
        )
        return JSONResponse(status_code=status_code, content=body)


@router.post("/refunds/{refund_id}/settle", response_model=RefundOut)
def settle_refund(refund_id: UUID, payload: SettleRefundIn, actor: Actor = Depends(rate_limited)):
    with SessionLocal() as db:
        return RefundOut.model_validate(refunds.settle_refund(db, actor, refund_id, payload.succeeded))


@router.get("/orders/{order_id}/refund", response_model=Optional[RefundOut])
def refund_status(order_id: UUID, actor: Actor = Depends(current_actor)):
    with SessionLocal() as db:
        refund = refunds.get_refund_status(db, actor, order_id)
        return RefundOut.model_validate(refund) if refund else None


@router.post("/returns", response_model=RefundOut, status_code=201)
def request_return(payload: ReturnIn, actor: Actor = Depends(rate_limited), sink: NotificationSink = Depends(get_sink)):
    with SessionLocal() as db:
        refund = refunds.request_return(db, actor, payload.order_id, payload.reason, payload.description, sink)
        db.refresh(refund)
        return RefundOut.model_validate(refund)


@router.get("/returns", response_model=List[RefundOut])
def my_returns(limit: int = Query(20, ge=1, le=100), offset: int = Query(0, ge=0),
               actor: Actor = Depends(current_actor)):
    with SessionLocal() as db:
        return [RefundOut.model_validate(r) for r in refunds.list_my_returns(db, actor, limit=limit, offset=offset)]


@router.post("/returns/{refund_id}/process", response_model=RefundOut)
def process_return(refund_id: UUID, payload: ProcessReturnIn, actor: Actor = Depends(rate_limited),
                   sink: NotificationSink = Depends(get_sink)):
    with SessionLocal() as db:
        refund = refunds.process_return(db, actor, refund_id, payload.approved, sink,
                                        seller_note=payload.seller_note,
                                        restock_percentage=payload.restock_percentage)
        return RefundOut.model_validate(refund)


@router.post("/returns/{refund_id}/complete", response_model=RefundOut)
def complete_refund(refund_id: UUID, payload: CompleteRefundIn, actor: Actor = Depends(rate_limited),
                    sink: NotificationSink = Depends(get_sink)):
    with SessionLocal() as db:
        refund = refunds.complete_refund(db, actor, refund_id, sink,
                                         received_condition=payload.received_condition, notes=payload.notes)
        return RefundOut.model_validate(refund)


@router.post("/returns/{refund_id}/cancel", response_model=RefundOut)
def cancel_return(refund_id: UUID, actor: Actor = Depends(current_actor)):
    with SessionLocal() as db:
        return RefundOut.model_validate(refunds.cancel_refund(db, actor, refund_id))
