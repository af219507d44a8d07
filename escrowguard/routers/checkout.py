from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from escrowguard.db import SessionLocal
from escrowguard.notifications import NotificationSink
from escrowguard.routers.deps import get_sink, rate_limited
from escrowguard.schemas import CheckoutIn, CheckoutOut, OrderOut
from escrowguard.security import Actor
from escrowguard.services.checkout import checkout as run_checkout
from escrowguard.services.idempotency import run_idempotent

router = APIRouter(tags=["checkout"])


@router.post("/checkout", response_model=CheckoutOut, status_code=201)
def checkout(payload: CheckoutIn, actor: Actor = Depends(rate_limited), sink: NotificationSink = Depends(get_sink),
             Idempotency_Key: str = Header(alias="Idempotency-Key")):
    fingerprint = f"POST:/checkout:{actor.id}"
    with SessionLocal() as db:
        def action():
            shipping = payload.shipping.model_dump() if payload.shipping else None
            result = run_checkout(db, actor.id, sink, shipping=shipping, payment_method=payload.payment_method)
            body = CheckoutOut(
                orders=[OrderOut.model_validate(o) for o in result.orders],
                subtotal_cents=result.totals.subtotal.amount_cents,
                discount_cents=result.totals.discount.amount_cents,
                total_cents=result.totals.total.amount_cents,
                currency=result.totals.total.currency,
            )
            return 201, body.model_dump(mode="json")

        status_code, body = run_idempotent(db, Idempotency_Key, fingerprint, "checkout", action)
        return JSONResponse(status_code=status_code, content=body)
