from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from escrowguard.db import SessionLocal
from escrowguard.errors import Unauthorized
from escrowguard.models import Order, PaymentHold, now_utc
from escrowguard.schemas import EscrowBalanceOut, EscrowSummaryOut, HoldOut, LedgerEntryOut
from escrowguard.security import Actor, current_actor
from escrowguard.services import escrow, ledger

router = APIRouter(prefix="/escrow", tags=["escrow"])


def hold_out(hold: PaymentHold, order: Order, now: Optional[datetime] = None) -> HoldOut:
    remaining = escrow.days_remaining(hold.created_at, now or now_utc())
    return HoldOut(
        id=hold.id,
        order_id=hold.order_id,
        hold_status=hold.hold_status,
        amount_cents=order.amount_cents,
        currency=order.currency,
        created_at=hold.created_at,
        expires_at=escrow.hold_expires_at(hold.created_at),
        days_remaining=remaining,
        auto_release_eligible=remaining == 0,
    )


def _seller_scope(actor: Actor, seller_id: Optional[UUID]) -> UUID:
    # sellers read their own books; admins may read anyone's
    if seller_id is None or seller_id == actor.id:
        return actor.id
    if not actor.is_admin:
        raise Unauthorized("You can only view your own escrow")
    return seller_id


@router.get("/balance", response_model=EscrowBalanceOut)
def balance(currency: str = Query(..., min_length=3, max_length=3), seller_id: Optional[UUID] = None,
            actor: Actor = Depends(current_actor)):
    seller = _seller_scope(actor, seller_id)
    with SessionLocal() as db:
        cents = escrow.get_seller_escrow_balance(db, seller, currency)
    return EscrowBalanceOut(seller_id=seller, currency=currency.upper(), balance_cents=cents)


@router.get("/holds", response_model=List[HoldOut])
def active_holds(currency: str = Query(..., min_length=3, max_length=3), seller_id: Optional[UUID] = None,
                 actor: Actor = Depends(current_actor)):
    seller = _seller_scope(actor, seller_id)
    now = now_utc()
    with SessionLocal() as db:
        views = escrow.get_seller_active_holds(db, seller, currency, now=now)
        return [hold_out(v.hold, v.order, now) for v in views]


@router.get("/payouts", response_model=List[LedgerEntryOut])
def payout_history(currency: str = Query(..., min_length=3, max_length=3), limit: int = Query(50, ge=1, le=200),
                   seller_id: Optional[UUID] = None, actor: Actor = Depends(current_actor)):
    seller = _seller_scope(actor, seller_id)
    with SessionLocal() as db:
        rows = ledger.payout_history(db, seller, currency, limit=limit)
        return [LedgerEntryOut.model_validate(r) for r in rows]


@router.get("/summary", response_model=EscrowSummaryOut)
def summary(currency: str = Query(..., min_length=3, max_length=3), seller_id: Optional[UUID] = None,
            actor: Actor = Depends(current_actor)):
    seller = _seller_scope(actor, seller_id)
    with SessionLocal() as db:
        data = escrow.escrow_summary(db, seller, currency)
        data.pop("holds")
        data["recent_entries"] = [LedgerEntryOut.model_validate(e) for e in data["recent_entries"]]
        return EscrowSummaryOut(**data)
