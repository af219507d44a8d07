# tests/test_end_to_end.py
from datetime import timedelta
from uuid import UUID

from sqlalchemy import select

from conftest import headers
from escrowguard.models import EntryStatus, HoldStatus, LedgerEntry, Listing, PaymentHold, TransactionType, now_utc
from escrowguard.services import refunds


def test_buy_pay_deliver_refund(client, db, buyer, seller, admin, make_listing, make_address):
    listing = make_listing(price_cents=5000, currency="NGN", stock=3)
    make_address(buyer.id)

    # buyer checks out two units
    r = client.post("/cart/items", json={"listing_id": str(listing.id), "quantity": 2}, headers=headers(buyer))
    assert r.status_code == 201
    r = client.post("/checkout", json={"payment_method": "card"}, headers=headers(buyer, "e2e-checkout"))
    assert r.status_code == 201
    [order] = r.json()["orders"]
    assert order["amount_cents"] == 10000
    db.expire_all()
    assert db.get(Listing, listing.id).quantity_available == 1

    # seller confirms payment: money goes into escrow
    r = client.post(f"/orders/{order['id']}/confirm-payment", json={"transaction_ref": "psk_e2e"},
                    headers=headers(seller))
    assert r.status_code == 201 and r.json()["amount_cents"] == 10000
    balance = client.get("/escrow/balance", params={"currency": "NGN"}, headers=headers(seller)).json()
    assert balance["balance_cents"] == 10000

    # buyer confirms delivery; escrow stays put
    r = client.post(f"/orders/{order['id']}/confirm-delivery", headers=headers(buyer))
    assert r.json()["delivery_status"] == "delivered"

    # 25 days on, the seller refunds in full
    later = now_utc() + timedelta(days=25)
    refund = refunds.refund_payment(db, seller, UUID(order["id"]), "Buyer reported a defect", now=later)

    r = client.post(f"/refunds/{refund.id}/settle", json={"succeeded": True}, headers=headers(admin))
    assert r.status_code == 200 and r.json()["refund_status"] == "refunded"

    db.expire_all()
    debit = db.execute(select(LedgerEntry).where(LedgerEntry.refund_id == refund.id,
                                                 LedgerEntry.transaction_type == TransactionType.REFUND)).scalar_one()
    assert (debit.amount_cents, debit.status) == (-10000, EntryStatus.COMPLETED)
    hold = db.execute(select(PaymentHold).where(PaymentHold.order_id == refund.order_id)).scalar_one()
    assert hold.hold_status == HoldStatus.REFUNDED

    balance = client.get("/escrow/balance", params={"currency": "NGN"}, headers=headers(seller)).json()
    assert balance["balance_cents"] == 0
    summary = client.get("/escrow/summary", params={"currency": "NGN"}, headers=headers(seller)).json()
    assert summary["active_holds"] == 0 and summary["available_balance_cents"] == 0
