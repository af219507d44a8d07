# tests/test_authorization.py
from types import SimpleNamespace
from uuid import uuid4

import pytest

from escrowguard.errors import Unauthenticated
from escrowguard.security import Action, Actor, Role, can_act_on, current_actor

BUYER_ID, SELLER_ID = uuid4(), uuid4()
ORDER = SimpleNamespace(buyer_id=BUYER_ID, seller_id=SELLER_ID)

buyer = Actor(id=BUYER_ID, role=Role.BUYER)
seller = Actor(id=SELLER_ID, role=Role.SELLER)
stranger = Actor(id=uuid4(), role=Role.BUYER)
admin = Actor(id=uuid4(), role=Role.ADMIN)


@pytest.mark.parametrize(
    "action, allowed",
    [
        (Action.PURCHASE, {"buyer"}),
        (Action.CONFIRM_DELIVERY, {"buyer"}),
        (Action.REQUEST_REFUND, {"buyer"}),
        (Action.FULFILL, {"seller"}),
        (Action.CONFIRM_PAYMENT, {"seller"}),
        (Action.ISSUE_REFUND, {"seller"}),
        (Action.PROCESS_RETURN, {"seller"}),
        (Action.RELEASE_FUNDS, {"seller"}),
        (Action.VIEW, {"buyer", "seller"}),
        (Action.CANCEL, {"buyer", "seller"}),
        (Action.SETTLE, set()),
    ],
)
def test_action_matrix(action, allowed):
    actors = {"buyer": buyer, "seller": seller, "stranger": stranger}
    permitted = {name for name, actor in actors.items() if can_act_on(actor, ORDER, action)}
    assert permitted == allowed
    assert can_act_on(admin, ORDER, action)


def test_resources_without_a_side_are_refused():
    cart = SimpleNamespace(buyer_id=BUYER_ID)
    assert not can_act_on(seller, cart, Action.FULFILL)


def test_identity_headers():
    actor = current_actor(str(BUYER_ID), "Buyer")
    assert actor == buyer
    with pytest.raises(Unauthenticated):
        current_actor(None, "buyer")
    with pytest.raises(Unauthenticated):
        current_actor("not-a-uuid", "buyer")
    with pytest.raises(Unauthenticated):
        current_actor(str(BUYER_ID), "root")


def test_missing_identity_is_401(client):
    r = client.get("/cart")
    assert r.status_code == 401 and r.json()["code"] == "UNAUTHORIZED"


def test_forbidden_is_403(client, seller, paid_order):
    order = paid_order()
    r = client.post(f"/orders/{order.id}/confirm-delivery",
                    headers={"X-Actor-Id": str(seller.id), "X-Actor-Role": "seller"})
    assert r.status_code == 403 and r.json()["code"] == "FORBIDDEN"
