# escrowguard/security.py
"""
Caller identity and the one authorization check every service uses.

Identity comes from upstream (gateway / session layer) as two headers; how it
was authenticated is not this service's concern.
"""
import enum
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import Header

from escrowguard.errors import Unauthenticated, Unauthorized


class Role(str, enum.Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class Action(str, enum.Enum):
    # buyer side
    PURCHASE = "purchase"
    CANCEL = "cancel"
    CONFIRM_DELIVERY = "confirm_delivery"
    REQUEST_REFUND = "request_refund"
    # seller side
    FULFILL = "fulfill"
    CONFIRM_PAYMENT = "confirm_payment"
    ISSUE_REFUND = "issue_refund"
    PROCESS_RETURN = "process_return"
    RELEASE_FUNDS = "release_funds"
    # either party
    VIEW = "view"
    # platform only
    SETTLE = "settle"


BUYER_ACTIONS = {Action.PURCHASE, Action.CONFIRM_DELIVERY, Action.REQUEST_REFUND}
SELLER_ACTIONS = {Action.FULFILL, Action.CONFIRM_PAYMENT, Action.ISSUE_REFUND, Action.PROCESS_RETURN, Action.RELEASE_FUNDS}
EITHER_PARTY_ACTIONS = {Action.VIEW, Action.CANCEL}


@dataclass(frozen=True)
class Actor:
    id: UUID
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def can_act_on(actor: Actor, resource, action: Action) -> bool:
    """
    resource is anything carrying buyer_id / seller_id (Order, Refund, Cart...).
    Admins may do anything; everyone else only acts on their own side.
    """
    if actor.is_admin:
        return True
    buyer_id = getattr(resource, "buyer_id", None)
    seller_id = getattr(resource, "seller_id", None)
    if action in BUYER_ACTIONS:
        return buyer_id is not None and actor.id == buyer_id
    if action in SELLER_ACTIONS:
        return seller_id is not None and actor.id == seller_id
    if action in EITHER_PARTY_ACTIONS:
        return actor.id in (buyer_id, seller_id)
    return False


def ensure_can_act_on(actor: Actor, resource, action: Action, message: str) -> None:
    if not can_act_on(actor, resource, action):
        raise Unauthorized(message)


def current_actor(
    x_actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    x_actor_role: Optional[str] = Header(default=None, alias="X-Actor-Role"),
) -> Actor:
    if not x_actor_id or not x_actor_role:
        raise Unauthenticated("Missing caller identity")
    try:
        return Actor(id=UUID(x_actor_id), role=Role(x_actor_role.lower()))
    except ValueError:
        raise Unauthenticated("Malformed caller identity")
