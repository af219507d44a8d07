# escrowguard/services/catalog.py
"""Listing and buyer-profile lookups the money path consumes."""
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrowguard.errors import InvalidState, NotFound
from escrowguard.models import BuyerAddress, Listing, ListingStatus


@dataclass(frozen=True)
class AccountDetails:
    buyer_id: UUID
    full_name: str
    email: str


def get_listing(db: Session, listing_id: UUID, *, for_update: bool = False) -> Listing:
    stmt = select(Listing).where(Listing.id == listing_id)
    if for_update:
        stmt = stmt.with_for_update()
    listing = db.execute(stmt).scalar_one_or_none()
    if not listing:
        raise NotFound("Listing not found")
    return listing


def ensure_purchasable(listing: Listing) -> None:
    if listing.status != ListingStatus.APPROVED:
        raise InvalidState("Listing is not available for purchase")
    if not listing.price_cents:
        raise InvalidState("Listing has no price")
    if not listing.currency:
        raise InvalidState("Listing has no currency")


def get_default_billing_address(db: Session, buyer_id: UUID) -> Optional[BuyerAddress]:
    return db.execute(
        select(BuyerAddress)
        .where(BuyerAddress.buyer_id == buyer_id, BuyerAddress.is_default.is_(True))
        .order_by(BuyerAddress.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def get_account_details(db: Session, buyer_id: UUID) -> Optional[AccountDetails]:
    address = get_default_billing_address(db, buyer_id)
    if not address:
        return None
    return AccountDetails(buyer_id=buyer_id, full_name=address.full_name, email=address.email)


def save_default_address(db: Session, buyer_id: UUID, fields: dict) -> BuyerAddress:
    """Update the buyer's default address in place, or create it."""
    address = get_default_billing_address(db, buyer_id)
    if address:
        for key, value in fields.items():
            setattr(address, key, value)
    else:
        address = BuyerAddress(buyer_id=buyer_id, is_default=True, **fields)
        db.add(address)
    db.flush()
    return address
