from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


ROLE_DONOR = "donor"
ROLE_RECIPIENT = "recipient"
ROLES = (ROLE_DONOR, ROLE_RECIPIENT)

LISTING_AVAILABLE = "available"
LISTING_RESERVED = "reserved"
LISTING_COMPLETED = "completed"

REQUEST_PENDING = "pending"
REQUEST_ACCEPTED = "accepted"
REQUEST_REJECTED = "rejected"

UNITS = ("portions", "kg", "boxes", "trays")
EVENT_TYPES = ("wedding", "corporate", "party", "other")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Aware UTC view of a timestamp; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    name: str
    role: str  # donor | recipient
    password_hash: str


class Listing(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    donor_id: int = Field(foreign_key="user.id", index=True)

    title: str
    description: str
    quantity: int
    unit: str = "portions"
    event_type: str = Field(default="other", index=True)
    location: str = Field(index=True)
    expiry_time: datetime
    status: str = Field(default=LISTING_AVAILABLE, index=True)  # available | reserved | completed

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class FoodRequest(SQLModel, table=True):
    __tablename__ = "food_request"

    id: Optional[int] = Field(default=None, primary_key=True)
    listing_id: int = Field(foreign_key="listing.id", index=True)
    recipient_id: int = Field(foreign_key="user.id", index=True)

    requested_quantity: int
    status: str = REQUEST_PENDING  # pending | accepted | rejected

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
