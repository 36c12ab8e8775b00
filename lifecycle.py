"""
LISTING LIFECYCLE RULES

Every create, accept, reject, complete and delete goes through
``LifecycleEngine``. The engine validates and authorizes first and only
then touches the store, so a refused operation never writes anything.

Listing:  available -> reserved -> completed
Request:  pending -> accepted | rejected   (both terminal)

A listing with any accepted request cannot be deleted, whatever its status.
"""

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PartialFailureError,
    StoreError,
    ValidationError,
)
from models import (
    EVENT_TYPES,
    LISTING_AVAILABLE,
    LISTING_COMPLETED,
    LISTING_RESERVED,
    REQUEST_ACCEPTED,
    REQUEST_PENDING,
    REQUEST_REJECTED,
    ROLE_DONOR,
    ROLE_RECIPIENT,
    UNITS,
    FoodRequest,
    Listing,
    as_utc,
    utcnow,
)
from schemas import Principal
from store import SqlStore

logger = logging.getLogger(__name__)


class ReservationPolicy(str, Enum):
    FIRST_ACCEPTANCE = "first_acceptance"
    FULL_QUANTITY = "full_quantity"


# Requests that may be swept away together with their listing.
DELETABLE_REQUEST_STATES = (REQUEST_PENDING, REQUEST_REJECTED)

LISTING_SORTS = {
    "newest": (lambda listing: (as_utc(listing.created_at), listing.id), True),
    "expiring_soon": (lambda listing: (as_utc(listing.expiry_time), listing.id), False),
    "quantity_high": (lambda listing: (listing.quantity, listing.id), True),
}


# ============================================================
# INPUT PARSING
# ============================================================


def parse_positive_int(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a positive whole number.")

    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and value.strip():
        try:
            number = int(value.strip())
        except ValueError:
            raise ValidationError(f"{label} must be a positive whole number.") from None
    else:
        raise ValidationError(f"{label} must be a positive whole number.")

    if number <= 0:
        raise ValidationError(f"{label} must be greater than zero.")
    return number


def parse_instant(value: Any, label: str) -> datetime:
    """Return an aware UTC datetime from an ISO-8601 string or a datetime.

    Values without an offset are read as UTC.
    """
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value.strip():
        try:
            moment = datetime.fromisoformat(value.strip())
        except ValueError:
            raise ValidationError(f"{label} is not a valid date and time.") from None
    else:
        raise ValidationError(f"{label} is required.")

    return as_utc(moment)


def _required_text(fields: Mapping[str, Any], key: str, label: str) -> str:
    raw = fields.get(key)
    text = raw.strip() if isinstance(raw, str) else ""
    if not text:
        raise ValidationError(f"{label} is required.")
    return text


def _choice(fields: Mapping[str, Any], key: str, label: str, choices, default: str) -> str:
    raw = fields.get(key)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        value = default
    elif isinstance(raw, str):
        value = raw.strip().lower()
    else:
        raise ValidationError(f"{label} must be one of: {', '.join(choices)}.")
    if value not in choices:
        raise ValidationError(f"{label} must be one of: {', '.join(choices)}.")
    return value


# ============================================================
# ENGINE
# ============================================================


class LifecycleEngine:
    def __init__(
        self,
        store: SqlStore,
        policy: ReservationPolicy = ReservationPolicy.FIRST_ACCEPTANCE,
        cap_requested_quantity: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.policy = ReservationPolicy(policy)
        self.cap_requested_quantity = cap_requested_quantity
        self.clock = clock

    # --------------------------------------------------------
    # Authorization helpers
    # --------------------------------------------------------

    @staticmethod
    def _require_role(principal: Optional[Principal], role: str, action: str) -> Principal:
        if principal is None:
            raise AuthorizationError(f"Please sign in to {action}.")
        if principal.role != role:
            raise AuthorizationError(f"Only {role}s can {action}.")
        return principal

    def _owned_listing(self, donor: Principal, listing_id: int, action: str) -> Listing:
        listing = self.get_listing(listing_id)
        if listing.donor_id != donor.id:
            logger.warning(
                "Refused %s on listing owned by another donor",
                action,
                extra={"listing_id": listing_id, "donor_id": donor.id},
            )
            raise AuthorizationError(f"You can only {action} your own listings.")
        return listing

    # --------------------------------------------------------
    # Lookups
    # --------------------------------------------------------

    def get_listing(self, listing_id: int) -> Listing:
        listing = self.store.get_listing(listing_id)
        if listing is None:
            raise NotFoundError("Listing not found.")
        return listing

    def get_request(self, request_id: int) -> FoodRequest:
        req = self.store.get_request(request_id)
        if req is None:
            raise NotFoundError("Request not found.")
        return req

    def remaining_quantity(self, listing: Listing) -> int:
        return listing.quantity - self.store.accepted_quantity(listing.id)

    def is_expired(self, listing: Listing) -> bool:
        return as_utc(listing.expiry_time) <= as_utc(self.clock())

    # --------------------------------------------------------
    # Listings
    # --------------------------------------------------------

    def create_listing(self, donor: Optional[Principal], fields: Mapping[str, Any]) -> Listing:
        donor = self._require_role(donor, ROLE_DONOR, "create food listings")

        title = _required_text(fields, "title", "Title")
        description = _required_text(fields, "description", "Description")
        location = _required_text(fields, "location", "Location")
        quantity = parse_positive_int(fields.get("quantity"), "Quantity")
        unit = _choice(fields, "unit", "Unit", UNITS, "portions")
        event_type = _choice(fields, "event_type", "Event type", EVENT_TYPES, "other")

        expiry_time = parse_instant(fields.get("expiry_time"), "Expiry time")
        if expiry_time <= as_utc(self.clock()):
            raise ValidationError("Expiry time must be in the future.")

        listing = self.store.add_listing(
            Listing(
                donor_id=donor.id,
                title=title,
                description=description,
                quantity=quantity,
                unit=unit,
                event_type=event_type,
                location=location,
                expiry_time=expiry_time,
                status=LISTING_AVAILABLE,
            )
        )
        logger.info(
            "Listing created",
            extra={"listing_id": listing.id, "donor_id": donor.id, "quantity": quantity},
        )
        return listing

    def complete_listing(self, donor: Optional[Principal], listing_id: int) -> Listing:
        """Confirm hand-off of a reserved listing."""
        donor = self._require_role(donor, ROLE_DONOR, "complete listings")
        listing = self._owned_listing(donor, listing_id, "complete")

        if listing.status == LISTING_COMPLETED:
            return listing
        if listing.status != LISTING_RESERVED:
            raise ConflictError("Only reserved listings can be marked as completed.")

        listing.status = LISTING_COMPLETED
        self.store.save(listing, step="complete_listing")
        logger.info("Listing completed", extra={"listing_id": listing.id})
        return listing

    def delete_listing(self, donor: Optional[Principal], listing_id: int) -> int:
        """
        Remove a listing together with its pending and rejected requests.

        Returns the number of requests removed. A failure while removing
        requests leaves the listing in place (``StoreError``); a failure
        removing the listing afterwards raises ``PartialFailureError`` and the
        removed requests stay removed.
        """
        donor = self._require_role(donor, ROLE_DONOR, "delete listings")
        listing = self._owned_listing(donor, listing_id, "delete")

        if self.store.find_requests(listing_id=listing_id, status=REQUEST_ACCEPTED):
            logger.warning("Refused delete of listing with accepted requests", extra={"listing_id": listing_id})
            raise ConflictError("Cannot delete listing with accepted requests.")

        removed = self.store.delete_requests(listing_id, DELETABLE_REQUEST_STATES)

        try:
            self.store.delete_listing(listing)
        except StoreError as exc:
            logger.error(
                "Listing delete failed after its requests were removed",
                extra={"listing_id": listing_id, "requests_deleted": removed},
            )
            raise PartialFailureError(
                "Requests were removed but the listing could not be deleted. Please try again.",
                step="delete_listing",
                requests_deleted=removed,
            ) from exc

        logger.info("Listing deleted", extra={"listing_id": listing_id, "requests_deleted": removed})
        return removed

    def list_listings(
        self,
        donor_id: Optional[int] = None,
        status: Optional[str] = None,
        event_type: Optional[str] = None,
        location: Optional[str] = None,
    ) -> list[Listing]:
        return list(
            self.store.find_listings(
                donor_id=donor_id,
                status=status,
                event_type=event_type,
                location=location,
            )
        )

    def list_donor_listings(self, donor: Optional[Principal]) -> list[Listing]:
        """The donor's own listings, newest first."""
        donor = self._require_role(donor, ROLE_DONOR, "view their own listings")
        return self.list_listings(donor_id=donor.id)

    def browse_listings(
        self,
        event_type: Optional[str] = None,
        location: Optional[str] = None,
        search: Optional[str] = None,
        sort: str = "newest",
    ) -> list[Listing]:
        """Available, unexpired listings as a recipient sees them."""
        if sort not in LISTING_SORTS:
            raise ValidationError(f"Sort must be one of: {', '.join(LISTING_SORTS)}.")

        listings = self.store.find_listings(
            status=LISTING_AVAILABLE,
            event_type=event_type,
            location=location,
            expires_after=as_utc(self.clock()),
        )

        term = (search or "").strip().lower()
        if term:
            listings = [
                listing
                for listing in listings
                if term in listing.title.lower() or term in (listing.description or "").lower()
            ]

        key, reverse = LISTING_SORTS[sort]
        return sorted(listings, key=key, reverse=reverse)

    def list_locations(self) -> list[str]:
        return self.store.distinct_locations(status=LISTING_AVAILABLE)

    def request_counts(self, listings) -> dict[int, int]:
        return self.store.request_counts(listing.id for listing in listings)

    # --------------------------------------------------------
    # Requests
    # --------------------------------------------------------

    def create_request(
        self,
        recipient: Optional[Principal],
        listing_id: int,
        requested_quantity: Any,
    ) -> FoodRequest:
        if recipient is None:
            raise AuthorizationError("Please sign in to request food.")
        if recipient.role != ROLE_RECIPIENT:
            raise AuthorizationError("Donors cannot request food.")

        quantity = parse_positive_int(requested_quantity, "Requested quantity")
        listing = self.get_listing(listing_id)

        if listing.status != LISTING_AVAILABLE:
            raise ConflictError("This listing is no longer available.")
        if self.is_expired(listing):
            raise ConflictError("This listing has expired.")

        if self.cap_requested_quantity:
            remaining = self.remaining_quantity(listing)
            if quantity > remaining:
                raise ValidationError(
                    f"Requested quantity exceeds available quantity ({remaining} {listing.unit} left)."
                )

        req = self.store.add_request(
            FoodRequest(
                listing_id=listing.id,
                recipient_id=recipient.id,
                requested_quantity=quantity,
                status=REQUEST_PENDING,
            )
        )
        logger.info(
            "Request created",
            extra={"request_id": req.id, "listing_id": listing.id, "recipient_id": recipient.id},
        )
        return req

    def set_request_status(self, donor: Optional[Principal], request_id: int, status: str) -> FoodRequest:
        if status == REQUEST_ACCEPTED:
            return self.accept_request(donor, request_id)
        if status == REQUEST_REJECTED:
            return self.reject_request(donor, request_id)
        raise ValidationError("Status must be 'accepted' or 'rejected'.")

    def _managed_request(self, donor: Optional[Principal], request_id: int) -> tuple[FoodRequest, Listing]:
        donor = self._require_role(donor, ROLE_DONOR, "manage requests")
        req = self.get_request(request_id)
        listing = self.store.get_listing(req.listing_id)
        if listing is None:
            raise NotFoundError("Associated listing not found.")
        if listing.donor_id != donor.id:
            raise AuthorizationError("You can only manage requests for your own listings.")
        return req, listing

    def accept_request(self, donor: Optional[Principal], request_id: int) -> FoodRequest:
        """
        Accept a pending request and, per reservation policy, reserve its
        listing. Request and listing are written in one commit.
        """
        req, listing = self._managed_request(donor, request_id)

        if req.status == REQUEST_ACCEPTED:
            return req
        if req.status == REQUEST_REJECTED:
            raise ConflictError("Rejected requests cannot be accepted.")
        if listing.status == LISTING_COMPLETED:
            raise ConflictError("This listing has already been completed.")

        accepted = self.store.accepted_quantity(listing.id)
        if req.requested_quantity > listing.quantity - accepted:
            raise ConflictError("Not enough quantity left to accept this request.")

        req.status = REQUEST_ACCEPTED
        if listing.status == LISTING_AVAILABLE and self._reserves(listing, accepted + req.requested_quantity):
            listing.status = LISTING_RESERVED

        self.store.save(req, listing, step="accept_request")
        logger.info(
            "Request accepted",
            extra={"request_id": req.id, "listing_id": listing.id, "listing_status": listing.status},
        )
        return req

    def _reserves(self, listing: Listing, accepted_total: int) -> bool:
        if self.policy is ReservationPolicy.FIRST_ACCEPTANCE:
            return accepted_total > 0
        return accepted_total >= listing.quantity

    def reject_request(self, donor: Optional[Principal], request_id: int) -> FoodRequest:
        req, _listing = self._managed_request(donor, request_id)

        if req.status == REQUEST_REJECTED:
            return req
        if req.status == REQUEST_ACCEPTED:
            raise ConflictError("Accepted requests cannot be rejected.")

        req.status = REQUEST_REJECTED
        self.store.save(req, step="reject_request")
        logger.info("Request rejected", extra={"request_id": req.id})
        return req

    def list_requests(
        self,
        recipient_id: Optional[int] = None,
        listing_id: Optional[int] = None,
    ) -> list[FoodRequest]:
        return list(self.store.find_requests(recipient_id=recipient_id, listing_id=listing_id))

    def list_incoming_requests(self, donor: Optional[Principal]) -> list[FoodRequest]:
        """Requests against every listing the donor owns."""
        donor = self._require_role(donor, ROLE_DONOR, "view incoming requests")
        return list(self.store.find_requests(donor_id=donor.id))
