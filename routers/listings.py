from typing import List, Optional

from fastapi import APIRouter, Request, Response

from db import LifecycleDep
from errors import ValidationError
from models import Listing
from schemas import ListingSummary
from .auth import CurrentPrincipalDep, OptionalPrincipalDep

router = APIRouter(tags=["listings"])

LISTING_FIELDS = (
    "title",
    "description",
    "quantity",
    "unit",
    "event_type",
    "location",
    "expiry_time",
)


def _summaries(lifecycle, listings: List[Listing], with_remaining: bool = False) -> List[ListingSummary]:
    counts = lifecycle.request_counts(listings)
    summaries = []
    for listing in listings:
        summary = ListingSummary.model_validate(listing)
        summary.request_count = counts.get(listing.id, 0)
        if with_remaining:
            summary.remaining_quantity = lifecycle.remaining_quantity(listing)
        summaries.append(summary)
    return summaries


@router.get("/", response_model=List[Listing])
def list_listings(
    lifecycle: LifecycleDep,
    donor_id: Optional[int] = None,
    status: Optional[str] = None,
    event_type: Optional[str] = None,
    location: Optional[str] = None,
):
    """
    List listings, optionally filtered by donor, status, event type and location.
    """
    return lifecycle.list_listings(
        donor_id=donor_id,
        status=status,
        event_type=event_type,
        location=location,
    )


@router.get("/browse", response_model=List[ListingSummary])
def browse_listings(
    lifecycle: LifecycleDep,
    event_type: Optional[str] = None,
    location: Optional[str] = None,
    search: Optional[str] = None,
    sort: str = "newest",
):
    """
    Available listings that have not expired yet, with request counts.
    sort: newest | expiring_soon | quantity_high
    """
    listings = lifecycle.browse_listings(
        event_type=event_type,
        location=location,
        search=search,
        sort=sort,
    )
    return _summaries(lifecycle, listings, with_remaining=True)


@router.get("/locations", response_model=List[str])
def list_locations(lifecycle: LifecycleDep):
    return lifecycle.list_locations()


@router.get("/mine", response_model=List[ListingSummary])
def my_listings(lifecycle: LifecycleDep, current: CurrentPrincipalDep):
    """
    The signed-in donor's listings, newest first, with request counts.
    """
    listings = lifecycle.list_donor_listings(current)
    return _summaries(lifecycle, listings, with_remaining=True)


@router.get("/{listing_id}", response_model=Listing)
def get_listing(listing_id: int, lifecycle: LifecycleDep):
    return lifecycle.get_listing(listing_id)


@router.post("/", response_model=Listing, status_code=201)
async def create_listing(
    request: Request,
    lifecycle: LifecycleDep,
    current: OptionalPrincipalDep,
):
    """
    Create a listing from JSON or form-data.
    Validation happens in the lifecycle engine, so both paths get the same errors.
    """
    content_type = request.headers.get("content-type", "")

    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            raise ValidationError("Request body is not valid JSON.") from None
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object.")
        fields = data
    else:
        form = await request.form()
        fields = {name: form.get(name) for name in LISTING_FIELDS}

    return lifecycle.create_listing(current, fields)


@router.post("/{listing_id}/complete", response_model=Listing)
def complete_listing(listing_id: int, lifecycle: LifecycleDep, current: CurrentPrincipalDep):
    """
    Confirm that a reserved listing has been handed over.
    """
    return lifecycle.complete_listing(current, listing_id)


@router.delete("/{listing_id}", status_code=204)
def delete_listing(listing_id: int, lifecycle: LifecycleDep, current: CurrentPrincipalDep):
    """
    Delete a listing and its pending/rejected requests.
    Refused while any request for it has been accepted.
    """
    lifecycle.delete_listing(current, listing_id)
    return Response(status_code=204)
