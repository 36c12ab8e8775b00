from typing import List, Optional

from fastapi import APIRouter

from db import LifecycleDep
from models import FoodRequest
from schemas import RequestCreate, RequestStatusUpdate
from .auth import CurrentPrincipalDep, OptionalPrincipalDep

router = APIRouter(tags=["requests"])


@router.get("/", response_model=List[FoodRequest])
def list_requests(
    lifecycle: LifecycleDep,
    recipient_id: Optional[int] = None,
    listing_id: Optional[int] = None,
):
    return lifecycle.list_requests(recipient_id=recipient_id, listing_id=listing_id)


@router.get("/incoming", response_model=List[FoodRequest])
def incoming_requests(lifecycle: LifecycleDep, current: CurrentPrincipalDep):
    """
    Requests made against the signed-in donor's listings.
    """
    return lifecycle.list_incoming_requests(current)


@router.get("/{request_id}", response_model=FoodRequest)
def get_request(request_id: int, lifecycle: LifecycleDep):
    return lifecycle.get_request(request_id)


@router.post("/", response_model=FoodRequest, status_code=201)
def create_request(
    request_data: RequestCreate,
    lifecycle: LifecycleDep,
    current: OptionalPrincipalDep,
):
    return lifecycle.create_request(
        current,
        request_data.listing_id,
        request_data.requested_quantity,
    )


@router.patch("/{request_id}", response_model=FoodRequest)
def update_request_status(
    request_id: int,
    update: RequestStatusUpdate,
    lifecycle: LifecycleDep,
    current: CurrentPrincipalDep,
):
    """
    Accept or reject a request for one of the donor's listings.
    """
    return lifecycle.set_request_status(current, request_id, update.status)
