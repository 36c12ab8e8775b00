import logging
from collections.abc import Iterable, Sequence
from typing import Optional

from sqlalchemy import distinct, func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from errors import StoreError
from models import REQUEST_ACCEPTED, FoodRequest, Listing, utcnow

logger = logging.getLogger(__name__)


class SqlStore:
    """
    Listing and request tables behind a SQLModel session.

    Lookups return ``None`` for missing rows. Any database failure is
    rolled back and re-raised as ``StoreError`` naming the failed step.
    """

    def __init__(self, session: Session):
        self.session = session

    def _fail(self, step: str, exc: Exception) -> StoreError:
        self.session.rollback()
        logger.error("Store operation failed", extra={"step": step, "error": str(exc)})
        return StoreError(f"Database error during {step.replace('_', ' ')}", step=step)

    # ------------------------------------------------------------
    # Point lookups
    # ------------------------------------------------------------

    def get_listing(self, listing_id: int) -> Optional[Listing]:
        try:
            return self.session.get(Listing, listing_id)
        except SQLAlchemyError as exc:
            raise self._fail("get_listing", exc) from exc

    def get_request(self, request_id: int) -> Optional[FoodRequest]:
        try:
            return self.session.get(FoodRequest, request_id)
        except SQLAlchemyError as exc:
            raise self._fail("get_request", exc) from exc

    # ------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------

    def add_listing(self, listing: Listing) -> Listing:
        return self._insert(listing, "insert_listing")

    def add_request(self, request: FoodRequest) -> FoodRequest:
        return self._insert(request, "insert_request")

    def _insert(self, row: SQLModel, step: str):
        try:
            self.session.add(row)
            self.session.commit()
            self.session.refresh(row)
        except SQLAlchemyError as exc:
            raise self._fail(step, exc) from exc
        return row

    def save(self, *rows: SQLModel, step: str = "update") -> None:
        """Persist changes to several rows in a single commit."""
        now = utcnow()
        try:
            for row in rows:
                if hasattr(row, "updated_at"):
                    row.updated_at = now
                self.session.add(row)
            self.session.commit()
            for row in rows:
                self.session.refresh(row)
        except SQLAlchemyError as exc:
            raise self._fail(step, exc) from exc

    def delete_requests(self, listing_id: int, statuses: Iterable[str]) -> int:
        try:
            doomed = self.session.exec(
                select(FoodRequest).where(
                    FoodRequest.listing_id == listing_id,
                    FoodRequest.status.in_(list(statuses)),
                )
            ).all()
            for req in doomed:
                self.session.delete(req)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("delete_requests", exc) from exc
        return len(doomed)

    def delete_listing(self, listing: Listing) -> None:
        try:
            self.session.delete(listing)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("delete_listing", exc) from exc

    # ------------------------------------------------------------
    # Filtered scans
    # ------------------------------------------------------------

    def find_listings(
        self,
        donor_id: Optional[int] = None,
        status: Optional[str] = None,
        event_type: Optional[str] = None,
        location: Optional[str] = None,
        expires_after=None,
    ) -> Sequence[Listing]:
        query = select(Listing)

        if donor_id is not None:
            query = query.where(Listing.donor_id == donor_id)

        if status is not None:
            query = query.where(Listing.status == status)

        if event_type is not None:
            query = query.where(Listing.event_type == event_type)

        if location is not None:
            query = query.where(Listing.location == location)

        if expires_after is not None:
            query = query.where(Listing.expiry_time > expires_after)

        query = query.order_by(Listing.created_at.desc(), Listing.id.desc())
        try:
            return self.session.exec(query).all()
        except SQLAlchemyError as exc:
            raise self._fail("find_listings", exc) from exc

    def find_requests(
        self,
        recipient_id: Optional[int] = None,
        listing_id: Optional[int] = None,
        status: Optional[str] = None,
        donor_id: Optional[int] = None,
    ) -> Sequence[FoodRequest]:
        query = select(FoodRequest)

        if recipient_id is not None:
            query = query.where(FoodRequest.recipient_id == recipient_id)

        if listing_id is not None:
            query = query.where(FoodRequest.listing_id == listing_id)

        if status is not None:
            query = query.where(FoodRequest.status == status)

        if donor_id is not None:
            query = query.join(Listing, Listing.id == FoodRequest.listing_id).where(
                Listing.donor_id == donor_id
            )

        query = query.order_by(FoodRequest.created_at.desc(), FoodRequest.id.desc())
        try:
            return self.session.exec(query).all()
        except SQLAlchemyError as exc:
            raise self._fail("find_requests", exc) from exc

    def accepted_quantity(self, listing_id: int) -> int:
        query = select(func.coalesce(func.sum(FoodRequest.requested_quantity), 0)).where(
            FoodRequest.listing_id == listing_id,
            FoodRequest.status == REQUEST_ACCEPTED,
        )
        try:
            return int(self.session.exec(query).one())
        except SQLAlchemyError as exc:
            raise self._fail("accepted_quantity", exc) from exc

    def request_counts(self, listing_ids: Iterable[int]) -> dict[int, int]:
        ids = list(listing_ids)
        if not ids:
            return {}
        query = (
            select(FoodRequest.listing_id, func.count(FoodRequest.id))
            .where(FoodRequest.listing_id.in_(ids))
            .group_by(FoodRequest.listing_id)
        )
        try:
            rows = self.session.exec(query).all()
        except SQLAlchemyError as exc:
            raise self._fail("request_counts", exc) from exc
        return {listing_id: count for listing_id, count in rows}

    def distinct_locations(self, status: Optional[str] = None) -> list[str]:
        query = select(distinct(Listing.location))
        if status is not None:
            query = query.where(Listing.status == status)
        query = query.order_by(Listing.location)
        try:
            return list(self.session.exec(query).all())
        except SQLAlchemyError as exc:
            raise self._fail("distinct_locations", exc) from exc
