from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, status

from analytics import UtilisationAnalytics, UtilisationOverview
from models import (
    Actor,
    BookingFilters,
    BookingOut,
    BookingRequest,
    BookingStatus,
    CancellationRequest,
    CreateBookingIn,
    ResourceOut,
    ResourcePayload,
    ReviewRequest,
    UpdateBookingIn,
)
from services import (
    BookingNotFoundError,
    FacilityError,
    FacilityService,
    InvalidBookingError,
    InvalidResourceError,
    InvalidWindowError,
    NotCancellableError,
    NotPendingError,
    RepositoryError,
    ResourceNotFoundError,
    SlotConflictError,
    UnauthorizedError,
)

logger = logging.getLogger(__name__)

PERM_FACILITIES_MANAGE = "facilities:manage"

_ERROR_STATUS = {
    InvalidWindowError: status.HTTP_422_UNPROCESSABLE_CONTENT,
    InvalidBookingError: status.HTTP_422_UNPROCESSABLE_CONTENT,
    InvalidResourceError: status.HTTP_422_UNPROCESSABLE_CONTENT,
    ResourceNotFoundError: status.HTTP_404_NOT_FOUND,
    BookingNotFoundError: status.HTTP_404_NOT_FOUND,
    SlotConflictError: status.HTTP_409_CONFLICT,
    NotPendingError: status.HTTP_409_CONFLICT,
    NotCancellableError: status.HTTP_409_CONFLICT,
    UnauthorizedError: status.HTTP_403_FORBIDDEN,
}


def to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, RepositoryError):
        logger.error(f"Facility storage failure: {exc}")
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Facility storage is unavailable.",
        )
    return HTTPException(
        status_code=_ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST),
        detail=str(exc),
    )


def current_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_name: Optional[str] = Header(None),
    x_actor_email: Optional[str] = Header(None),
) -> Actor:
    """Identity resolved upstream by the authentication layer."""
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return Actor(id=x_actor_id.strip(), name=x_actor_name, email=x_actor_email)


def actor_permissions(x_actor_permissions: Optional[str] = Header(None)) -> List[str]:
    if not x_actor_permissions:
        return []
    return [p.strip() for p in x_actor_permissions.split(",") if p.strip()]


def create_router(service: FacilityService, analytics: UtilisationAnalytics) -> APIRouter:
    router = APIRouter(prefix="/facilities", tags=["Facilities"])

    @router.get("/resources", response_model=List[ResourceOut])
    def list_resources(actor: Actor = Depends(current_actor)) -> List[ResourceOut]:
        return [ResourceOut.from_domain(r) for r in service.list_resources()]

    @router.post("/resources", response_model=ResourceOut)
    def upsert_resource(
        payload: ResourcePayload,
        actor: Actor = Depends(current_actor),
        permissions: List[str] = Depends(actor_permissions),
    ) -> ResourceOut:
        if PERM_FACILITIES_MANAGE not in permissions:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        try:
            return ResourceOut.from_domain(service.upsert_resource(payload))
        except (FacilityError, RepositoryError) as exc:
            raise to_http_error(exc)

    @router.get("/resources/{resource_id}/bookings", response_model=List[BookingOut])
    def list_resource_bookings(
        resource_id: str = Path(..., min_length=1),
        status_filter: Optional[BookingStatus] = Query(None, alias="status"),
        start: Optional[str] = Query(None),
        end: Optional[str] = Query(None),
        actor: Actor = Depends(current_actor),
    ) -> List[BookingOut]:
        filters = BookingFilters(
            status=[status_filter] if status_filter else None,
            start=start,
            end=end,
        )
        try:
            items = service.list_resource_bookings(resource_id, filters)
        except (FacilityError, RepositoryError) as exc:
            raise to_http_error(exc)
        return [BookingOut.from_domain(b) for b in items]

    @router.get("/bookings", response_model=List[BookingOut])
    def list_bookings(
        resource_id: Optional[str] = Query(None),
        status_filter: Optional[List[BookingStatus]] = Query(None, alias="status"),
        start: Optional[str] = Query(None),
        end: Optional[str] = Query(None),
        limit: Optional[int] = Query(None, ge=1),
        actor: Actor = Depends(current_actor),
    ) -> List[BookingOut]:
        filters = BookingFilters(
            resource_id=resource_id,
            status=status_filter or None,
            start=start,
            end=end,
            limit=limit,
        )
        try:
            items = service.list_bookings(filters)
        except RepositoryError as exc:
            raise to_http_error(exc)
        return [BookingOut.from_domain(b) for b in items]

    @router.post("/bookings", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
    def create_booking(payload: CreateBookingIn, actor: Actor = Depends(current_actor)) -> BookingOut:
        request = BookingRequest(
            resource_id=payload.resource_id,
            title=payload.title,
            description=payload.description,
            start_time=payload.start_time,
            end_time=payload.end_time,
            participants=payload.participants,
            metadata=payload.metadata,
            actor=actor,
        )
        try:
            return BookingOut.from_domain(service.create_booking(request))
        except (FacilityError, RepositoryError) as exc:
            raise to_http_error(exc)

    @router.patch("/bookings/{booking_id}", response_model=BookingOut)
    def update_booking(
        payload: Optional[UpdateBookingIn] = None,
        booking_id: str = Path(..., min_length=1),
        actor: Actor = Depends(current_actor),
    ) -> BookingOut:
        # A bare PATCH cancels.
        payload = payload or UpdateBookingIn()
        try:
            if payload.action in ("approve", "reject"):
                booking = service.review_booking(
                    ReviewRequest(booking_id=booking_id, decision=payload.action, note=payload.note, actor=actor)
                )
            else:
                booking = service.cancel_booking(
                    CancellationRequest(booking_id=booking_id, reason=payload.reason, actor=actor)
                )
        except (FacilityError, RepositoryError) as exc:
            raise to_http_error(exc)
        return BookingOut.from_domain(booking)

    @router.get("/analytics", response_model=UtilisationOverview, response_model_exclude_none=True)
    def get_utilisation_analytics(
        start: Optional[str] = Query(None),
        end: Optional[str] = Query(None),
        actor: Actor = Depends(current_actor),
    ) -> UtilisationOverview:
        try:
            return analytics.get_utilisation(start=start, end=end)
        except RepositoryError as exc:
            raise to_http_error(exc)

    return router
