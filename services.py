from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

from config import Config
from models import (
    BLOCKING_STATUSES,
    Actor,
    ApprovalDecision,
    ApprovalPolicy,
    ApprovalState,
    ApprovalStatus,
    AvailabilitySlot,
    BookingFilters,
    BookingMetadata,
    BookingRequest,
    BookingStatus,
    CancellationRecord,
    CancellationRequest,
    FacilityBooking,
    FacilityResource,
    ResourcePayload,
    ResourceType,
    ReviewRequest,
    clean_strings,
    hours_between,
    parse_timestamp,
    try_parse_timestamp,
    utc_now,
)
from policy import ApprovalPolicyEvaluator
from repository import (
    BookingQuery,
    BookingRepository,
    KeyedLocks,
    RepositoryError,
    ResourceRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_REJECTION_REASON = "Rejected by approver"


class FacilityError(Exception):
    """Base class for domain/service errors."""


class InvalidWindowError(FacilityError):
    pass


class InvalidBookingError(FacilityError):
    pass


class InvalidResourceError(FacilityError):
    pass


class ResourceNotFoundError(FacilityError):
    pass


class BookingNotFoundError(FacilityError):
    pass


class SlotConflictError(FacilityError):
    pass


class NotPendingError(FacilityError):
    pass


class NotCancellableError(FacilityError):
    pass


class UnauthorizedError(FacilityError):
    pass


__all__ = [
    "FacilityError",
    "InvalidWindowError",
    "InvalidBookingError",
    "InvalidResourceError",
    "ResourceNotFoundError",
    "BookingNotFoundError",
    "SlotConflictError",
    "NotPendingError",
    "NotCancellableError",
    "UnauthorizedError",
    "RepositoryError",
    "FacilityService",
    "validate_booking_window",
]


def validate_booking_window(start: Optional[str], end: Optional[str]) -> Tuple[datetime, datetime]:
    try:
        start_utc = parse_timestamp(start)
        end_utc = parse_timestamp(end)
    except (TypeError, ValueError):
        raise InvalidWindowError("A valid start and end time is required")

    # Rule: start must be before end
    if not (start_utc < end_utc):
        raise InvalidWindowError("Booking end time must be after start time")
    return start_utc, end_utc


def _strip_or_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class FacilityService:
    """
    Resource registry plus the booking conflict and approval engine.

    create_booking holds a per-resource lock across the overlap check and the
    insert; review_booking and cancel_booking hold a per-booking lock across
    their read-modify-write.
    """

    def __init__(
        self,
        resources: ResourceRepository,
        bookings: BookingRepository,
        policy: Optional[ApprovalPolicyEvaluator] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._resources = resources
        self._bookings = bookings
        self._policy = policy or ApprovalPolicyEvaluator()
        self._clock = clock
        self._resource_locks = KeyedLocks()
        self._booking_locks = KeyedLocks()

    # -----------------------------
    # Resources
    # -----------------------------
    def list_resources(self) -> List[FacilityResource]:
        items = self._resources.find_many()
        items.sort(key=lambda r: (r.type.value, r.name))
        return items

    def get_resource(self, resource_id: str) -> FacilityResource:
        resource = self._resources.find_by_id(resource_id)
        if resource is None:
            raise ResourceNotFoundError(f"Facility resource {resource_id} not found")
        return resource

    def upsert_resource(self, payload: ResourcePayload) -> FacilityResource:
        try:
            resource_type = ResourceType(payload.type)
        except ValueError:
            raise InvalidResourceError("Invalid facility type provided")

        name = (payload.name or "").strip()
        if not name:
            raise InvalidResourceError("Facility name is required")

        policy = None
        if payload.approval_policy is not None:
            policy = ApprovalPolicy.build(
                requires_approval=payload.approval_policy.requires_approval,
                approver_emails=payload.approval_policy.approver_emails,
                auto_approve_duration_hours=payload.approval_policy.auto_approve_duration_hours,
                auto_approve_emails=payload.approval_policy.auto_approve_emails,
            )

        now = self._clock()
        fields = {
            "type": resource_type,
            "name": name,
            "location": _strip_or_none(payload.location),
            "capacity": payload.capacity,
            "description": _strip_or_none(payload.description),
            "tags": frozenset(tag.strip() for tag in clean_strings(payload.tags)),
            "availability": tuple(
                AvailabilitySlot(day=slot.day, start_time=slot.start_time, end_time=slot.end_time)
                for slot in payload.availability
            ),
            "approval_policy": policy,
            "metadata": dict(payload.metadata or {}),
            "updated_at": now,
        }

        if payload.id:
            self.get_resource(payload.id)
            resource = self._resources.update(payload.id, fields)
            logger.info(f"Facility resource updated: {resource.id} ({resource.name})")
        else:
            resource = self._resources.create(
                FacilityResource(id=f"res_{uuid4().hex}", created_at=now, **fields)
            )
            logger.info(f"Facility resource created: {resource.id} ({resource.name})")
        return resource

    # -----------------------------
    # Bookings
    # -----------------------------
    def create_booking(self, request: BookingRequest) -> FacilityBooking:
        start, end = validate_booking_window(request.start_time, request.end_time)

        title = (request.title or "").strip()
        if not title:
            raise InvalidBookingError("Booking title is required")

        resource = self.get_resource(request.resource_id)
        actor = request.actor
        now = self._clock()

        status, approval = self._initial_approval(resource.approval_policy, actor, start, end, now)
        metadata = replace(BookingMetadata.from_caller(request.metadata), approval=approval)

        booking = FacilityBooking(
            id=f"bkg_{uuid4().hex}",
            resource_id=resource.id,
            title=title,
            description=_strip_or_none(request.description),
            start_time=start,
            end_time=end,
            status=status,
            created_by=actor.id,
            created_by_name=actor.name,
            created_by_email=actor.email,
            participants=clean_strings(request.participants),
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )

        # Rule: no live booking on the same resource may overlap (half-open intervals)
        with self._resource_locks.hold(resource.id):
            overlapping = self._bookings.find_overlapping(resource.id, start, end, BLOCKING_STATUSES)
            if overlapping:
                logger.warning(
                    f"Booking conflict on resource {resource.id}: "
                    f"requested window overlaps booking {overlapping[0].id}"
                )
                raise SlotConflictError("This time slot is already booked for the selected resource")
            created = self._bookings.create(booking)

        logger.info(f"Booking created: {created.id} for resource {resource.id} with status {created.status.value}")
        return created

    def _initial_approval(
        self,
        policy: Optional[ApprovalPolicy],
        actor: Actor,
        start: datetime,
        end: datetime,
        now: datetime,
    ) -> Tuple[BookingStatus, Optional[ApprovalState]]:
        if policy is None:
            return BookingStatus.CONFIRMED, None

        status = BookingStatus.CONFIRMED
        auto_approved = False
        history: Tuple[ApprovalDecision, ...] = ()

        if self._policy.requires_review(policy):
            reason = self._policy.auto_approval_reason(policy, actor, hours_between(start, end))
            if reason is None:
                status = BookingStatus.PENDING
            else:
                auto_approved = True
                history = (
                    ApprovalDecision(
                        decision="auto-approved",
                        decided_at=now,
                        actor_id=actor.id,
                        actor_name=actor.name,
                        actor_email=actor.email,
                        reason=reason,
                    ),
                )

        approval = ApprovalState(
            status=ApprovalStatus.PENDING if status == BookingStatus.PENDING else ApprovalStatus.APPROVED,
            requested_by=actor,
            requested_at=now,
            approvers=tuple(sorted(policy.approver_emails)),
            auto_approved=auto_approved,
            history=history,
        )
        return status, approval

    def get_booking(self, booking_id: str) -> FacilityBooking:
        booking = self._bookings.find_by_id(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        return booking

    def list_bookings(self, filters: Optional[BookingFilters] = None) -> List[FacilityBooking]:
        filters = filters or BookingFilters()

        # No requested limit returns every match; a requested one is capped.
        limit = None
        if filters.limit is not None and filters.limit > 0:
            limit = min(filters.limit, Config.MAX_BOOKING_LIST_LIMIT)

        query = BookingQuery(
            resource_id=filters.resource_id,
            statuses=frozenset(filters.status) if filters.status else None,
            start_before=try_parse_timestamp(filters.end),
            end_after=try_parse_timestamp(filters.start),
        )
        return self._bookings.find_many(query, limit=limit)

    def list_resource_bookings(self, resource_id: str, filters: Optional[BookingFilters] = None) -> List[FacilityBooking]:
        self.get_resource(resource_id)
        return self.list_bookings(replace(filters or BookingFilters(), resource_id=resource_id))

    def review_booking(self, request: ReviewRequest) -> FacilityBooking:
        if request.decision not in ("approve", "reject"):
            raise InvalidBookingError("Review decision must be 'approve' or 'reject'")

        actor = request.actor
        # Unknown ids fail before a lock entry is created for them.
        self.get_booking(request.booking_id)
        with self._booking_locks.hold(request.booking_id):
            existing = self.get_booking(request.booking_id)
            if existing.status != BookingStatus.PENDING:
                raise NotPendingError(f"Booking {existing.id} is {existing.status.value}, not pending")

            resource = self._resources.find_by_id(existing.resource_id)
            policy = resource.approval_policy if resource is not None else None
            if not self._policy.can_review(policy, actor):
                raise UnauthorizedError("You are not authorised to review bookings for this resource")

            now = self._clock()
            approved = request.decision == "approve"
            note = _strip_or_none(request.note)

            entry = ApprovalDecision(
                decision="approved" if approved else "rejected",
                decided_at=now,
                actor_id=actor.id,
                actor_name=actor.name,
                actor_email=actor.email,
                note=note,
            )
            prior = existing.metadata.approval or ApprovalState(
                status=ApprovalStatus.PENDING,
                requested_by=Actor(existing.created_by, existing.created_by_name, existing.created_by_email),
                requested_at=existing.created_at,
                approvers=tuple(sorted(policy.approver_emails)) if policy is not None else (),
            )
            approval = replace(
                prior,
                status=ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED,
                history=prior.history + (entry,),
            )

            cancellation = existing.metadata.cancellation
            if not approved:
                cancellation = CancellationRecord(
                    reason=note or DEFAULT_REJECTION_REASON,
                    actor_id=actor.id,
                    actor_name=actor.name,
                    actor_email=actor.email,
                    cancelled_at=now,
                )

            updated = self._bookings.update(
                existing.id,
                {
                    "status": BookingStatus.CONFIRMED if approved else BookingStatus.CANCELLED,
                    "metadata": replace(existing.metadata, approval=approval, cancellation=cancellation),
                    "updated_at": now,
                },
            )

        logger.info(f"Booking {updated.id} {entry.decision} by {actor.id}")
        return updated

    def cancel_booking(self, request: CancellationRequest) -> FacilityBooking:
        actor = request.actor
        # Unknown ids fail before a lock entry is created for them.
        self.get_booking(request.booking_id)
        with self._booking_locks.hold(request.booking_id):
            existing = self.get_booking(request.booking_id)
            if existing.status == BookingStatus.CANCELLED:
                return existing
            if existing.status == BookingStatus.COMPLETED:
                raise NotCancellableError(f"Booking {existing.id} is already completed")

            now = self._clock()
            cancellation = CancellationRecord(
                reason=_strip_or_none(request.reason),
                actor_id=actor.id,
                actor_name=actor.name,
                actor_email=actor.email,
                cancelled_at=now,
            )
            updated = self._bookings.update(
                existing.id,
                {
                    "status": BookingStatus.CANCELLED,
                    "metadata": replace(existing.metadata, cancellation=cancellation),
                    "updated_at": now,
                },
            )

        logger.info(f"Booking {updated.id} cancelled by {actor.id}")
        return updated
