from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from threading import Lock
from typing import Any, Collection, Dict, Iterator, List, Mapping, Optional, Protocol

from models import BookingStatus, FacilityBooking, FacilityResource


class RepositoryError(Exception):
    """Storage boundary failure. Never retried by the engine."""


@dataclass(frozen=True)
class BookingQuery:
    resource_id: Optional[str] = None
    statuses: Optional[Collection[BookingStatus]] = None
    start_before: Optional[datetime] = None  # keeps bookings with start_time < start_before
    end_after: Optional[datetime] = None     # keeps bookings with end_time > end_after

    def matches(self, booking: FacilityBooking) -> bool:
        if self.resource_id is not None and booking.resource_id != self.resource_id:
            return False
        if self.statuses is not None and booking.status not in self.statuses:
            return False
        if self.start_before is not None and not booking.start_time < self.start_before:
            return False
        if self.end_after is not None and not booking.end_time > self.end_after:
            return False
        return True


# -----------------------------
# Storage interfaces
# -----------------------------
class ResourceRepository(Protocol):
    def find_many(self) -> List[FacilityResource]: ...

    def find_by_id(self, resource_id: str) -> Optional[FacilityResource]: ...

    def create(self, resource: FacilityResource) -> FacilityResource: ...

    def update(self, resource_id: str, changes: Mapping[str, Any]) -> FacilityResource: ...


class BookingRepository(Protocol):
    def find_many(self, query: BookingQuery, limit: Optional[int] = None) -> List[FacilityBooking]: ...

    def find_overlapping(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        statuses: Collection[BookingStatus],
    ) -> List[FacilityBooking]: ...

    def create(self, booking: FacilityBooking) -> FacilityBooking: ...

    def find_by_id(self, booking_id: str) -> Optional[FacilityBooking]: ...

    def update(self, booking_id: str, changes: Mapping[str, Any]) -> FacilityBooking: ...


# -----------------------------
# In-memory adapters
# -----------------------------
class InMemoryResourceRepository:
    def __init__(self) -> None:
        self._items: Dict[str, FacilityResource] = {}
        self._lock = Lock()

    def find_many(self) -> List[FacilityResource]:
        with self._lock:
            return list(self._items.values())

    def find_by_id(self, resource_id: str) -> Optional[FacilityResource]:
        with self._lock:
            return self._items.get(resource_id)

    def create(self, resource: FacilityResource) -> FacilityResource:
        with self._lock:
            if resource.id in self._items:
                raise RepositoryError(f"Resource {resource.id} already exists")
            self._items[resource.id] = resource
            return resource

    def update(self, resource_id: str, changes: Mapping[str, Any]) -> FacilityResource:
        with self._lock:
            existing = self._items.get(resource_id)
            if existing is None:
                raise RepositoryError(f"Resource {resource_id} does not exist")
            updated = replace(existing, **dict(changes))
            self._items[resource_id] = updated
            return updated

    def reset(self) -> None:
        """Clear all resources. For testing only."""
        with self._lock:
            self._items.clear()


class InMemoryBookingRepository:
    # Scheduling fields are fixed once a booking exists.
    MUTABLE_FIELDS = frozenset({"status", "metadata", "updated_at"})

    def __init__(self) -> None:
        self._items: Dict[str, FacilityBooking] = {}
        self._lock = Lock()

    def find_many(self, query: BookingQuery, limit: Optional[int] = None) -> List[FacilityBooking]:
        with self._lock:
            items = [b for b in self._items.values() if query.matches(b)]
        items.sort(key=lambda b: b.start_time)
        if limit is not None:
            items = items[:limit]
        return items

    def find_overlapping(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        statuses: Collection[BookingStatus],
    ) -> List[FacilityBooking]:
        query = BookingQuery(
            resource_id=resource_id,
            statuses=statuses,
            start_before=end,
            end_after=start,
        )
        return self.find_many(query)

    def create(self, booking: FacilityBooking) -> FacilityBooking:
        with self._lock:
            if booking.id in self._items:
                raise RepositoryError(f"Booking {booking.id} already exists")
            self._items[booking.id] = booking
            return booking

    def find_by_id(self, booking_id: str) -> Optional[FacilityBooking]:
        with self._lock:
            return self._items.get(booking_id)

    def update(self, booking_id: str, changes: Mapping[str, Any]) -> FacilityBooking:
        illegal = set(changes) - self.MUTABLE_FIELDS
        if illegal:
            raise RepositoryError(f"Cannot update booking fields: {', '.join(sorted(illegal))}")
        with self._lock:
            existing = self._items.get(booking_id)
            if existing is None:
                raise RepositoryError(f"Booking {booking_id} does not exist")
            updated = replace(existing, **dict(changes))
            self._items[booking_id] = updated
            return updated

    def reset(self) -> None:
        """Clear all bookings. For testing only."""
        with self._lock:
            self._items.clear()


# -----------------------------
# Locking
# -----------------------------
class _KeyedLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = Lock()
        self.holders = 0


class KeyedLocks:
    """
    One mutex per key (resource id or booking id).
    Work under different keys runs in parallel. An entry lives only while
    some caller holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, _KeyedLock] = {}
        self._guard = Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyedLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]
