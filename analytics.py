"""
Utilisation analytics over facility bookings.

Read-only: loads resources and confirmed/completed bookings for a window,
clips each booking to the window and reports booked vs. available hours per
resource, plus portfolio-wide peak hours.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from availability import available_hours
from config import Config
from models import (
    UTILISED_STATUSES,
    FacilityBooking,
    ResourceType,
    hours_between,
    intervals_overlap,
    try_parse_timestamp,
    utc_iso_z,
    utc_now,
)
from repository import BookingQuery, BookingRepository, ResourceRepository

logger = logging.getLogger(__name__)

BUSIEST_LIMIT = 3
IDLE_LIMIT = 5
IDLE_RATE_THRESHOLD = 0.2
PEAK_HOURS_LIMIT = 5

EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


class AnalyticsRange(BaseModel):
    start: str
    end: str


class PeakHour(BaseModel):
    hour: str  # "HH:00"
    bookings: int


class ResourceUtilisation(BaseModel):
    resource_id: str
    resource_name: str
    resource_type: ResourceType
    total_bookings: int
    total_booked_hours: float
    total_available_hours: float
    idle_hours: float
    utilisation_rate: float
    average_booking_hours: float
    peak_usage_hour: Optional[str] = None


class UtilisationTotals(BaseModel):
    total_resources: int = 0
    total_bookings: int = 0
    total_booked_hours: float = 0.0
    total_available_hours: float = 0.0
    utilisation_rate: float = 0.0


class UtilisationOverview(BaseModel):
    range: AnalyticsRange
    totals: UtilisationTotals
    summaries: List[ResourceUtilisation]
    busiest_resources: List[ResourceUtilisation]
    idle_resources: List[ResourceUtilisation]
    peak_hours: List[PeakHour]


@dataclass
class _Usage:
    bookings: int = 0
    hours: float = 0.0
    hour_buckets: Dict[int, int] = field(default_factory=dict)


def format_hour(hour: int) -> str:
    return f"{hour:02d}:00"


def resolve_range(
    start: Optional[str],
    end: Optional[str],
    now: datetime,
    window_days: int = Config.ANALYTICS_WINDOW_DAYS,
) -> Tuple[datetime, datetime]:
    """
    Unparsable bounds fall back to the default window ending now.
    Windows reaching before the first representable instant start there.
    """
    range_end = try_parse_timestamp(end) or now
    range_start = try_parse_timestamp(start) or days_before(range_end, window_days)
    if range_start >= range_end:
        range_start = days_before(range_end, 1)
    return range_start, range_end


def days_before(moment: datetime, days: int) -> datetime:
    try:
        return moment - timedelta(days=days)
    except OverflowError:
        return EARLIEST


def clip(booking: FacilityBooking, start: datetime, end: datetime) -> Optional[Tuple[datetime, datetime]]:
    if not intervals_overlap(booking.start_time, booking.end_time, start, end):
        return None
    return max(booking.start_time, start), min(booking.end_time, end)


def hours_touched(start: datetime, end: datetime) -> List[int]:
    """Hour-of-day of every clock hour the interval overlaps, in order."""
    hours = []
    cursor = start.replace(minute=0, second=0, microsecond=0)
    while cursor < end:
        hours.append(cursor.hour)
        try:
            cursor += timedelta(hours=1)
        except OverflowError:
            break
    return hours


def peak_hour(buckets: Dict[int, int]) -> Optional[int]:
    # Ties go to the hour seen first.
    best: Optional[int] = None
    for hour, count in buckets.items():
        if best is None or count > buckets[best]:
            best = hour
    return best


class UtilisationAnalytics:
    def __init__(
        self,
        resources: ResourceRepository,
        bookings: BookingRepository,
        default_hours_per_day: float = Config.DEFAULT_AVAILABLE_HOURS_PER_DAY,
        window_days: int = Config.ANALYTICS_WINDOW_DAYS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._resources = resources
        self._bookings = bookings
        self._default_hours_per_day = default_hours_per_day
        self._window_days = window_days
        self._clock = clock

    def get_utilisation(self, start: Optional[str] = None, end: Optional[str] = None) -> UtilisationOverview:
        range_start, range_end = resolve_range(start, end, self._clock(), self._window_days)
        echoed = AnalyticsRange(start=utc_iso_z(range_start), end=utc_iso_z(range_end))

        resources = self._resources.find_many()
        if not resources:
            return UtilisationOverview(
                range=echoed,
                totals=UtilisationTotals(),
                summaries=[],
                busiest_resources=[],
                idle_resources=[],
                peak_hours=[],
            )

        usage: Dict[str, _Usage] = {r.id: _Usage() for r in resources}
        global_buckets: Dict[int, int] = {}

        bookings = self._bookings.find_many(
            BookingQuery(statuses=UTILISED_STATUSES, start_before=range_end, end_after=range_start)
        )
        for booking in bookings:
            entry = usage.get(booking.resource_id)
            if entry is None:
                continue
            window = clip(booking, range_start, range_end)
            if window is None:
                continue

            entry.bookings += 1
            entry.hours += hours_between(*window)
            for hour in hours_touched(*window):
                entry.hour_buckets[hour] = entry.hour_buckets.get(hour, 0) + 1
                global_buckets[hour] = global_buckets.get(hour, 0) + 1

        summaries = []
        for resource in resources:
            entry = usage[resource.id]
            available = available_hours(resource, range_start, range_end, self._default_hours_per_day)
            peak = peak_hour(entry.hour_buckets)
            summaries.append(
                ResourceUtilisation(
                    resource_id=resource.id,
                    resource_name=resource.name,
                    resource_type=resource.type,
                    total_bookings=entry.bookings,
                    total_booked_hours=entry.hours,
                    total_available_hours=available,
                    idle_hours=max(available - entry.hours, 0.0),
                    utilisation_rate=entry.hours / available if available > 0 else 0.0,
                    average_booking_hours=entry.hours / entry.bookings if entry.bookings else 0.0,
                    peak_usage_hour=format_hour(peak) if peak is not None else None,
                )
            )
        summaries.sort(key=lambda s: s.resource_name)

        busiest = sorted(
            (s for s in summaries if s.utilisation_rate > 0),
            key=lambda s: s.utilisation_rate,
            reverse=True,
        )[:BUSIEST_LIMIT]
        idle = sorted(
            (s for s in summaries if s.utilisation_rate < IDLE_RATE_THRESHOLD),
            key=lambda s: s.utilisation_rate,
        )[:IDLE_LIMIT]
        peak_hours = [
            PeakHour(hour=format_hour(hour), bookings=count)
            for hour, count in sorted(global_buckets.items(), key=lambda item: item[1], reverse=True)[:PEAK_HOURS_LIMIT]
        ]

        total_booked = sum(s.total_booked_hours for s in summaries)
        total_available = sum(s.total_available_hours for s in summaries)
        totals = UtilisationTotals(
            total_resources=len(summaries),
            total_bookings=sum(s.total_bookings for s in summaries),
            total_booked_hours=total_booked,
            total_available_hours=total_available,
            utilisation_rate=total_booked / total_available if total_available > 0 else 0.0,
        )

        logger.info(
            f"Utilisation computed for {len(summaries)} resources "
            f"from {echoed.start} to {echoed.end}: {totals.total_bookings} bookings"
        )
        return UtilisationOverview(
            range=echoed,
            totals=totals,
            summaries=summaries,
            busiest_resources=busiest,
            idle_resources=idle,
            peak_hours=peak_hours,
        )
