"""Weekly availability windows and the hours they open up over a date range."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

from models import AvailabilitySlot, FacilityResource

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class WeeklyWindow:
    weekday: str
    start_minutes: int
    end_minutes: int

    @property
    def hours(self) -> float:
        return (self.end_minutes - self.start_minutes) / 60.0


def parse_weekday(name: object) -> Optional[str]:
    if not isinstance(name, str):
        return None
    candidate = name.strip().lower()
    return candidate if candidate in WEEKDAYS else None


def parse_clock(value: object) -> Optional[int]:
    """
    Parse "HH:MM" into minutes since midnight.
    "24:00" is accepted as the end of the day.
    """
    if not isinstance(value, str):
        return None
    parts = value.strip().split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        return None

    hours, minutes = int(parts[0]), int(parts[1])
    if minutes > 59:
        return None
    if hours == 24 and minutes == 0:
        return MINUTES_PER_DAY
    if hours > 23:
        return None
    return hours * 60 + minutes


def to_window(slot: AvailabilitySlot) -> Optional[WeeklyWindow]:
    weekday = parse_weekday(slot.day)
    start = parse_clock(slot.start_time)
    end = parse_clock(slot.end_time)
    if weekday is None or start is None or end is None:
        return None
    if end <= start:
        return None
    return WeeklyWindow(weekday=weekday, start_minutes=start, end_minutes=end)


def valid_windows(availability: Iterable[AvailabilitySlot]) -> List[WeeklyWindow]:
    # Overlapping windows on the same day are kept as-is and counted twice.
    windows = []
    for slot in availability:
        window = to_window(slot)
        if window is not None:
            windows.append(window)
    return windows


def calendar_days(start: datetime, end: datetime) -> List[date]:
    """Every UTC calendar day from start's date to end's date, inclusive."""
    first, last = start.date(), end.date()
    if last < first:
        return []
    return [first + timedelta(days=offset) for offset in range((last - first).days + 1)]


def weekday_occurrences(start: datetime, end: datetime) -> Dict[str, int]:
    counts = Counter(WEEKDAYS[day.weekday()] for day in calendar_days(start, end))
    return {weekday: counts.get(weekday, 0) for weekday in WEEKDAYS}


def available_hours(
    resource: FacilityResource,
    start: datetime,
    end: datetime,
    default_hours_per_day: float,
) -> float:
    """
    Total hours the resource is open between start and end (inclusive days).

    Resources with no usable availability fall back to default_hours_per_day
    for every calendar day in range, so every resource has a non-zero
    denominator for utilisation.
    """
    windows = valid_windows(resource.availability)
    if not windows:
        return default_hours_per_day * len(calendar_days(start, end))

    occurrences = weekday_occurrences(start, end)
    return sum(window.hours * occurrences[window.weekday] for window in windows)
