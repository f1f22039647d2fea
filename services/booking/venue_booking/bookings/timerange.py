"""Half-open time ranges on a venue calendar.

A range covers ``[start, end)``: a booking ending at 10:00 does not collide
with one starting at 10:00. Whole calendar days and venue sessions are turned
into ranges by :func:`normalize`; days are never merged together, so a
selection of Jan 1 and Jan 2 stays two ranges.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Iterable
from zoneinfo import ZoneInfo

from venue_booking.exceptions import ValidationError


@dataclass(frozen=True, order=True)
class TimeRange:
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValidationError("Range boundaries must be timezone-aware.")
        if self.start >= self.end:
            raise ValidationError(
                f"Range start must be before its end ({self.start.isoformat()} >= {self.end.isoformat()})."
            )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "TimeRange") -> bool:
        return overlaps(self, other)

    def shift(self, delta: timedelta) -> "TimeRange":
        return TimeRange(self.start + delta, self.end + delta)

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def overlaps(a: TimeRange, b: TimeRange) -> bool:
    return a.start < b.end and b.start < a.end


def overlaps_any(candidate: TimeRange, ranges: Iterable[TimeRange]) -> bool:
    return any(overlaps(candidate, r) for r in ranges)


def span(ranges: Iterable[TimeRange]) -> TimeRange:
    """Smallest range covering every range given."""
    ranges = list(ranges)
    if not ranges:
        raise ValidationError("At least one range is required.")
    return TimeRange(min(r.start for r in ranges), max(r.end for r in ranges))


class VenueSession(str, Enum):
    MORNING = "morning"
    EVENING = "evening"
    FULL_DAY = "full_day"


# Local wall-clock windows; an end of None means midnight of the next day.
SESSION_WINDOWS = {
    VenueSession.MORNING: (time(8, 0), time(14, 0)),
    VenueSession.EVENING: (time(16, 0), time(23, 0)),
    VenueSession.FULL_DAY: (time(0, 0), None),
}


def day_range(day: date, session: VenueSession = VenueSession.FULL_DAY, tz: str = "UTC") -> TimeRange:
    zone = ZoneInfo(tz)
    start_time, end_time = SESSION_WINDOWS[VenueSession(session)]
    start = datetime.combine(day, start_time, tzinfo=zone)
    if end_time is None or end_time <= start_time:
        end = datetime.combine(day + timedelta(days=1), end_time or time(0, 0), tzinfo=zone)
    else:
        end = datetime.combine(day, end_time, tzinfo=zone)
    return TimeRange(start, end)


def normalize(dates, session: VenueSession | None = None, tz: str = "UTC") -> tuple[TimeRange, ...]:
    """Turn calendar days or explicit ``(start, end)`` pairs into sorted, distinct ranges.

    Days map to the given session window (a full day when no session is given)
    in the venue timezone ``tz``. Duplicates collapse; overlapping explicit
    pairs are rejected rather than merged.
    """
    ranges = set()
    for item in dates:
        if isinstance(item, TimeRange):
            ranges.add(item)
        elif isinstance(item, datetime):
            raise ValidationError("Pass a calendar date or a (start, end) pair, not a bare timestamp.")
        elif isinstance(item, date):
            ranges.add(day_range(item, session or VenueSession.FULL_DAY, tz))
        else:
            try:
                start, end = item
            except (TypeError, ValueError):
                raise ValidationError(f"Cannot interpret {item!r} as a date or a range.")
            ranges.add(TimeRange(start, end))

    ordered = tuple(sorted(ranges))
    for previous, current in zip(ordered, ordered[1:]):
        if overlaps(previous, current):
            raise ValidationError(
                f"Requested ranges overlap each other: {previous.to_dict()} and {current.to_dict()}."
            )
    return ordered
