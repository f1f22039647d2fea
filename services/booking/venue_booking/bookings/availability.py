"""Advisory availability checks.

The check narrows the race window and gives the customer useful conflict
details and alternatives; it is not what prevents double booking. Two
requests can both pass it, and the store's exclusion constraint then lets
exactly one of them write.
"""

import uuid
from datetime import datetime, timedelta
from typing import Callable, Sequence

import structlog

from venue_booking.bookings.domain import AvailabilityResult, Conflict, ConflictSource
from venue_booking.bookings.store import BookingStore
from venue_booking.bookings.timerange import TimeRange, overlaps, overlaps_any, span
from venue_booking.exceptions import ValidationError

logger = structlog.get_logger(__name__)


class AvailabilityEngine:

    def __init__(
        self,
        store: BookingStore,
        clock: Callable[[], datetime],
        horizon: timedelta = timedelta(days=90),
        step: timedelta = timedelta(days=1),
        max_alternatives: int = 3,
    ):
        if step <= timedelta(0):
            raise ValueError("alternative search step must be positive")
        self.store = store
        self.clock = clock
        self.horizon = horizon
        self.step = step
        self.max_alternatives = max_alternatives

    async def _occupied(self, venue_id: str, window: TimeRange, exclude_hold_id: uuid.UUID | None):
        """Every interval at the venue that blocks ``window``, tagged with its source."""
        now = self.clock()
        occupied = []
        for hold in await self.store.find_active_holds(venue_id, now):
            if hold.id == exclude_hold_id:
                continue
            occupied.extend((ConflictSource.HOLD, hold.id, r) for r in hold.ranges if overlaps(r, window))
        for booking in await self.store.find_bookings(venue_id, window):
            occupied.extend((ConflictSource.BOOKING, booking.id, r) for r in booking.ranges if overlaps(r, window))
        for blackout in await self.store.find_blackouts(venue_id, window):
            occupied.append((ConflictSource.BLACKOUT, blackout.id, blackout.range))
        return occupied

    async def check_availability(
        self,
        venue_id: str,
        ranges: Sequence[TimeRange],
        exclude_hold_id: uuid.UUID | None = None,
    ) -> AvailabilityResult:
        ranges = sorted(ranges)
        if not ranges:
            raise ValidationError("At least one range is required.")

        requested = span(ranges)
        # One fetch covers both the conflict test and the alternative search.
        window = TimeRange(requested.start, requested.end + self.horizon)
        occupied = await self._occupied(venue_id, window, exclude_hold_id)

        conflicts = [
            Conflict(source=source, source_id=source_id, range=taken, requested=candidate)
            for candidate in ranges
            for source, source_id, taken in occupied
            if overlaps(candidate, taken)
        ]
        if not conflicts:
            return AvailabilityResult(available=True)

        conflicting = sorted({c.requested for c in conflicts})
        alternatives = self.suggest_alternatives(
            conflicting,
            taken=[r for _, _, r in occupied],
            keep_clear=[r for r in ranges if r not in conflicting],
        )
        logger.info(
            "availability_conflict",
            venue_id=venue_id,
            conflicts=len(conflicts),
            alternatives=len(alternatives),
        )
        return AvailabilityResult(
            available=False,
            conflicts=tuple(conflicts),
            suggested_alternatives=tuple(alternatives),
        )

    def suggest_alternatives(self, conflicting, taken, keep_clear=()) -> list[TimeRange]:
        """First free slots of the same length after each conflicting range.

        Each conflicting range is pushed forward by ``step`` until it clears
        every taken interval (and the other requested ranges), up to
        ``horizon``. Results are ordered by start and de-duplicated.
        """
        suggestions = set()
        for original in conflicting:
            offset = self.step
            found = 0
            while offset <= self.horizon and found < self.max_alternatives:
                candidate = original.shift(offset)
                if not overlaps_any(candidate, taken) and not overlaps_any(candidate, keep_clear):
                    suggestions.add(candidate)
                    found += 1
                offset += self.step
        return sorted(suggestions)[: self.max_alternatives]
