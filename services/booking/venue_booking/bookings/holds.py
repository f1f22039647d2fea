"""Temporary hold lifecycle.

    active --timeout--------> expired
    active --cancel/replace-> released
    active --promotion------> promoted

Only ``active`` is non-terminal. Expiry is enforced twice: the background
sweep marks stale holds expired, and every read treats an active hold past
``expires_at`` as expired already, so correctness never waits on the sweep.
"""

import uuid
from datetime import datetime, timedelta
from typing import Callable, Sequence

import structlog

from venue_booking.bookings.availability import AvailabilityEngine
from venue_booking.bookings.domain import Hold, HoldStatus
from venue_booking.bookings.store import BookingStore
from venue_booking.bookings.timerange import TimeRange, normalize
from venue_booking.exceptions import (
    HoldConflict,
    HoldExpired,
    HoldNotFound,
    StoreConflict,
    ValidationError,
)

logger = structlog.get_logger(__name__)


class HoldManager:

    def __init__(
        self,
        store: BookingStore,
        availability: AvailabilityEngine,
        clock: Callable[[], datetime],
        default_ttl_minutes: int = 30,
        max_ttl_minutes: int = 24 * 60,
    ):
        self.store = store
        self.availability = availability
        self.clock = clock
        self.default_ttl_minutes = default_ttl_minutes
        self.max_ttl_minutes = max_ttl_minutes

    def _ttl(self, ttl_minutes: int | None) -> timedelta:
        minutes = self.default_ttl_minutes if ttl_minutes is None else ttl_minutes
        if minutes <= 0:
            raise ValidationError("Hold TTL must be a positive number of minutes.")
        if minutes > self.max_ttl_minutes:
            raise ValidationError(f"Hold TTL cannot exceed {self.max_ttl_minutes} minutes.")
        return timedelta(minutes=minutes)

    async def create_hold(
        self,
        venue_id: str,
        ranges: Sequence[TimeRange],
        owner_token: str,
        ttl_minutes: int | None = None,
    ) -> Hold:
        if not venue_id:
            raise ValidationError("Venue id is required.")
        if not owner_token:
            raise ValidationError("Owner token is required.")
        ttl = self._ttl(ttl_minutes)
        ranges = normalize(ranges)
        if not ranges:
            raise ValidationError("At least one range is required.")

        log = logger.bind(venue_id=venue_id, owner=owner_token)
        # The owner's current selection is about to be replaced, so it must not count against them.
        current = await self.store.find_active_hold_for_owner(venue_id, owner_token, self.clock())
        exclude_id = current.id if current else None

        result = await self.availability.check_availability(venue_id, ranges, exclude_hold_id=exclude_id)
        if not result.available:
            log.info("hold_rejected", reason="unavailable", conflicts=len(result.conflicts))
            raise HoldConflict(conflicts=result.conflicts, suggested_alternatives=result.suggested_alternatives)

        try:
            hold = await self._insert(venue_id, ranges, owner_token, ttl)
        except StoreConflict:
            # A concurrent writer won the race; look again once before giving up.
            log.info("hold_insert_conflict", attempt=1)
            current = await self.store.find_active_hold_for_owner(venue_id, owner_token, self.clock())
            result = await self.availability.check_availability(
                venue_id, ranges, exclude_hold_id=current.id if current else None
            )
            if not result.available:
                log.info("hold_rejected", reason="lost_race", conflicts=len(result.conflicts))
                raise HoldConflict(conflicts=result.conflicts, suggested_alternatives=result.suggested_alternatives)
            try:
                hold = await self._insert(venue_id, ranges, owner_token, ttl)
            except StoreConflict:
                current = await self.store.find_active_hold_for_owner(venue_id, owner_token, self.clock())
                result = await self.availability.check_availability(
                    venue_id, ranges, exclude_hold_id=current.id if current else None
                )
                log.info("hold_rejected", reason="lost_race_twice", conflicts=len(result.conflicts))
                raise HoldConflict(conflicts=result.conflicts, suggested_alternatives=result.suggested_alternatives)

        log.info("hold_created", hold_id=str(hold.id), ranges=len(hold.ranges), expires_at=hold.expires_at.isoformat())
        return hold

    async def _insert(self, venue_id, ranges, owner_token, ttl: timedelta) -> Hold:
        now = self.clock()
        hold = Hold(
            venue_id=venue_id,
            owner_token=owner_token,
            ranges=tuple(ranges),
            created_at=now,
            expires_at=now + ttl,
        )
        return await self.store.insert_hold(hold, now)

    async def get_hold(self, hold_id: uuid.UUID) -> Hold:
        hold = await self.store.get_hold(hold_id)
        if hold is None:
            raise HoldNotFound()
        hold.status = hold.effective_status(self.clock())
        return hold

    async def refresh_hold(self, hold_id: uuid.UUID, owner_token: str, ttl_minutes: int | None = None) -> Hold:
        ttl = self._ttl(ttl_minutes)
        now = self.clock()
        hold = await self.store.get_hold(hold_id)
        if hold is None or hold.owner_token != owner_token:
            logger.info("hold_refresh_not_found", hold_id=str(hold_id))
            raise HoldNotFound()
        if not hold.is_live(now):
            logger.info("hold_refresh_expired", hold_id=str(hold_id), status=hold.effective_status(now).value)
            raise HoldExpired()

        # Never shortens: a longer remaining expiry is kept as is.
        expires_at = max(hold.expires_at, now + ttl)
        refreshed = await self.store.extend_hold(hold_id, expires_at, now)
        if refreshed is None:
            # Released, promoted or swept between the read and the update.
            logger.info("hold_refresh_expired", hold_id=str(hold_id), status="changed_concurrently")
            raise HoldExpired()
        logger.info("hold_refreshed", hold_id=str(hold_id), expires_at=refreshed.expires_at.isoformat())
        return refreshed

    async def release_hold(self, hold_id: uuid.UUID) -> None:
        released = await self.store.release_hold(hold_id, self.clock())
        if released is None:
            logger.info("hold_release_unknown", hold_id=str(hold_id))
        elif released.status == HoldStatus.RELEASED:
            logger.info("hold_released", hold_id=str(hold_id))

    async def sweep(self, now: datetime | None = None) -> int:
        return await self.store.sweep_expired_holds(now or self.clock())
