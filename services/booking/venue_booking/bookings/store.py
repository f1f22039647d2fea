"""Storage contract for holds and bookings, plus a single-process implementation.

Every write that can create an overlap is one atomic operation of the store:
the caller never reads availability and then writes in two steps. The
PostgreSQL store (``repository.SqlAlchemyBookingStore``) gets this from an
exclusion constraint; :class:`InMemoryBookingStore` from one lock held for the
whole check-and-write.
"""

import abc
import asyncio
import uuid
from dataclasses import replace
from datetime import datetime

from venue_booking.bookings.domain import (
    Blackout,
    Booking,
    BookingStatus,
    Hold,
    HoldStatus,
)
from venue_booking.bookings.timerange import TimeRange, overlaps
from venue_booking.exceptions import (
    BookingNotFound,
    InvalidTransition,
    PromotionExpired,
    PromotionNotFound,
    StoreConflict,
)


class BookingStore(abc.ABC):

    @abc.abstractmethod
    async def insert_hold(self, hold: Hold, as_of: datetime) -> Hold:
        """Insert ``hold``, replacing the owner's previous active hold at the venue.

        Raises StoreConflict, leaving every row untouched, if the hold
        overlaps a live hold or a blocking booking.
        """

    @abc.abstractmethod
    async def insert_booking(self, booking: Booking, as_of: datetime) -> Booking:
        """Insert a booking directly. Raises StoreConflict on overlap."""

    @abc.abstractmethod
    async def promote_hold(self, hold_id: uuid.UUID, booking: Booking, as_of: datetime) -> Booking:
        """Convert a live hold into ``booking`` in one transaction.

        Raises PromotionNotFound or PromotionExpired if the hold is gone or no
        longer live, StoreConflict if the booking overlaps; in both cases the
        hold is left as it was.
        """

    @abc.abstractmethod
    async def get_hold(self, hold_id: uuid.UUID) -> Hold | None: ...

    @abc.abstractmethod
    async def find_active_hold_for_owner(self, venue_id: str, owner_token: str, as_of: datetime) -> Hold | None: ...

    @abc.abstractmethod
    async def find_active_holds(self, venue_id: str, as_of: datetime) -> list[Hold]: ...

    @abc.abstractmethod
    async def find_bookings(self, venue_id: str, window: TimeRange) -> list[Booking]:
        """Blocking bookings with at least one range intersecting ``window``."""

    @abc.abstractmethod
    async def extend_hold(self, hold_id: uuid.UUID, expires_at: datetime, as_of: datetime) -> Hold | None:
        """Move the expiry of a live hold; None when the hold is not live."""

    @abc.abstractmethod
    async def release_hold(self, hold_id: uuid.UUID, as_of: datetime) -> Hold | None:
        """Release an active hold; terminal holds are returned unchanged."""

    @abc.abstractmethod
    async def sweep_expired_holds(self, as_of: datetime) -> int: ...

    @abc.abstractmethod
    async def get_booking(self, booking_id: uuid.UUID) -> Booking | None: ...

    @abc.abstractmethod
    async def find_booking_by_idempotency_key(self, key: str) -> Booking | None: ...

    @abc.abstractmethod
    async def transition_booking(
        self,
        booking_id: uuid.UUID,
        allowed_from: frozenset,
        to_status: BookingStatus,
        as_of: datetime,
        payment_status: str | None = None,
        confirmed_by: str | None = None,
        clear_deadline: bool = False,
        require_deadline_passed: bool = False,
    ) -> Booking: ...

    @abc.abstractmethod
    async def expire_stale_bookings(self, as_of: datetime) -> int: ...

    @abc.abstractmethod
    async def add_blackout(self, blackout: Blackout) -> Blackout: ...

    @abc.abstractmethod
    async def find_blackouts(self, venue_id: str, window: TimeRange) -> list[Blackout]: ...

    async def close(self) -> None:
        return None


def booking_event_payload(booking: Booking, as_of: datetime) -> dict:
    return {
        "booking_id": str(booking.id),
        "hold_id": str(booking.hold_id) if booking.hold_id else None,
        "venue_id": booking.venue_id,
        "customer_ref": booking.customer_ref,
        "status": booking.status.value,
        "payment_status": booking.payment_status,
        "ranges": [r.to_dict() for r in booking.ranges],
        "timestamp": as_of.isoformat(),
    }


class InMemoryBookingStore(BookingStore):
    """Process-local store; one lock makes each check-and-write atomic."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._holds: dict[uuid.UUID, Hold] = {}
        self._bookings: dict[uuid.UUID, Booking] = {}
        self._blackouts: dict[uuid.UUID, Blackout] = {}
        self.outbox: list[dict] = []

    def _expire_venue_holds(self, venue_id: str | None, as_of: datetime) -> int:
        count = 0
        for hold in self._holds.values():
            if venue_id is not None and hold.venue_id != venue_id:
                continue
            if hold.status == HoldStatus.ACTIVE and hold.expires_at <= as_of:
                hold.status = HoldStatus.EXPIRED
                count += 1
        return count

    def _occupied(self, venue_id: str, ignore_hold_ids=()) -> list[TimeRange]:
        occupied = []
        for hold in self._holds.values():
            if hold.venue_id == venue_id and hold.status == HoldStatus.ACTIVE and hold.id not in ignore_hold_ids:
                occupied.extend(hold.ranges)
        for booking in self._bookings.values():
            if booking.venue_id == venue_id and booking.is_blocking:
                occupied.extend(booking.ranges)
        return occupied

    @staticmethod
    def _collides(ranges, occupied) -> bool:
        return any(overlaps(candidate, taken) for candidate in ranges for taken in occupied)

    def _key_taken(self, key: str | None) -> bool:
        return key is not None and any(b.idempotency_key == key for b in self._bookings.values())

    async def insert_hold(self, hold: Hold, as_of: datetime) -> Hold:
        async with self._lock:
            self._expire_venue_holds(hold.venue_id, as_of)
            previous = [
                h for h in self._holds.values()
                if h.venue_id == hold.venue_id
                and h.owner_token == hold.owner_token
                and h.status == HoldStatus.ACTIVE
            ]
            if self._collides(hold.ranges, self._occupied(hold.venue_id, {h.id for h in previous})):
                raise StoreConflict(f"hold {hold.id} overlaps an active claim at venue {hold.venue_id}")
            for h in previous:
                h.status = HoldStatus.RELEASED
            stored = replace(hold)
            self._holds[stored.id] = stored
            return replace(stored)

    async def insert_booking(self, booking: Booking, as_of: datetime) -> Booking:
        async with self._lock:
            self._expire_venue_holds(booking.venue_id, as_of)
            if self._key_taken(booking.idempotency_key):
                raise StoreConflict(f"idempotency key {booking.idempotency_key!r} is already used")
            if self._collides(booking.ranges, self._occupied(booking.venue_id)):
                raise StoreConflict(f"booking {booking.id} overlaps an active claim at venue {booking.venue_id}")
            stored = replace(booking, updated_at=as_of)
            self._bookings[stored.id] = stored
            self.outbox.append({"event_type": f"booking_{stored.status.value}", "payload": booking_event_payload(stored, as_of)})
            return replace(stored)

    async def promote_hold(self, hold_id: uuid.UUID, booking: Booking, as_of: datetime) -> Booking:
        async with self._lock:
            hold = self._holds.get(hold_id)
            if hold is None:
                raise PromotionNotFound()
            if not hold.is_live(as_of):
                raise PromotionExpired()
            self._expire_venue_holds(hold.venue_id, as_of)
            if self._key_taken(booking.idempotency_key):
                raise StoreConflict(f"idempotency key {booking.idempotency_key!r} is already used")
            if self._collides(booking.ranges, self._occupied(booking.venue_id, {hold.id})):
                raise StoreConflict(f"booking for hold {hold_id} overlaps an active claim")
            stored = replace(booking, hold_id=hold.id, updated_at=as_of)
            self._bookings[stored.id] = stored
            hold.status = HoldStatus.PROMOTED
            self.outbox.append({"event_type": "hold_promoted", "payload": booking_event_payload(stored, as_of)})
            return replace(stored)

    async def get_hold(self, hold_id: uuid.UUID) -> Hold | None:
        async with self._lock:
            hold = self._holds.get(hold_id)
            return replace(hold) if hold else None

    async def find_active_hold_for_owner(self, venue_id: str, owner_token: str, as_of: datetime) -> Hold | None:
        async with self._lock:
            for hold in self._holds.values():
                if hold.venue_id == venue_id and hold.owner_token == owner_token and hold.is_live(as_of):
                    return replace(hold)
            return None

    async def find_active_holds(self, venue_id: str, as_of: datetime) -> list[Hold]:
        async with self._lock:
            holds = [replace(h) for h in self._holds.values() if h.venue_id == venue_id and h.is_live(as_of)]
            return sorted(holds, key=lambda h: h.ranges[0])

    async def find_bookings(self, venue_id: str, window: TimeRange) -> list[Booking]:
        async with self._lock:
            found = [
                replace(b) for b in self._bookings.values()
                if b.venue_id == venue_id
                and b.is_blocking
                and any(overlaps(r, window) for r in b.ranges)
            ]
            return sorted(found, key=lambda b: b.ranges[0])

    async def extend_hold(self, hold_id: uuid.UUID, expires_at: datetime, as_of: datetime) -> Hold | None:
        async with self._lock:
            hold = self._holds.get(hold_id)
            if hold is None or not hold.is_live(as_of):
                return None
            hold.expires_at = expires_at
            return replace(hold)

    async def release_hold(self, hold_id: uuid.UUID, as_of: datetime) -> Hold | None:
        async with self._lock:
            hold = self._holds.get(hold_id)
            if hold is None:
                return None
            if hold.status == HoldStatus.ACTIVE:
                hold.status = HoldStatus.EXPIRED if hold.expires_at <= as_of else HoldStatus.RELEASED
            return replace(hold)

    async def sweep_expired_holds(self, as_of: datetime) -> int:
        async with self._lock:
            return self._expire_venue_holds(None, as_of)

    async def get_booking(self, booking_id: uuid.UUID) -> Booking | None:
        async with self._lock:
            booking = self._bookings.get(booking_id)
            return replace(booking) if booking else None

    async def find_booking_by_idempotency_key(self, key: str) -> Booking | None:
        async with self._lock:
            for booking in self._bookings.values():
                if booking.idempotency_key == key:
                    return replace(booking)
            return None

    async def transition_booking(
        self,
        booking_id: uuid.UUID,
        allowed_from: frozenset,
        to_status: BookingStatus,
        as_of: datetime,
        payment_status: str | None = None,
        confirmed_by: str | None = None,
        clear_deadline: bool = False,
        require_deadline_passed: bool = False,
    ) -> Booking:
        async with self._lock:
            booking = self._bookings.get(booking_id)
            if booking is None:
                raise BookingNotFound()
            if booking.status not in allowed_from:
                raise InvalidTransition(
                    f"Booking {booking_id} is {booking.status.value}, cannot become {to_status.value}."
                )
            if require_deadline_passed and (booking.expires_at is None or booking.expires_at > as_of):
                raise InvalidTransition(f"Booking {booking_id} is still within its deadline.")
            booking.status = to_status
            booking.updated_at = as_of
            if payment_status is not None:
                booking.payment_status = payment_status
            if confirmed_by is not None:
                booking.confirmed_by = confirmed_by
            if clear_deadline:
                booking.expires_at = None
            self.outbox.append({"event_type": f"booking_{to_status.value}", "payload": booking_event_payload(booking, as_of)})
            return replace(booking)

    async def expire_stale_bookings(self, as_of: datetime) -> int:
        async with self._lock:
            count = 0
            for booking in self._bookings.values():
                if (
                    booking.status in (BookingStatus.TEMP_HOLD, BookingStatus.PENDING)
                    and booking.expires_at is not None
                    and booking.expires_at <= as_of
                ):
                    booking.status = BookingStatus.EXPIRED
                    booking.updated_at = as_of
                    self.outbox.append({"event_type": "booking_expired", "payload": booking_event_payload(booking, as_of)})
                    count += 1
            return count

    async def add_blackout(self, blackout: Blackout) -> Blackout:
        async with self._lock:
            self._blackouts[blackout.id] = replace(blackout)
            return replace(blackout)

    async def find_blackouts(self, venue_id: str, window: TimeRange) -> list[Blackout]:
        async with self._lock:
            found = [
                replace(b) for b in self._blackouts.values()
                if b.venue_id == venue_id and overlaps(b.range, window)
            ]
            return sorted(found, key=lambda b: b.range)
