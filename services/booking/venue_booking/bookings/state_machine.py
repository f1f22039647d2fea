"""Booking status transitions after promotion.

    temp_hold ──┬→ expired
                ├→ cancelled
                └→ pending ──┬→ confirmed ──→ cancelled
                             ├→ cancelled
                             └→ expired
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

import structlog

from venue_booking.bookings.domain import Booking, BookingStatus
from venue_booking.bookings.store import BookingStore
from venue_booking.exceptions import InvalidTransition

logger = structlog.get_logger(__name__)


class BookingEvent(str, Enum):
    SELECT_PAYMENT = "select_payment"
    RECEIVE_FULL_PAYMENT = "receive_full_payment"
    MANUAL_CONFIRM = "manual_confirm"
    CANCEL = "cancel"
    ADMIN_CANCEL = "admin_cancel"
    EXPIRE = "expire"


@dataclass(frozen=True)
class Transition:
    allowed_from: frozenset
    to_status: BookingStatus
    payment_status: str | None = None
    clear_deadline: bool = False
    requires_confirmed_by: bool = False
    requires_deadline_passed: bool = False


TRANSITIONS = {
    BookingEvent.SELECT_PAYMENT: Transition(
        frozenset({BookingStatus.TEMP_HOLD}), BookingStatus.PENDING
    ),
    BookingEvent.RECEIVE_FULL_PAYMENT: Transition(
        frozenset({BookingStatus.PENDING}), BookingStatus.CONFIRMED, payment_status="paid", clear_deadline=True
    ),
    BookingEvent.MANUAL_CONFIRM: Transition(
        frozenset({BookingStatus.PENDING}), BookingStatus.CONFIRMED, clear_deadline=True, requires_confirmed_by=True
    ),
    BookingEvent.CANCEL: Transition(
        frozenset({BookingStatus.TEMP_HOLD, BookingStatus.PENDING, BookingStatus.CONFIRMED}), BookingStatus.CANCELLED
    ),
    BookingEvent.ADMIN_CANCEL: Transition(
        frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED}), BookingStatus.CANCELLED
    ),
    BookingEvent.EXPIRE: Transition(
        frozenset({BookingStatus.TEMP_HOLD, BookingStatus.PENDING}), BookingStatus.EXPIRED, requires_deadline_passed=True
    ),
}


class BookingStateMachine:

    def __init__(self, store: BookingStore, clock: Callable[[], datetime]):
        self.store = store
        self.clock = clock

    async def apply(self, booking_id: uuid.UUID, event: BookingEvent, confirmed_by: str | None = None) -> Booking:
        transition = TRANSITIONS[BookingEvent(event)]
        if transition.requires_confirmed_by and not confirmed_by:
            raise InvalidTransition("Manual confirmation requires the approver (confirmed_by).")

        booking = await self.store.transition_booking(
            booking_id,
            transition.allowed_from,
            transition.to_status,
            self.clock(),
            payment_status=transition.payment_status,
            confirmed_by=confirmed_by,
            clear_deadline=transition.clear_deadline,
            require_deadline_passed=transition.requires_deadline_passed,
        )
        logger.info(
            "booking_transitioned",
            booking_id=str(booking_id),
            booking_event=BookingEvent(event).value,
            status=booking.status.value,
        )
        return booking

    async def expire_stale(self, now: datetime | None = None) -> int:
        return await self.store.expire_stale_bookings(now or self.clock())
