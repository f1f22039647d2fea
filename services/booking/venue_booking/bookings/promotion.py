import uuid
from datetime import datetime, timedelta
from typing import Callable

import structlog

from venue_booking.bookings.availability import AvailabilityEngine
from venue_booking.bookings.domain import Booking, BookingDetails, BookingStatus
from venue_booking.bookings.store import BookingStore
from venue_booking.exceptions import (
    PromotionConflict,
    PromotionExpired,
    PromotionNotFound,
    StoreConflict,
    ValidationError,
)

logger = structlog.get_logger(__name__)

PROMOTABLE_STATUSES = (BookingStatus.TEMP_HOLD, BookingStatus.PENDING)


class PromotionWorkflow:
    """Turns a live hold into a booking, all or nothing."""

    def __init__(
        self,
        store: BookingStore,
        availability: AvailabilityEngine,
        clock: Callable[[], datetime],
        payment_window_minutes: int = 30,
    ):
        self.store = store
        self.availability = availability
        self.clock = clock
        self.payment_window = timedelta(minutes=payment_window_minutes)

    async def promote_hold(self, hold_id: uuid.UUID, details: BookingDetails) -> Booking:
        if not details.customer_ref:
            raise ValidationError("Customer reference is required.")
        if details.initial_status not in PROMOTABLE_STATUSES:
            raise ValidationError(f"A new booking cannot start as {details.initial_status.value}.")

        log = logger.bind(hold_id=str(hold_id))
        now = self.clock()
        hold = await self.store.get_hold(hold_id)
        if hold is None or (details.owner_token is not None and hold.owner_token != details.owner_token):
            log.info("promotion_hold_not_found")
            raise PromotionNotFound()
        existing = await self._keyed_booking(details)
        if existing is not None:
            return self._replay(existing, hold.id, log)
        if not hold.is_live(now):
            log.info("promotion_hold_expired", status=hold.effective_status(now).value)
            raise PromotionExpired()

        # Re-validate against everyone but this hold; guards against clock skew and sweep lag.
        result = await self.availability.check_availability(hold.venue_id, hold.ranges, exclude_hold_id=hold.id)
        if not result.available:
            log.warning("promotion_rejected", reason="unavailable", conflicts=len(result.conflicts))
            raise PromotionConflict(conflicts=result.conflicts, suggested_alternatives=result.suggested_alternatives)

        booking = Booking(
            venue_id=hold.venue_id,
            ranges=hold.ranges,
            customer_ref=details.customer_ref,
            status=details.initial_status,
            payment_status=details.payment_status,
            hold_id=hold.id,
            created_at=now,
            updated_at=now,
            expires_at=now + self.payment_window,
            idempotency_key=details.idempotency_key,
        )
        try:
            booking = await self.store.promote_hold(hold.id, booking, now)
        except (StoreConflict, PromotionExpired) as exc:
            # A concurrent request with the same key may have written first.
            existing = await self._keyed_booking(details)
            if existing is not None:
                return self._replay(existing, hold.id, log)
            if isinstance(exc, PromotionExpired):
                log.info("promotion_hold_expired", status="changed_concurrently")
                raise
            log.warning("promotion_rejected", reason="store_conflict")
            raise PromotionConflict()

        log.info(
            "hold_promoted",
            booking_id=str(booking.id),
            venue_id=booking.venue_id,
            status=booking.status.value,
        )
        return booking

    async def _keyed_booking(self, details: BookingDetails) -> Booking | None:
        if not details.idempotency_key:
            return None
        return await self.store.find_booking_by_idempotency_key(details.idempotency_key)

    def _replay(self, existing: Booking, hold_id: uuid.UUID, log) -> Booking:
        if existing.hold_id != hold_id:
            log.info("promotion_key_reused", booking_id=str(existing.id))
            raise ValidationError("Idempotency key was already used for another hold.")
        log.info("promotion_replayed", booking_id=str(existing.id))
        return existing
