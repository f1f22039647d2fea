from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from fastapi import Request

from venue_booking.bookings.availability import AvailabilityEngine
from venue_booking.bookings.holds import HoldManager
from venue_booking.bookings.promotion import PromotionWorkflow
from venue_booking.bookings.state_machine import BookingStateMachine
from venue_booking.bookings.store import BookingStore, InMemoryBookingStore
from venue_booking.config import Settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BookingServices:
    store: BookingStore
    availability: AvailabilityEngine
    holds: HoldManager
    promotion: PromotionWorkflow
    state_machine: BookingStateMachine
    venue_timezone: str
    clock: Callable[[], datetime]


def build_services(store: BookingStore, settings: Settings, clock: Callable[[], datetime] = utc_now) -> BookingServices:
    availability = AvailabilityEngine(
        store,
        clock,
        horizon=settings.alternatives_horizon,
        step=settings.alternatives_step,
        max_alternatives=settings.alternatives_limit,
    )
    return BookingServices(
        store=store,
        availability=availability,
        holds=HoldManager(
            store,
            availability,
            clock,
            default_ttl_minutes=settings.hold_ttl_minutes,
            max_ttl_minutes=settings.hold_max_ttl_minutes,
        ),
        promotion=PromotionWorkflow(
            store, availability, clock, payment_window_minutes=settings.booking_payment_window_minutes
        ),
        state_machine=BookingStateMachine(store, clock),
        venue_timezone=settings.venue_timezone,
        clock=clock,
    )


def build_store(settings: Settings) -> BookingStore:
    if settings.store_backend == "memory":
        return InMemoryBookingStore()
    if settings.store_backend != "postgres":
        raise ValueError(f"Unknown STORE_BACKEND {settings.store_backend!r}; expected 'postgres' or 'memory'.")

    # Imported lazily so the in-memory backend does not need a database driver.
    from venue_booking.bookings.repository import SqlAlchemyBookingStore
    from venue_booking.database.engine import AsyncSessionLocal

    return SqlAlchemyBookingStore(AsyncSessionLocal)


def get_booking_services(request: Request) -> BookingServices:
    return request.app.state.services
