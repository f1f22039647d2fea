import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Query, Response, status

from venue_booking.bookings.cleanup_worker import run_sweep
from venue_booking.bookings.dependencies import BookingServices, get_booking_services
from venue_booking.bookings.domain import Blackout, BookingDetails, BookingStatus
from venue_booking.bookings.schemas import (
    AvailabilityRequestSchema,
    AvailabilityResponseSchema,
    BlackoutCreateSchema,
    BlackoutResponseSchema,
    BookingEventSchema,
    BookingResponseSchema,
    HoldCreateSchema,
    HoldRefreshResponseSchema,
    HoldRefreshSchema,
    HoldResponseSchema,
    PromoteHoldSchema,
)
from venue_booking.bookings.timerange import TimeRange

router = APIRouter(tags=["Holds and Bookings"])


# Роут для создания резерва (Hold)
@router.post("/holds", status_code=status.HTTP_201_CREATED, response_model=HoldResponseSchema)
async def create_hold(
    data: HoldCreateSchema,
    services: BookingServices = Depends(get_booking_services),
):
    """
    Places a temporary hold on the selected dates. Replaces the owner's
    previous hold at the venue; 409 carries conflicts and alternatives.
    """
    hold = await services.holds.create_hold(
        data.venue_id,
        data.to_ranges(services.venue_timezone),
        data.owner_token,
        ttl_minutes=data.ttl_minutes,
    )
    return HoldResponseSchema.from_hold(hold)


@router.get("/holds/{hold_id}", response_model=HoldResponseSchema)
async def get_hold(hold_id: uuid.UUID, services: BookingServices = Depends(get_booking_services)):
    return HoldResponseSchema.from_hold(await services.holds.get_hold(hold_id))


@router.post("/holds/{hold_id}/refresh", response_model=HoldRefreshResponseSchema)
async def refresh_hold(
    hold_id: uuid.UUID,
    data: HoldRefreshSchema,
    services: BookingServices = Depends(get_booking_services),
):
    """Extends a live hold; 410 tells the client to reselect dates."""
    hold = await services.holds.refresh_hold(hold_id, data.owner_token, ttl_minutes=data.ttl_minutes)
    return HoldRefreshResponseSchema(hold_id=hold.id, expires_at=hold.expires_at)


@router.delete("/holds/{hold_id}", status_code=status.HTTP_204_NO_CONTENT)
async def release_hold(hold_id: uuid.UUID, services: BookingServices = Depends(get_booking_services)):
    await services.holds.release_hold(hold_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/holds/{hold_id}/promote", status_code=status.HTTP_201_CREATED, response_model=BookingResponseSchema)
async def promote_hold(
    hold_id: uuid.UUID,
    data: PromoteHoldSchema,
    services: BookingServices = Depends(get_booking_services),
):
    booking = await services.promotion.promote_hold(
        hold_id,
        BookingDetails(
            customer_ref=data.customer_ref,
            payment_status=data.payment_status,
            initial_status=BookingStatus(data.initial_status),
            owner_token=data.owner_token,
            idempotency_key=data.idempotency_key,
        ),
    )
    return BookingResponseSchema.from_booking(booking)


@router.post("/availability", response_model=AvailabilityResponseSchema)
async def check_availability(
    data: AvailabilityRequestSchema,
    services: BookingServices = Depends(get_booking_services),
):
    """Read-only check, no hold is placed."""
    result = await services.availability.check_availability(
        data.venue_id,
        data.to_ranges(services.venue_timezone),
        exclude_hold_id=data.exclude_hold_id,
    )
    return AvailabilityResponseSchema.from_result(result)


@router.get("/venues/{venue_id}/bookings", response_model=list[BookingResponseSchema])
async def list_venue_bookings(
    venue_id: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    services: BookingServices = Depends(get_booking_services),
):
    """Bookings occupying the window, for calendar rendering."""
    bookings = await services.store.find_bookings(venue_id, TimeRange(start, end))
    return [BookingResponseSchema.from_booking(b) for b in bookings]


@router.post(
    "/venues/{venue_id}/blackouts",
    status_code=status.HTTP_201_CREATED,
    response_model=BlackoutResponseSchema,
)
async def add_blackout(
    venue_id: str,
    data: BlackoutCreateSchema,
    services: BookingServices = Depends(get_booking_services),
):
    blackout = await services.store.add_blackout(
        Blackout(
            venue_id=venue_id,
            range=TimeRange(data.start, data.end),
            reason=data.reason,
            is_maintenance=data.is_maintenance,
        )
    )
    return BlackoutResponseSchema.from_blackout(blackout)


@router.post("/bookings/{booking_id}/events", response_model=BookingResponseSchema)
async def apply_booking_event(
    booking_id: uuid.UUID,
    data: BookingEventSchema,
    services: BookingServices = Depends(get_booking_services),
):
    """Payment and approval hooks move bookings through their statuses here."""
    booking = await services.state_machine.apply(booking_id, data.event, confirmed_by=data.confirmed_by)
    return BookingResponseSchema.from_booking(booking)


@router.post("/internal/expire")
async def expire_holds(services: BookingServices = Depends(get_booking_services)):
    """
    Технический эндпоинт для запуска очистки.
    Обычно её выполняет фоновый воркер, см. cleanup_worker.
    """
    expired_holds, expired_bookings = await run_sweep(services)
    return {"status": "success", "expired_holds": expired_holds, "expired_bookings": expired_bookings}
