from datetime import date, datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, Field, model_validator

from venue_booking.bookings.domain import AvailabilityResult, Blackout, Booking, Hold
from venue_booking.bookings.state_machine import BookingEvent
from venue_booking.bookings.timerange import TimeRange, VenueSession, normalize
from venue_booking.config import settings


class RangeSchema(BaseModel):
    start: AwareDatetime
    end: AwareDatetime

    @model_validator(mode="after")
    def end_after_start(self):
        if self.end <= self.start:
            raise ValueError("end must be strictly after start.")
        return self

    @classmethod
    def from_range(cls, r: TimeRange) -> "RangeSchema":
        return cls(start=r.start, end=r.end)


class SelectionSchema(BaseModel):
    """Either whole days (optionally one session of each) or explicit ranges."""

    venue_id: str = Field(min_length=1)
    dates: Optional[list[date]] = None
    ranges: Optional[list[RangeSchema]] = None
    session: Optional[VenueSession] = None

    @model_validator(mode="after")
    def dates_or_ranges(self):
        if bool(self.dates) == bool(self.ranges):
            raise ValueError("Provide either 'dates' or 'ranges', not both and not neither.")
        if self.session is not None and not self.dates:
            raise ValueError("'session' only applies to whole-day 'dates'.")
        return self

    def to_ranges(self, tz: str) -> tuple[TimeRange, ...]:
        if self.dates:
            return normalize(self.dates, session=self.session, tz=tz)
        return normalize((r.start, r.end) for r in self.ranges)


# Схема для создания нового резерва (Hold)
class HoldCreateSchema(SelectionSchema):
    owner_token: str = Field(min_length=1)
    ttl_minutes: Optional[int] = Field(default=None, gt=0, le=settings.hold_max_ttl_minutes)


class HoldRefreshSchema(BaseModel):
    owner_token: str = Field(min_length=1)
    ttl_minutes: Optional[int] = Field(default=None, gt=0, le=settings.hold_max_ttl_minutes)


class AvailabilityRequestSchema(SelectionSchema):
    exclude_hold_id: Optional[UUID] = None


class PromoteHoldSchema(BaseModel):
    customer_ref: str = Field(min_length=1)
    payment_status: str = "pending"
    initial_status: Literal["temp_hold", "pending"] = "temp_hold"
    owner_token: Optional[str] = None
    # Replaying the same key returns the booking created the first time
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=255)


class BookingEventSchema(BaseModel):
    event: BookingEvent
    confirmed_by: Optional[str] = None


class BlackoutCreateSchema(BaseModel):
    start: AwareDatetime
    end: AwareDatetime
    reason: str = ""
    is_maintenance: bool = False


# Схемы ответа для клиента
class HoldResponseSchema(BaseModel):
    hold_id: UUID
    venue_id: str
    status: str
    expires_at: datetime
    ranges: list[RangeSchema]

    @classmethod
    def from_hold(cls, hold: Hold) -> "HoldResponseSchema":
        return cls(
            hold_id=hold.id,
            venue_id=hold.venue_id,
            status=hold.status.value,
            expires_at=hold.expires_at,
            ranges=[RangeSchema.from_range(r) for r in hold.ranges],
        )


class HoldRefreshResponseSchema(BaseModel):
    hold_id: UUID
    expires_at: datetime


class ConflictSchema(BaseModel):
    source: Literal["hold", "booking", "blackout"]
    source_id: UUID
    range: RangeSchema
    requested: RangeSchema


class AvailabilityResponseSchema(BaseModel):
    available: bool
    conflicts: list[ConflictSchema]
    suggested_alternatives: list[RangeSchema]

    @classmethod
    def from_result(cls, result: AvailabilityResult) -> "AvailabilityResponseSchema":
        return cls(
            available=result.available,
            conflicts=[
                ConflictSchema(
                    source=c.source.value,
                    source_id=c.source_id,
                    range=RangeSchema.from_range(c.range),
                    requested=RangeSchema.from_range(c.requested),
                )
                for c in result.conflicts
            ],
            suggested_alternatives=[RangeSchema.from_range(r) for r in result.suggested_alternatives],
        )


class BookingResponseSchema(BaseModel):
    id: UUID
    hold_id: Optional[UUID]
    venue_id: str
    customer_ref: str
    status: str
    payment_status: str
    confirmed_by: Optional[str]
    expires_at: Optional[datetime]
    created_at: datetime
    ranges: list[RangeSchema]

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingResponseSchema":
        return cls(
            id=booking.id,
            hold_id=booking.hold_id,
            venue_id=booking.venue_id,
            customer_ref=booking.customer_ref,
            status=booking.status.value,
            payment_status=booking.payment_status,
            confirmed_by=booking.confirmed_by,
            expires_at=booking.expires_at,
            created_at=booking.created_at,
            ranges=[RangeSchema.from_range(r) for r in booking.ranges],
        )


class BlackoutResponseSchema(BaseModel):
    id: UUID
    venue_id: str
    range: RangeSchema
    reason: str
    is_maintenance: bool

    @classmethod
    def from_blackout(cls, blackout: Blackout) -> "BlackoutResponseSchema":
        return cls(
            id=blackout.id,
            venue_id=blackout.venue_id,
            range=RangeSchema.from_range(blackout.range),
            reason=blackout.reason,
            is_maintenance=blackout.is_maintenance,
        )
