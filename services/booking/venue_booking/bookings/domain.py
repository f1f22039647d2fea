import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from venue_booking.bookings.timerange import TimeRange


class HoldStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    RELEASED = "released"
    PROMOTED = "promoted"


class BookingStatus(str, Enum):
    TEMP_HOLD = "temp_hold"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# Bookings in these statuses occupy their ranges.
BLOCKING_BOOKING_STATUSES = frozenset(
    {BookingStatus.TEMP_HOLD, BookingStatus.PENDING, BookingStatus.CONFIRMED}
)


@dataclass
class Hold:
    venue_id: str
    owner_token: str
    ranges: tuple[TimeRange, ...]
    created_at: datetime
    expires_at: datetime
    status: HoldStatus = HoldStatus.ACTIVE
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    def is_live(self, now: datetime) -> bool:
        return self.status == HoldStatus.ACTIVE and self.expires_at > now

    def effective_status(self, now: datetime) -> HoldStatus:
        """Status as seen at ``now``: an active hold past its expiry reads as expired."""
        if self.status == HoldStatus.ACTIVE and self.expires_at <= now:
            return HoldStatus.EXPIRED
        return self.status


@dataclass
class Booking:
    venue_id: str
    ranges: tuple[TimeRange, ...]
    customer_ref: str
    created_at: datetime
    status: BookingStatus = BookingStatus.TEMP_HOLD
    payment_status: str = "pending"
    hold_id: uuid.UUID | None = None
    expires_at: datetime | None = None
    confirmed_by: str | None = None
    updated_at: datetime | None = None
    idempotency_key: str | None = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    @property
    def is_blocking(self) -> bool:
        return self.status in BLOCKING_BOOKING_STATUSES


@dataclass
class Blackout:
    venue_id: str
    range: TimeRange
    reason: str = ""
    is_maintenance: bool = False
    id: uuid.UUID = field(default_factory=uuid.uuid4)


class ConflictSource(str, Enum):
    HOLD = "hold"
    BOOKING = "booking"
    BLACKOUT = "blackout"


@dataclass(frozen=True)
class Conflict:
    source: ConflictSource
    source_id: uuid.UUID
    range: TimeRange
    requested: TimeRange

    def to_dict(self) -> dict:
        return {
            "source": self.source.value,
            "source_id": str(self.source_id),
            "range": self.range.to_dict(),
            "requested": self.requested.to_dict(),
        }


@dataclass(frozen=True)
class AvailabilityResult:
    available: bool
    conflicts: tuple[Conflict, ...] = ()
    suggested_alternatives: tuple[TimeRange, ...] = ()


@dataclass(frozen=True)
class BookingDetails:
    """What the caller supplies when turning a hold into a booking."""

    customer_ref: str
    payment_status: str = "pending"
    initial_status: BookingStatus = BookingStatus.TEMP_HOLD
    owner_token: str | None = None
    idempotency_key: str | None = None
