import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Computed,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import TSTZRANGE, UUID, ExcludeConstraint
from sqlalchemy.orm import relationship

from venue_booking.database.engine import Base


class HoldRecord(Base):
    __tablename__ = "holds"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    venue_id = Column(String, nullable=False)
    # Session or anonymous identity of the customer selecting dates
    owner_token = Column(String, nullable=False)

    # Статус (active, expired, released, promoted)
    status = Column(String, default="active", nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    claims = relationship(
        "SlotClaim",
        back_populates="hold",
        lazy="selectin",
        order_by="SlotClaim.starts_at",
    )

    __table_args__ = (
        Index("idx_holds_status_expires", status, expires_at),
        # One live selection per customer and venue
        Index(
            "uq_holds_active_owner",
            venue_id,
            owner_token,
            unique=True,
            postgresql_where=text("status = 'active'"),
        ),
    )


class BookingRecord(Base):
    __tablename__ = "bookings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    hold_id = Column(UUID(as_uuid=True), ForeignKey("holds.id"), unique=True, nullable=True)
    venue_id = Column(String, nullable=False, index=True)
    customer_ref = Column(String, nullable=False, index=True)

    # Статус (temp_hold, pending, confirmed, cancelled, expired)
    status = Column(String, default="temp_hold", nullable=False)
    payment_status = Column(String, default="pending", nullable=False)
    confirmed_by = Column(String, nullable=True)
    # Client retry key; a replay returns the booking created first
    idempotency_key = Column(String(255), nullable=True, unique=True)

    # Deadline for payment or approval; cleared once confirmed
    expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    claims = relationship(
        "SlotClaim",
        back_populates="booking",
        lazy="selectin",
        order_by="SlotClaim.starts_at",
    )

    __table_args__ = (
        Index("idx_bookings_status_expires", status, expires_at),
    )


class SlotClaim(Base):
    """One time range occupied by a hold or a booking.

    The exclusion constraint rejects any active claim overlapping another
    active claim of the same venue.
    """

    __tablename__ = "slot_claims"

    id = Column(Integer, primary_key=True, autoincrement=True)
    venue_id = Column(String, nullable=False)
    hold_id = Column(UUID(as_uuid=True), ForeignKey("holds.id"), nullable=True, index=True)
    booking_id = Column(UUID(as_uuid=True), ForeignKey("bookings.id"), nullable=True, index=True)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=False)
    period = Column(TSTZRANGE, Computed("tstzrange(starts_at, ends_at, '[)')", persisted=True))
    active = Column(Boolean, default=True, nullable=False)

    hold = relationship("HoldRecord", back_populates="claims")
    booking = relationship("BookingRecord", back_populates="claims")

    __table_args__ = (
        CheckConstraint("starts_at < ends_at", name="slot_claims_start_before_end"),
        CheckConstraint(
            "(hold_id IS NULL) <> (booking_id IS NULL)",
            name="slot_claims_single_owner",
        ),
        ExcludeConstraint(
            ("venue_id", "="),
            ("period", "&&"),
            where=text("active"),
            using="gist",
            name="no_overlapping_active_claims",
        ),
    )


class BlackoutRecord(Base):
    __tablename__ = "availability_blackouts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    venue_id = Column(String, nullable=False, index=True)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=False)
    reason = Column(String, default="", nullable=False)
    is_maintenance = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("starts_at < ends_at", name="availability_blackouts_start_before_end"),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String, nullable=False)  # Например, "hold_promoted"
    payload = Column(JSON, nullable=False)
    status = Column(String, default="PENDING")   # PENDING, PROCESSED
    created_at = Column(DateTime(timezone=True), server_default=func.now())
