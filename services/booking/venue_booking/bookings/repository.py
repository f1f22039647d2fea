import uuid
from contextlib import asynccontextmanager
from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from venue_booking.bookings.domain import (
    BLOCKING_BOOKING_STATUSES,
    Blackout,
    Booking,
    BookingStatus,
    Hold,
    HoldStatus,
)
from venue_booking.bookings.models import BlackoutRecord, BookingRecord, HoldRecord, OutboxEvent, SlotClaim
from venue_booking.bookings.store import BookingStore, booking_event_payload
from venue_booking.bookings.timerange import TimeRange
from venue_booking.database.engine import AsyncSessionLocal
from venue_booking.exceptions import (
    BookingNotFound,
    InvalidTransition,
    PromotionExpired,
    PromotionNotFound,
    StoreConflict,
    StoreUnavailable,
)

logger = structlog.get_logger(__name__)

EXCLUSION_VIOLATION = "23P01"
UNIQUE_VIOLATION = "23505"

BLOCKING_VALUES = [status.value for status in BLOCKING_BOOKING_STATUSES]
UNPAID_VALUES = [BookingStatus.TEMP_HOLD.value, BookingStatus.PENDING.value]


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _ranges(claims) -> tuple[TimeRange, ...]:
    return tuple(sorted(TimeRange(c.starts_at, c.ends_at) for c in claims))


def _to_hold(record: HoldRecord) -> Hold:
    return Hold(
        id=record.id,
        venue_id=record.venue_id,
        owner_token=record.owner_token,
        ranges=_ranges(record.claims),
        created_at=record.created_at,
        expires_at=record.expires_at,
        status=HoldStatus(record.status),
    )


def _to_booking(record: BookingRecord) -> Booking:
    return Booking(
        id=record.id,
        hold_id=record.hold_id,
        venue_id=record.venue_id,
        ranges=_ranges(record.claims),
        customer_ref=record.customer_ref,
        status=BookingStatus(record.status),
        payment_status=record.payment_status,
        confirmed_by=record.confirmed_by,
        expires_at=record.expires_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
        idempotency_key=record.idempotency_key,
    )


def _to_blackout(record: BlackoutRecord) -> Blackout:
    return Blackout(
        id=record.id,
        venue_id=record.venue_id,
        range=TimeRange(record.starts_at, record.ends_at),
        reason=record.reason,
        is_maintenance=record.is_maintenance,
    )


def _claims_for(venue_id: str, ranges) -> list[SlotClaim]:
    return [SlotClaim(venue_id=venue_id, starts_at=r.start, ends_at=r.end, active=True) for r in ranges]


def _booking_record(booking: Booking, as_of: datetime) -> BookingRecord:
    return BookingRecord(
        id=booking.id,
        hold_id=booking.hold_id,
        venue_id=booking.venue_id,
        customer_ref=booking.customer_ref,
        status=booking.status.value,
        payment_status=booking.payment_status,
        confirmed_by=booking.confirmed_by,
        expires_at=booking.expires_at,
        created_at=booking.created_at,
        updated_at=as_of,
        idempotency_key=booking.idempotency_key,
        claims=_claims_for(booking.venue_id, booking.ranges),
    )


class SqlAlchemyBookingStore(BookingStore):
    """PostgreSQL store; overlap safety comes from the ``no_overlapping_active_claims`` constraint."""

    def __init__(self, session_factory=AsyncSessionLocal, sweep_batch_size: int = 500):
        self._session_factory = session_factory
        self.sweep_batch_size = sweep_batch_size

    @asynccontextmanager
    async def _transaction(self):
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except IntegrityError as exc:
            if _sqlstate(exc) in (EXCLUSION_VIOLATION, UNIQUE_VIOLATION):
                raise StoreConflict(str(exc.orig)) from exc
            raise
        except (OperationalError, InterfaceError, PoolTimeoutError, OSError) as exc:
            logger.error("booking_store_unavailable", error=str(exc))
            raise StoreUnavailable() from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                logger.error("booking_store_connection_lost", error=str(exc))
                raise StoreUnavailable() from exc
            raise

    # --- helpers running inside an open transaction -------------------------

    async def _deactivate_claims(self, session, hold_ids=(), booking_ids=()) -> None:
        if hold_ids:
            await session.execute(
                update(SlotClaim)
                .where(SlotClaim.hold_id.in_(list(hold_ids)), SlotClaim.active.is_(True))
                .values(active=False)
                .execution_options(synchronize_session=False)
            )
        if booking_ids:
            await session.execute(
                update(SlotClaim)
                .where(SlotClaim.booking_id.in_(list(booking_ids)), SlotClaim.active.is_(True))
                .values(active=False)
                .execution_options(synchronize_session=False)
            )

    async def _expire_holds(self, session, as_of: datetime, venue_id: str | None = None) -> list[uuid.UUID]:
        stmt = update(HoldRecord).where(HoldRecord.status == HoldStatus.ACTIVE.value, HoldRecord.expires_at <= as_of)
        if venue_id is not None:
            stmt = stmt.where(HoldRecord.venue_id == venue_id)
        stmt = (
            stmt.values(status=HoldStatus.EXPIRED.value, updated_at=as_of)
            .returning(HoldRecord.id)
            .execution_options(synchronize_session=False)
        )
        expired_ids = list((await session.execute(stmt)).scalars().all())
        await self._deactivate_claims(session, hold_ids=expired_ids)
        return expired_ids

    async def _lock_hold(self, session, hold_id: uuid.UUID) -> HoldRecord | None:
        query = select(HoldRecord).where(HoldRecord.id == hold_id).with_for_update()
        return (await session.execute(query)).scalar_one_or_none()

    async def _lock_booking(self, session, booking_id: uuid.UUID) -> BookingRecord | None:
        query = select(BookingRecord).where(BookingRecord.id == booking_id).with_for_update()
        return (await session.execute(query)).scalar_one_or_none()

    # --- writes --------------------------------------------------------------

    async def insert_hold(self, hold: Hold, as_of: datetime) -> Hold:
        async with self._transaction() as session:
            # Lazy expiry: stale holds must not keep their claims active.
            await self._expire_holds(session, as_of, venue_id=hold.venue_id)

            previous = (
                update(HoldRecord)
                .where(
                    HoldRecord.venue_id == hold.venue_id,
                    HoldRecord.owner_token == hold.owner_token,
                    HoldRecord.status == HoldStatus.ACTIVE.value,
                )
                .values(status=HoldStatus.RELEASED.value, updated_at=as_of)
                .returning(HoldRecord.id)
                .execution_options(synchronize_session=False)
            )
            replaced_ids = list((await session.execute(previous)).scalars().all())
            await self._deactivate_claims(session, hold_ids=replaced_ids)

            session.add(
                HoldRecord(
                    id=hold.id,
                    venue_id=hold.venue_id,
                    owner_token=hold.owner_token,
                    status=hold.status.value,
                    expires_at=hold.expires_at,
                    created_at=hold.created_at,
                    updated_at=as_of,
                    claims=_claims_for(hold.venue_id, hold.ranges),
                )
            )
            await session.flush()

        if replaced_ids:
            logger.info("holds_replaced", venue_id=hold.venue_id, hold_id=str(hold.id), replaced=[str(i) for i in replaced_ids])
        return hold

    async def insert_booking(self, booking: Booking, as_of: datetime) -> Booking:
        async with self._transaction() as session:
            await self._expire_holds(session, as_of, venue_id=booking.venue_id)
            session.add(_booking_record(booking, as_of))
            session.add(
                OutboxEvent(
                    event_type=f"booking_{booking.status.value}",
                    payload=booking_event_payload(booking, as_of),
                )
            )
            await session.flush()
        return booking

    async def promote_hold(self, hold_id: uuid.UUID, booking: Booking, as_of: datetime) -> Booking:
        async with self._transaction() as session:
            record = await self._lock_hold(session, hold_id)
            if record is None:
                raise PromotionNotFound()
            if record.status != HoldStatus.ACTIVE.value or record.expires_at <= as_of:
                raise PromotionExpired()

            await self._expire_holds(session, as_of, venue_id=record.venue_id)
            # The hold hands its claims over: deactivate first so the booking's
            # claims are checked against everyone else only.
            await self._deactivate_claims(session, hold_ids=[record.id])
            record.status = HoldStatus.PROMOTED.value
            record.updated_at = as_of

            booking.hold_id = record.id
            session.add(_booking_record(booking, as_of))
            session.add(OutboxEvent(event_type="hold_promoted", payload=booking_event_payload(booking, as_of)))
            await session.flush()
        return booking

    async def extend_hold(self, hold_id: uuid.UUID, expires_at: datetime, as_of: datetime) -> Hold | None:
        async with self._transaction() as session:
            record = await self._lock_hold(session, hold_id)
            if record is None or record.status != HoldStatus.ACTIVE.value or record.expires_at <= as_of:
                return None
            record.expires_at = expires_at
            record.updated_at = as_of
            await session.flush()
            return _to_hold(record)

    async def release_hold(self, hold_id: uuid.UUID, as_of: datetime) -> Hold | None:
        async with self._transaction() as session:
            record = await self._lock_hold(session, hold_id)
            if record is None:
                return None
            if record.status == HoldStatus.ACTIVE.value:
                stale = record.expires_at <= as_of
                record.status = HoldStatus.EXPIRED.value if stale else HoldStatus.RELEASED.value
                record.updated_at = as_of
                await self._deactivate_claims(session, hold_ids=[record.id])
                await session.flush()
            return _to_hold(record)

    async def sweep_expired_holds(self, as_of: datetime) -> int:
        """Технический сценарий: безопасная очистка просроченных holds."""
        # SKIP LOCKED: rows another worker (or a promotion) holds are left for the next pass.
        async with self._transaction() as session:
            query = (
                select(HoldRecord.id)
                .where(HoldRecord.status == HoldStatus.ACTIVE.value, HoldRecord.expires_at <= as_of)
                .with_for_update(skip_locked=True)
                .limit(self.sweep_batch_size)
            )
            expired_ids = list((await session.execute(query)).scalars().all())
            if not expired_ids:
                return 0
            await session.execute(
                update(HoldRecord)
                .where(HoldRecord.id.in_(expired_ids))
                .values(status=HoldStatus.EXPIRED.value, updated_at=as_of)
                .execution_options(synchronize_session=False)
            )
            await self._deactivate_claims(session, hold_ids=expired_ids)
        return len(expired_ids)

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
        async with self._transaction() as session:
            record = await self._lock_booking(session, booking_id)
            if record is None:
                raise BookingNotFound()
            current = BookingStatus(record.status)
            if current not in allowed_from:
                raise InvalidTransition(
                    f"Booking {booking_id} is {current.value}, cannot become {to_status.value}."
                )
            if require_deadline_passed and (record.expires_at is None or record.expires_at > as_of):
                raise InvalidTransition(f"Booking {booking_id} is still within its deadline.")

            record.status = to_status.value
            record.updated_at = as_of
            if payment_status is not None:
                record.payment_status = payment_status
            if confirmed_by is not None:
                record.confirmed_by = confirmed_by
            if clear_deadline:
                record.expires_at = None
            if to_status not in BLOCKING_BOOKING_STATUSES:
                await self._deactivate_claims(session, booking_ids=[record.id])

            booking = _to_booking(record)
            session.add(OutboxEvent(event_type=f"booking_{to_status.value}", payload=booking_event_payload(booking, as_of)))
            await session.flush()
        return booking

    async def expire_stale_bookings(self, as_of: datetime) -> int:
        async with self._transaction() as session:
            query = (
                select(BookingRecord)
                .where(
                    BookingRecord.status.in_(UNPAID_VALUES),
                    BookingRecord.expires_at.is_not(None),
                    BookingRecord.expires_at <= as_of,
                )
                .with_for_update(skip_locked=True)
                .limit(self.sweep_batch_size)
            )
            records = list((await session.execute(query)).scalars().all())
            for record in records:
                record.status = BookingStatus.EXPIRED.value
                record.updated_at = as_of
                session.add(
                    OutboxEvent(event_type="booking_expired", payload=booking_event_payload(_to_booking(record), as_of))
                )
            await self._deactivate_claims(session, booking_ids=[r.id for r in records])
            await session.flush()
        return len(records)

    async def add_blackout(self, blackout: Blackout) -> Blackout:
        async with self._transaction() as session:
            session.add(
                BlackoutRecord(
                    id=blackout.id,
                    venue_id=blackout.venue_id,
                    starts_at=blackout.range.start,
                    ends_at=blackout.range.end,
                    reason=blackout.reason,
                    is_maintenance=blackout.is_maintenance,
                )
            )
            await session.flush()
        return blackout

    # --- reads ---------------------------------------------------------------

    async def get_hold(self, hold_id: uuid.UUID) -> Hold | None:
        async with self._transaction() as session:
            record = await session.get(HoldRecord, hold_id)
            return _to_hold(record) if record else None

    async def find_active_hold_for_owner(self, venue_id: str, owner_token: str, as_of: datetime) -> Hold | None:
        async with self._transaction() as session:
            query = select(HoldRecord).where(
                HoldRecord.venue_id == venue_id,
                HoldRecord.owner_token == owner_token,
                HoldRecord.status == HoldStatus.ACTIVE.value,
                HoldRecord.expires_at > as_of,
            )
            record = (await session.execute(query)).scalars().first()
            return _to_hold(record) if record else None

    async def find_active_holds(self, venue_id: str, as_of: datetime) -> list[Hold]:
        async with self._transaction() as session:
            query = select(HoldRecord).where(
                HoldRecord.venue_id == venue_id,
                HoldRecord.status == HoldStatus.ACTIVE.value,
                HoldRecord.expires_at > as_of,
            )
            records = (await session.execute(query)).scalars().all()
            return sorted((_to_hold(r) for r in records), key=lambda h: h.ranges[0])

    async def find_bookings(self, venue_id: str, window: TimeRange) -> list[Booking]:
        async with self._transaction() as session:
            intersecting = select(SlotClaim.booking_id).where(
                SlotClaim.venue_id == venue_id,
                SlotClaim.booking_id.is_not(None),
                SlotClaim.starts_at < window.end,
                SlotClaim.ends_at > window.start,
            )
            query = select(BookingRecord).where(
                BookingRecord.venue_id == venue_id,
                BookingRecord.status.in_(BLOCKING_VALUES),
                BookingRecord.id.in_(intersecting),
            )
            records = (await session.execute(query)).scalars().all()
            return sorted((_to_booking(r) for r in records), key=lambda b: b.ranges[0])

    async def get_booking(self, booking_id: uuid.UUID) -> Booking | None:
        async with self._transaction() as session:
            record = await session.get(BookingRecord, booking_id)
            return _to_booking(record) if record else None

    async def find_booking_by_idempotency_key(self, key: str) -> Booking | None:
        async with self._transaction() as session:
            query = select(BookingRecord).where(BookingRecord.idempotency_key == key)
            record = (await session.execute(query)).scalar_one_or_none()
            return _to_booking(record) if record else None

    async def find_blackouts(self, venue_id: str, window: TimeRange) -> list[Blackout]:
        async with self._transaction() as session:
            query = (
                select(BlackoutRecord)
                .where(
                    BlackoutRecord.venue_id == venue_id,
                    BlackoutRecord.starts_at < window.end,
                    BlackoutRecord.ends_at > window.start,
                )
                .order_by(BlackoutRecord.starts_at)
            )
            records = (await session.execute(query)).scalars().all()
            return [_to_blackout(r) for r in records]

    async def close(self) -> None:
        bind = getattr(self._session_factory, "kw", {}).get("bind")
        if bind is not None:
            await bind.dispose()
