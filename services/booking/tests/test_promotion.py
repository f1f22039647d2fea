import asyncio
import random
import uuid
from datetime import timedelta

import pytest

from conftest import VENUE, day
from venue_booking.bookings.availability import AvailabilityEngine
from venue_booking.bookings.domain import (
    BLOCKING_BOOKING_STATUSES,
    Booking,
    BookingDetails,
    BookingStatus,
    Hold,
    HoldStatus,
)
from venue_booking.bookings.promotion import PromotionWorkflow
from venue_booking.bookings.store import InMemoryBookingStore
from venue_booking.bookings.timerange import overlaps
from venue_booking.exceptions import (
    BookingServiceError,
    PromotionConflict,
    PromotionExpired,
    PromotionNotFound,
    StoreConflict,
    ValidationError,
)


class BlindStore(InMemoryBookingStore):
    """Hides one foreign booking from reads, so only the write-time check can catch it."""

    hidden_customer = "walk-in"

    async def find_bookings(self, venue_id, window):
        found = await super().find_bookings(venue_id, window)
        return [b for b in found if b.customer_ref != self.hidden_customer]


async def test_promote_live_hold(holds, promotion, store, clock):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25), day(2025, 12, 26)], "owner-a")
    clock.advance(minutes=10)

    booking = await promotion.promote_hold(hold.id, BookingDetails(customer_ref="customer-1", owner_token="owner-a"))

    assert booking.hold_id == hold.id
    assert booking.ranges == hold.ranges
    assert booking.status == BookingStatus.TEMP_HOLD
    assert booking.expires_at == clock() + timedelta(minutes=30)
    assert (await store.get_hold(hold.id)).status == HoldStatus.PROMOTED
    assert await store.get_booking(booking.id) == booking
    assert store.outbox[-1]["event_type"] == "hold_promoted"
    assert store.outbox[-1]["payload"]["booking_id"] == str(booking.id)


async def test_promoted_range_stays_blocked(holds, promotion, availability):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    await promotion.promote_hold(hold.id, BookingDetails(customer_ref="customer-1"))

    result = await availability.check_availability(VENUE, [day(2025, 12, 25)])

    assert not result.available
    assert result.conflicts[0].source.value == "booking"


async def test_promote_as_pending(holds, promotion):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")

    booking = await promotion.promote_hold(
        hold.id,
        BookingDetails(customer_ref="customer-1", payment_status="partial", initial_status=BookingStatus.PENDING),
    )

    assert booking.status == BookingStatus.PENDING
    assert booking.payment_status == "partial"


async def test_promote_after_ttl_fails(holds, promotion, store, clock):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    clock.advance(minutes=31)

    with pytest.raises(PromotionExpired):
        await promotion.promote_hold(hold.id, BookingDetails(customer_ref="customer-1"))

    assert await store.find_bookings(VENUE, day(2025, 12, 25)) == []


async def test_promote_twice_fails(holds, promotion):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    await promotion.promote_hold(hold.id, BookingDetails(customer_ref="customer-1"))

    with pytest.raises(PromotionExpired):
        await promotion.promote_hold(hold.id, BookingDetails(customer_ref="customer-1"))


async def test_promote_released_hold_fails(holds, promotion):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    await holds.release_hold(hold.id)

    with pytest.raises(PromotionExpired):
        await promotion.promote_hold(hold.id, BookingDetails(customer_ref="customer-1"))


async def test_promote_unknown_hold(promotion):
    with pytest.raises(PromotionNotFound):
        await promotion.promote_hold(uuid.uuid4(), BookingDetails(customer_ref="customer-1"))


async def test_promote_with_wrong_owner(holds, promotion, store):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")

    with pytest.raises(PromotionNotFound):
        await promotion.promote_hold(hold.id, BookingDetails(customer_ref="customer-1", owner_token="owner-b"))

    assert (await store.get_hold(hold.id)).status == HoldStatus.ACTIVE


@pytest.mark.parametrize(
    "details",
    [
        BookingDetails(customer_ref=""),
        BookingDetails(customer_ref="customer-1", initial_status=BookingStatus.CONFIRMED),
    ],
)
async def test_promote_rejects_invalid_details(holds, promotion, details):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")

    with pytest.raises(ValidationError):
        await promotion.promote_hold(hold.id, details)


async def test_store_conflict_leaves_hold_untouched(clock):
    store = BlindStore()
    availability = AvailabilityEngine(store, clock)
    promotion = PromotionWorkflow(store, availability, clock)
    hold = await store.insert_hold(
        Hold(
            venue_id=VENUE,
            owner_token="owner-a",
            ranges=(day(2025, 12, 25),),
            created_at=clock(),
            expires_at=clock() + timedelta(minutes=30),
        ),
        clock(),
    )
    # Written straight into the table, invisible to the advisory check.
    store._bookings[uuid.uuid4()] = Booking(
        venue_id=VENUE, ranges=(day(2025, 12, 25),), customer_ref=BlindStore.hidden_customer, created_at=clock()
    )
    outbox_before = list(store.outbox)

    with pytest.raises(PromotionConflict):
        await promotion.promote_hold(hold.id, BookingDetails(customer_ref="customer-1"))

    assert (await store.get_hold(hold.id)).status == HoldStatus.ACTIVE
    assert [b.customer_ref for b in store._bookings.values()] == [BlindStore.hidden_customer]
    assert store.outbox == outbox_before


async def test_random_concurrent_traffic_never_double_books(services, store, clock):
    rng = random.Random(20251225)
    days = [day(2025, 12, d) for d in range(20, 30)]

    async def customer(n):
        owner = f"owner-{n}"
        for _ in range(5):
            picked = rng.sample(days, rng.randint(1, 3))
            try:
                hold = await services.holds.create_hold(VENUE, picked, owner, ttl_minutes=rng.randint(1, 30))
            except BookingServiceError:
                continue
            await asyncio.sleep(0)
            if rng.random() < 0.5:
                try:
                    await services.promotion.promote_hold(hold.id, BookingDetails(customer_ref=owner))
                except BookingServiceError:
                    pass
            clock.advance(minutes=rng.randint(0, 10))

    await asyncio.gather(*(customer(n) for n in range(12)))

    now = clock()
    claimed = [r for h in await store.find_active_holds(VENUE, now) for r in h.ranges]
    claimed += [r for b in store._bookings.values() if b.status in BLOCKING_BOOKING_STATUSES for r in b.ranges]
    for i, a in enumerate(claimed):
        for b in claimed[i + 1:]:
            assert not overlaps(a, b)


async def test_store_refuses_promotion_into_taken_range(clock):
    store = InMemoryBookingStore()
    hold = await store.insert_hold(
        Hold(VENUE, "owner-a", (day(2025, 12, 25),), clock(), clock() + timedelta(minutes=30)), clock()
    )
    await store.insert_booking(Booking(VENUE, (day(2025, 12, 26),), "customer-9", clock()), clock())

    with pytest.raises(StoreConflict):
        await store.promote_hold(
            hold.id, Booking(VENUE, (day(2025, 12, 25), day(2025, 12, 26)), "customer-1", clock()), clock()
        )
    assert (await store.get_hold(hold.id)).status == HoldStatus.ACTIVE


async def test_replayed_key_returns_the_first_booking(holds, promotion, store, clock):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    details = BookingDetails(customer_ref="customer-1", owner_token="owner-a", idempotency_key="checkout-42")

    first = await promotion.promote_hold(hold.id, details)
    events_after_first = len(store.outbox)
    clock.advance(minutes=5)
    again = await promotion.promote_hold(hold.id, details)

    assert again == first
    assert len(store._bookings) == 1
    assert len(store.outbox) == events_after_first


async def test_concurrent_replays_share_one_booking(holds, promotion, store):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    details = BookingDetails(customer_ref="customer-1", idempotency_key="checkout-42")

    results = await asyncio.gather(*(promotion.promote_hold(hold.id, details) for _ in range(3)))

    assert len({b.id for b in results}) == 1
    assert len(store._bookings) == 1


async def test_key_reused_for_another_hold_is_rejected(holds, promotion):
    first = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    second = await holds.create_hold(VENUE, [day(2025, 12, 26)], "owner-b")
    await promotion.promote_hold(first.id, BookingDetails(customer_ref="customer-1", idempotency_key="checkout-42"))

    with pytest.raises(ValidationError):
        await promotion.promote_hold(second.id, BookingDetails(customer_ref="customer-2", idempotency_key="checkout-42"))


async def test_replay_does_not_leak_to_other_owner(holds, promotion):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    await promotion.promote_hold(hold.id, BookingDetails(customer_ref="customer-1", idempotency_key="checkout-42"))

    with pytest.raises(PromotionNotFound):
        await promotion.promote_hold(
            hold.id, BookingDetails(customer_ref="customer-1", owner_token="owner-b", idempotency_key="checkout-42")
        )


async def test_store_refuses_duplicate_key(clock):
    store = InMemoryBookingStore()
    await store.insert_booking(
        Booking(VENUE, (day(2025, 12, 25),), "customer-1", clock(), idempotency_key="checkout-42"), clock()
    )

    with pytest.raises(StoreConflict):
        await store.insert_booking(
            Booking(VENUE, (day(2025, 12, 26),), "customer-1", clock(), idempotency_key="checkout-42"), clock()
        )
