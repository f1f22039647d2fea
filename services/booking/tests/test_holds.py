import asyncio
import uuid
from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import VENUE, day
from venue_booking.bookings.availability import AvailabilityEngine
from venue_booking.bookings.domain import HoldStatus
from venue_booking.bookings.holds import HoldManager
from venue_booking.bookings.store import InMemoryBookingStore
from venue_booking.exceptions import (
    HoldConflict,
    HoldExpired,
    HoldNotFound,
    StoreConflict,
    ValidationError,
)


class RacingStore(InMemoryBookingStore):
    """Rejects the first ``losses`` hold inserts as if another writer got there first."""

    def __init__(self, losses: int):
        super().__init__()
        self.losses = losses
        self.attempts = 0

    async def insert_hold(self, hold, as_of):
        self.attempts += 1
        if self.losses:
            self.losses -= 1
            raise StoreConflict("simulated concurrent claim")
        return await super().insert_hold(hold, as_of)


def manager_for(store, clock):
    return HoldManager(store, AvailabilityEngine(store, clock), clock, default_ttl_minutes=30)


async def test_create_hold(holds, clock):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")

    assert hold.status == HoldStatus.ACTIVE
    assert hold.ranges == (day(2025, 12, 25),)
    assert hold.expires_at == clock() + timedelta(minutes=30)


async def test_create_hold_with_custom_ttl(holds, clock):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a", ttl_minutes=5)

    assert hold.expires_at == clock() + timedelta(minutes=5)


@pytest.mark.parametrize(
    "venue_id, owner, ranges, ttl",
    [
        ("", "owner-a", [day(2025, 12, 25)], None),
        (VENUE, "", [day(2025, 12, 25)], None),
        (VENUE, "owner-a", [], None),
        (VENUE, "owner-a", [day(2025, 12, 25)], 0),
    ],
)
async def test_create_hold_rejects_invalid_input(holds, venue_id, owner, ranges, ttl):
    with pytest.raises(ValidationError):
        await holds.create_hold(venue_id, ranges, owner, ttl_minutes=ttl)


async def test_overlapping_hold_is_rejected_with_details(holds):
    first = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")

    with pytest.raises(HoldConflict) as exc_info:
        await holds.create_hold(VENUE, [day(2025, 12, 24), day(2025, 12, 25)], "owner-b")

    conflict = exc_info.value
    assert [c.source_id for c in conflict.conflicts] == [first.id]
    assert conflict.suggested_alternatives
    payload = conflict.to_payload()
    assert payload["code"] == "hold_conflict"
    assert payload["conflicts"][0]["source"] == "hold"


async def test_concurrent_holds_exactly_one_wins(holds, store, clock):
    results = await asyncio.gather(
        holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a"),
        holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-b"),
        return_exceptions=True,
    )

    created = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, HoldConflict)]
    assert len(created) == 1
    assert len(rejected) == 1
    assert len(await store.find_active_holds(VENUE, clock())) == 1


async def test_store_rejects_overlap_even_without_check(store, clock):
    manager = manager_for(store, clock)
    await manager.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    await manager._insert(VENUE, [day(2025, 12, 26)], "owner-b", timedelta(minutes=30))

    with pytest.raises(StoreConflict):
        await manager._insert(VENUE, [day(2025, 12, 25)], "owner-c", timedelta(minutes=30))
    owners = sorted(h.owner_token for h in await store.find_active_holds(VENUE, clock()))
    assert owners == ["owner-a", "owner-b"]


async def test_lost_race_is_retried_once(clock):
    store = RacingStore(losses=1)
    manager = manager_for(store, clock)

    hold = await manager.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")

    assert store.attempts == 2
    assert hold.status == HoldStatus.ACTIVE


async def test_second_lost_race_is_a_conflict(clock):
    store = RacingStore(losses=2)
    manager = manager_for(store, clock)

    with pytest.raises(HoldConflict):
        await manager.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    assert store.attempts == 2


async def test_same_owner_replaces_previous_hold(holds, store, clock):
    first = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    second = await holds.create_hold(VENUE, [day(2025, 12, 25), day(2025, 12, 26)], "owner-a")

    assert (await store.get_hold(first.id)).status == HoldStatus.RELEASED
    active = await store.find_active_holds(VENUE, clock())
    assert [h.id for h in active] == [second.id]


async def test_failed_replacement_keeps_previous_hold(holds, store):
    first = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    await holds.create_hold(VENUE, [day(2025, 12, 27)], "owner-b")

    with pytest.raises(HoldConflict):
        await holds.create_hold(VENUE, [day(2025, 12, 27)], "owner-a")

    assert (await store.get_hold(first.id)).status == HoldStatus.ACTIVE


async def test_store_conflict_rolls_back_replacement(holds, store, clock):
    first = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    await holds.create_hold(VENUE, [day(2025, 12, 27)], "owner-b")

    with pytest.raises(StoreConflict):
        await holds._insert(VENUE, [day(2025, 12, 27)], "owner-a", timedelta(minutes=30))

    assert (await store.get_hold(first.id)).status == HoldStatus.ACTIVE


async def test_hold_expires_exactly_at_ttl(holds, clock):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")

    clock.advance(minutes=29, seconds=59)
    assert (await holds.get_hold(hold.id)).status == HoldStatus.ACTIVE
    with pytest.raises(HoldConflict):
        await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-b")

    clock.advance(seconds=1)
    assert (await holds.get_hold(hold.id)).status == HoldStatus.EXPIRED
    replacement = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-b")
    assert replacement.status == HoldStatus.ACTIVE


async def test_get_unknown_hold(holds):
    with pytest.raises(HoldNotFound):
        await holds.get_hold(uuid.uuid4())


async def test_refresh_extends_live_hold(holds, clock):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    clock.advance(minutes=20)

    refreshed = await holds.refresh_hold(hold.id, "owner-a")

    assert refreshed.expires_at == clock() + timedelta(minutes=30)


async def test_refresh_never_shortens(holds, clock):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a", ttl_minutes=60)

    refreshed = await holds.refresh_hold(hold.id, "owner-a", ttl_minutes=10)

    assert refreshed.expires_at == hold.expires_at


async def test_refresh_expired_hold_fails(holds, clock):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    clock.advance(minutes=31)

    with pytest.raises(HoldExpired):
        await holds.refresh_hold(hold.id, "owner-a")


async def test_refresh_by_other_owner_is_not_found(holds):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")

    with pytest.raises(HoldNotFound):
        await holds.refresh_hold(hold.id, "owner-b")


async def test_refresh_released_hold_fails(holds):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    await holds.release_hold(hold.id)

    with pytest.raises(HoldExpired):
        await holds.refresh_hold(hold.id, "owner-a")


async def test_release_frees_dates_and_is_idempotent(holds, store):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")

    await holds.release_hold(hold.id)
    await holds.release_hold(hold.id)
    await holds.release_hold(uuid.uuid4())

    assert (await store.get_hold(hold.id)).status == HoldStatus.RELEASED
    await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-b")


async def test_release_of_stale_hold_marks_it_expired(holds, store, clock):
    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")
    clock.advance(minutes=45)

    await holds.release_hold(hold.id)

    assert (await store.get_hold(hold.id)).status == HoldStatus.EXPIRED


async def test_sweep_marks_stale_holds_expired(holds, store, clock):
    stale = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a", ttl_minutes=5)
    fresh = await holds.create_hold(VENUE, [day(2025, 12, 26)], "owner-b", ttl_minutes=60)
    clock.advance(minutes=10)

    assert await holds.sweep() == 1
    assert await holds.sweep() == 0

    assert (await store.get_hold(stale.id)).status == HoldStatus.EXPIRED
    assert (await store.get_hold(fresh.id)).status == HoldStatus.ACTIVE


class RivalStore(InMemoryBookingStore):
    """Loses the first insert without a trace; on the second, a rival hold lands first."""

    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def insert_hold(self, hold, as_of):
        self.attempts += 1
        if self.attempts == 2:
            await super().insert_hold(replace(hold, id=uuid.uuid4(), owner_token="rival"), as_of)
        if self.attempts <= 2:
            raise StoreConflict("simulated concurrent claim")
        return await super().insert_hold(hold, as_of)


async def test_second_lost_race_reports_the_winner(clock):
    store = RivalStore()
    manager = manager_for(store, clock)

    with pytest.raises(HoldConflict) as exc_info:
        await manager.create_hold(VENUE, [day(2025, 12, 25)], "owner-a")

    rival = (await store.find_active_holds(VENUE, clock()))[0]
    assert [c.source_id for c in exc_info.value.conflicts] == [rival.id]
    assert exc_info.value.suggested_alternatives[0] == day(2025, 12, 26)


async def test_ttl_above_ceiling_is_rejected(holds):
    with pytest.raises(ValidationError):
        await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a", ttl_minutes=10**10)
    with pytest.raises(ValidationError):
        await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a", ttl_minutes=24 * 60 + 1)

    hold = await holds.create_hold(VENUE, [day(2025, 12, 25)], "owner-a", ttl_minutes=24 * 60)
    with pytest.raises(ValidationError):
        await holds.refresh_hold(hold.id, "owner-a", ttl_minutes=10**7)
