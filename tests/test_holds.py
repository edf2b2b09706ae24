"""Tests for pencil-hold creation, expiry, extension and promotion."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, time, timedelta, timezone

from zoneinfo import ZoneInfo

import pytest
from pydantic import ValidationError

from eventcore.config import Settings
from eventcore.domain.errors import (
    CandidateValidationError,
    HoldExpired,
    HoldNotFound,
    RepositoryError,
    SlotAlreadyHeld,
)
from eventcore.domain.models import (
    CandidateEvent,
    ConflictType,
    EventRecord,
    EventStatus,
    Location,
    SlotDescriptor,
    TimeWindow,
)
from eventcore.repos.memory import InMemoryEventRepository, InMemoryHoldStore
from eventcore.services.clock import FrozenClock
from eventcore.services.conflicts import ConflictDetectionEngine
from eventcore.services.holds import ReservationHoldManager
from eventcore.services.venues import VenueDirectory

_NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def _slot(venue: str = "Eden Park", start: str = "09:00", end: str = "17:00") -> SlotDescriptor:
    return SlotDescriptor(
        category="sports",
        location=Location(city="Auckland", venue_name=venue),
        window=TimeWindow(
            start_date=date(2024, 3, 15),
            end_date=date(2024, 3, 15),
            start_time=time.fromisoformat(start),
            end_time=time.fromisoformat(end),
        ),
    )


@pytest.fixture()
def env():
    class Env:
        pass

    e = Env()
    e.clock = FrozenClock(_NOW)
    e.settings = Settings()
    e.store = InMemoryHoldStore()
    e.events = InMemoryEventRepository()
    e.holds = ReservationHoldManager(e.store, e.events, e.clock, e.settings)
    e.engine = ConflictDetectionEngine(
        e.events, e.holds, VenueDirectory(e.settings.venues), e.clock, e.settings
    )
    return e


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_hold_uses_default_ttl(env):
    hold = await env.holds.create_hold(_slot(), owner_id="organiser-1", notes="Awaiting sign-off")

    assert hold.created_at == _NOW
    assert hold.expires_at == _NOW + timedelta(hours=48)
    assert hold.notes == "Awaiting sign-off"
    assert await env.holds.get_hold(hold.id) == hold


@pytest.mark.asyncio
async def test_second_hold_on_same_slot_is_refused(env):
    first = await env.holds.create_hold(_slot(), owner_id="organiser-1")

    with pytest.raises(SlotAlreadyHeld) as exc_info:
        await env.holds.create_hold(_slot(), owner_id="organiser-2")

    assert exc_info.value.hold_id == first.id


@pytest.mark.asyncio
async def test_slot_key_ignores_case_and_spacing(env):
    await env.holds.create_hold(_slot(), owner_id="organiser-1")
    shouty = _slot().model_copy(
        update={"location": Location(city="  AUCKLAND ", venue_name="eden   park"), "category": "Sports"}
    )

    with pytest.raises(SlotAlreadyHeld):
        await env.holds.create_hold(shouty, owner_id="organiser-2")


@pytest.mark.asyncio
async def test_different_times_at_same_venue_are_distinct_slots(env):
    await env.holds.create_hold(_slot(start="09:00", end="12:00"), owner_id="organiser-1")
    second = await env.holds.create_hold(_slot(start="13:00", end="17:00"), owner_id="organiser-2")

    assert second.owner_id == "organiser-2"


@pytest.mark.asyncio
async def test_concurrent_creates_yield_exactly_one_hold(env):
    """Racing callers on one slot: one wins, the rest get SlotAlreadyHeld."""
    results = await asyncio.gather(
        *(env.holds.create_hold(_slot(), owner_id=f"organiser-{i}") for i in range(10)),
        return_exceptions=True,
    )

    created = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, SlotAlreadyHeld)]
    assert len(created) == 1
    assert len(refused) == 9
    assert all(r.hold_id == created[0].id for r in refused)


@pytest.mark.asyncio
async def test_expired_hold_does_not_block_new_hold(env):
    stale = await env.holds.create_hold(_slot(), owner_id="organiser-1", ttl=timedelta(hours=1))
    env.clock.advance(timedelta(hours=1, seconds=1))

    fresh = await env.holds.create_hold(_slot(), owner_id="organiser-2")

    assert fresh.owner_id == "organiser-2"
    with pytest.raises(HoldNotFound):
        await env.holds.get_hold(stale.id)


@pytest.mark.asyncio
async def test_ttl_is_capped_at_maximum(env):
    hold = await env.holds.create_hold(_slot(), owner_id="organiser-1", ttl=timedelta(days=60))

    assert hold.expires_at == _NOW + env.settings.max_hold_ttl


@pytest.mark.asyncio
async def test_non_positive_ttl_rejected(env):
    with pytest.raises(CandidateValidationError):
        await env.holds.create_hold(_slot(), owner_id="organiser-1", ttl=timedelta(0))


@pytest.mark.asyncio
async def test_malformed_slot_rejected(env):
    with pytest.raises(CandidateValidationError):
        await env.holds.create_hold({"category": "sports"}, owner_id="organiser-1")


@pytest.mark.asyncio
async def test_list_holds_for_owner(env):
    a = await env.holds.create_hold(_slot("Eden Park"), owner_id="organiser-1")
    await env.holds.create_hold(_slot("Spark Arena"), owner_id="organiser-2")
    env.clock.advance(timedelta(minutes=5))
    b = await env.holds.create_hold(_slot("Aotea Centre"), owner_id="organiser-1")

    holds = await env.holds.list_holds_for_owner("organiser-1")

    assert [h.id for h in holds] == [a.id, b.id]


# ---------------------------------------------------------------------------
# Extension and release
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_extend_moves_expiry_from_now(env):
    hold = await env.holds.create_hold(_slot(), owner_id="organiser-1")
    env.clock.advance(timedelta(hours=10))

    extended = await env.holds.extend_hold(hold.id, timedelta(hours=24))

    assert extended.expires_at == _NOW + timedelta(hours=34)
    assert (await env.holds.get_hold(hold.id)).expires_at == extended.expires_at


@pytest.mark.asyncio
async def test_extend_expired_hold_fails(env):
    hold = await env.holds.create_hold(_slot(), owner_id="organiser-1", ttl=timedelta(hours=1))
    env.clock.advance(timedelta(hours=2))

    with pytest.raises(HoldExpired):
        await env.holds.extend_hold(hold.id, timedelta(hours=24))


@pytest.mark.asyncio
async def test_extend_missing_hold_fails(env):
    with pytest.raises(HoldNotFound):
        await env.holds.extend_hold("does-not-exist", timedelta(hours=24))


@pytest.mark.asyncio
async def test_release_is_idempotent(env):
    hold = await env.holds.create_hold(_slot(), owner_id="organiser-1")

    await env.holds.release_hold(hold.id)
    await env.holds.release_hold(hold.id)

    with pytest.raises(HoldNotFound):
        await env.holds.get_hold(hold.id)
    again = await env.holds.create_hold(_slot(), owner_id="organiser-2")
    assert again.owner_id == "organiser-2"


# ---------------------------------------------------------------------------
# Promotion
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_promote_commits_event_and_drops_hold(env):
    hold = await env.holds.create_hold(_slot(), owner_id="organiser-1")

    event = await env.holds.promote_hold(hold.id, title="Club final", capacity=500)

    assert event.status == EventStatus.PUBLISHED
    assert event.title == "Club final"
    assert event.window == hold.window
    assert await env.events.get(event.id) == event
    with pytest.raises(HoldNotFound):
        await env.holds.get_hold(hold.id)


@pytest.mark.asyncio
async def test_promoted_slot_then_conflicts_as_committed_event(env):
    slot = _slot()
    hold = await env.holds.create_hold(slot, owner_id="organiser-1")
    candidate = CandidateEvent(category="sports", location=slot.location, window=slot.window)

    before = await env.engine.check_conflicts(candidate)
    await env.holds.promote_hold(hold.id, title="Club final")
    after = await env.engine.check_conflicts(candidate)

    assert before.conflict_type == ConflictType.SAME_VENUE_TIME_HOLD
    assert after.conflict_type == ConflictType.SAME_VENUE_TIME
    assert after.has_blocking_conflict is True


@pytest.mark.asyncio
async def test_promote_reads_naive_deadline_in_configured_timezone():
    settings = Settings(timezone="Pacific/Auckland")
    clock = FrozenClock(_NOW)
    events = InMemoryEventRepository(tz=settings.tz)
    holds = ReservationHoldManager(InMemoryHoldStore(), events, clock, settings)
    hold = await holds.create_hold(_slot(), owner_id="organiser-1")

    event = await holds.promote_hold(hold.id, registration_deadline=datetime(2024, 3, 14, 10, 0))

    assert event.registration_deadline == datetime(2024, 3, 14, 10, 0, tzinfo=ZoneInfo("Pacific/Auckland"))
    closing = await events.find_with_deadline_within(datetime(2024, 3, 13, 12, 0, tzinfo=timezone.utc), 12)
    assert [e.id for e in closing] == [event.id]


def test_event_record_rejects_naive_deadline():
    with pytest.raises(ValidationError):
        EventRecord(
            category="sports",
            location=Location(city="Auckland", venue_name="Eden Park"),
            window=_slot().window,
            registration_deadline=datetime(2024, 3, 14, 10, 0),
        )


@pytest.mark.asyncio
async def test_promote_expired_hold_fails(env):
    hold = await env.holds.create_hold(_slot(), owner_id="organiser-1", ttl=timedelta(hours=1))
    env.clock.advance(timedelta(hours=2))

    with pytest.raises(HoldExpired):
        await env.holds.promote_hold(hold.id)
    assert env.events.list_all() == []


@pytest.mark.asyncio
async def test_failed_commit_restores_the_hold(env):
    hold = await env.holds.create_hold(_slot(), owner_id="organiser-1")

    async def broken_commit(event):
        raise RepositoryError("write failed")

    env.events.commit = broken_commit

    with pytest.raises(RepositoryError):
        await env.holds.promote_hold(hold.id)
    assert await env.holds.get_hold(hold.id) == hold
    with pytest.raises(SlotAlreadyHeld):
        await env.holds.create_hold(_slot(), owner_id="organiser-2")


@pytest.mark.asyncio
async def test_promote_twice_only_commits_once(env):
    hold = await env.holds.create_hold(_slot(), owner_id="organiser-1")

    results = await asyncio.gather(
        env.holds.promote_hold(hold.id),
        env.holds.promote_hold(hold.id),
        return_exceptions=True,
    )

    assert sum(isinstance(r, HoldNotFound) for r in results) == 1
    assert len(env.events.list_all()) == 1


# ---------------------------------------------------------------------------
# Sweeping
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sweep_removes_only_holds_expired_before_now(env):
    """expires_at < now is expired; expires_at == now is still live."""
    ttl = timedelta(hours=1)
    gone = await env.holds.create_hold(_slot("Eden Park"), owner_id="a", ttl=ttl - timedelta(seconds=1))
    edge = await env.holds.create_hold(_slot("Spark Arena"), owner_id="b", ttl=ttl)
    live = await env.holds.create_hold(_slot("Aotea Centre"), owner_id="c", ttl=ttl + timedelta(seconds=1))

    removed = await env.holds.sweep_expired(_NOW + ttl)

    assert removed == 1
    with pytest.raises(HoldNotFound):
        await env.holds.get_hold(gone.id)
    assert (await env.holds.get_hold(edge.id)).id == edge.id
    assert (await env.holds.get_hold(live.id)).id == live.id


@pytest.mark.asyncio
async def test_sweep_defaults_to_clock(env):
    await env.holds.create_hold(_slot(), owner_id="a", ttl=timedelta(hours=1))
    env.clock.advance(timedelta(hours=3))

    assert await env.holds.sweep_expired() == 1
    assert await env.holds.sweep_expired() == 0
