"""Service for creating, extending, releasing and promoting pencil holds.

Expiry is never timer driven: ``expires_at`` is authoritative. The conflict
engine ignores expired holds and the daily sweep deletes them.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

import pydantic

from eventcore.config import Settings, get_settings
from eventcore.domain.errors import (
    CandidateValidationError,
    HoldExpired,
    HoldNotFound,
    SlotAlreadyHeld,
)
from eventcore.domain.models import (
    CandidateFilter,
    EventRecord,
    EventStatus,
    PencilHold,
    SlotDescriptor,
)
from eventcore.repos.base import EventRepository, HoldStore
from eventcore.services.clock import TimeSource

logger = logging.getLogger(__name__)


class ReservationHoldManager:
    def __init__(
        self,
        store: HoldStore,
        events: EventRepository,
        clock: TimeSource,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.events = events
        self.clock = clock
        self.settings = settings or get_settings()

    async def create_hold(
        self,
        slot: SlotDescriptor | Mapping[str, Any],
        owner_id: str,
        ttl: timedelta | None = None,
        notes: str | None = None,
    ) -> PencilHold:
        """Hold ``slot`` for ``owner_id``.

        Raises ``SlotAlreadyHeld`` when an unexpired hold already owns the
        same slot key; the store's unique index decides between racing callers.
        """
        slot = _validate_slot(slot)
        now = self.clock.now()
        hold = PencilHold(
            slot=slot,
            owner_id=owner_id,
            created_at=now,
            expires_at=now + self._bounded_ttl(ttl),
            notes=notes,
        )
        blocking = await self.store.insert_if_absent(hold, now)
        if blocking is not None:
            logger.info(f"Hold refused for {hold.slot_key}: held by {blocking.id}")
            raise SlotAlreadyHeld(hold.slot_key, blocking.id)

        logger.info(f"Hold {hold.id} created for {hold.slot_key} until {hold.expires_at.isoformat()}")
        return hold

    async def get_hold(self, hold_id: str) -> PencilHold:
        hold = await self.store.get(hold_id)
        if hold is None:
            raise HoldNotFound(hold_id)
        return hold

    async def list_holds_for_owner(self, owner_id: str) -> list[PencilHold]:
        return await self.store.list_for_owner(owner_id)

    async def extend_hold(self, hold_id: str, ttl: timedelta) -> PencilHold:
        """Move the hold's expiry to ``now + ttl``."""
        now = self.clock.now()
        hold = await self._live_hold(hold_id, now)
        extended = hold.model_copy(update={"expires_at": now + self._bounded_ttl(ttl)})
        if not await self.store.replace(extended):
            raise HoldNotFound(hold_id)
        logger.info(f"Hold {hold_id} extended until {extended.expires_at.isoformat()}")
        return extended

    async def release_hold(self, hold_id: str) -> None:
        """Delete the hold. Releasing a missing or expired hold is not an error."""
        if await self.store.delete(hold_id):
            logger.info(f"Hold {hold_id} released")

    async def promote_hold(
        self,
        hold_id: str,
        title: str = "",
        capacity: int = 0,
        registration_deadline: datetime | None = None,
    ) -> EventRecord:
        """Commit the held slot as a published event and drop the hold.

        The hold is taken out of the store first, so a concurrent promotion
        finds nothing; if the commit fails the hold is put back. A naive
        ``registration_deadline`` is read in the configured timezone.
        """
        if registration_deadline is not None and registration_deadline.tzinfo is None:
            registration_deadline = registration_deadline.replace(tzinfo=self.settings.tz)
        now = self.clock.now()
        hold = await self.store.take(hold_id)
        if hold is None:
            raise HoldNotFound(hold_id)
        if hold.is_expired(now):
            raise HoldExpired(hold_id)

        event = EventRecord(
            title=title,
            category=hold.slot.category,
            location=hold.slot.location,
            window=hold.window,
            status=EventStatus.PUBLISHED,
            capacity=capacity,
            registration_deadline=registration_deadline,
            created_at=now,
        )
        try:
            committed = await self.events.commit(event)
        except Exception:
            await self.store.insert_if_absent(hold, now)
            raise

        logger.info(f"Hold {hold_id} promoted to event {committed.id}")
        return committed

    async def find_active_holds(self, filter: CandidateFilter) -> list[PencilHold]:
        return await self.store.find_active(filter, self.clock.now())

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete holds whose ``expires_at`` is before now. Returns the count."""
        removed = await self.store.delete_expired(now or self.clock.now())
        logger.info(f"Swept {removed} expired holds")
        return removed

    async def _live_hold(self, hold_id: str, now: datetime) -> PencilHold:
        hold = await self.store.get(hold_id)
        if hold is None:
            raise HoldNotFound(hold_id)
        if hold.is_expired(now):
            raise HoldExpired(hold_id)
        return hold

    def _bounded_ttl(self, ttl: timedelta | None) -> timedelta:
        if ttl is None:
            return self.settings.default_hold_ttl
        if ttl <= timedelta(0):
            raise CandidateValidationError("Hold ttl must be positive")
        return min(ttl, self.settings.max_hold_ttl)


def _validate_slot(slot: SlotDescriptor | Mapping[str, Any]) -> SlotDescriptor:
    if isinstance(slot, SlotDescriptor):
        return slot
    try:
        return SlotDescriptor.model_validate(slot)
    except pydantic.ValidationError as e:
        raise CandidateValidationError(str(e)) from e
