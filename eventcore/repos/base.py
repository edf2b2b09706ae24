"""Interfaces of the collaborators the core is wired with."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from eventcore.domain.models import (
    CandidateFilter,
    EventRecord,
    NotificationKey,
    PencilHold,
    Subscriber,
    SubscriberSet,
    User,
)


class EventRepository(Protocol):
    async def find_candidates(self, filter: CandidateFilter) -> list[EventRecord]:
        """Non-cancelled events sharing city, category or venue within the date range."""
        ...

    async def find_upcoming(self, now: datetime, within_hours: int) -> list[EventRecord]: ...

    async def find_with_deadline_within(self, now: datetime, hours: int) -> list[EventRecord]: ...

    async def find_unregistered_users(self, event_id: str) -> list[User]: ...

    async def get(self, event_id: str) -> EventRecord | None: ...

    async def commit(self, event: EventRecord) -> EventRecord: ...

    async def purge_ended_before(self, cutoff: datetime) -> int: ...


class HoldStore(Protocol):
    async def insert_if_absent(self, hold: PencilHold, now: datetime) -> PencilHold | None:
        """Insert ``hold`` unless an unexpired hold owns its slot key.

        Returns the blocking hold when the insert is refused, else ``None``.
        """
        ...

    async def get(self, hold_id: str) -> PencilHold | None: ...

    async def replace(self, hold: PencilHold) -> bool: ...

    async def take(self, hold_id: str) -> PencilHold | None: ...

    async def delete(self, hold_id: str) -> bool: ...

    async def find_active(self, filter: CandidateFilter, now: datetime) -> list[PencilHold]: ...

    async def list_for_owner(self, owner_id: str) -> list[PencilHold]: ...

    async def delete_expired(self, now: datetime) -> int: ...


class SubscriberDirectory(Protocol):
    async def get_event_subscribers(self, event_id: str) -> SubscriberSet: ...

    async def get_weekly_digest_subscribers(self) -> list[Subscriber]: ...

    async def purge_cancelled_before(self, cutoff: datetime) -> int: ...


class NotificationDispatch(Protocol):
    async def send_event_reminder(self, recipient: Subscriber, event: EventRecord) -> None: ...

    async def send_registration_deadline_reminder(self, recipient: User, event: EventRecord) -> None: ...

    async def send_weekly_digest(self, recipient: Subscriber, events: list[EventRecord]) -> None: ...


class NotificationLog(Protocol):
    async def was_sent(self, key: NotificationKey) -> bool: ...

    async def mark_sent(self, key: NotificationKey, at: datetime) -> None: ...

    async def purge_before(self, cutoff: datetime) -> int: ...
