"""In-memory repositories for events, holds, subscribers and sent notifications."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone, tzinfo

from eventcore.domain.models import (
    CandidateFilter,
    Channel,
    EventRecord,
    EventStatus,
    NotificationKey,
    PencilHold,
    Subscriber,
    SubscriberSet,
    User,
)

logger = logging.getLogger(__name__)


class InMemoryEventRepository:
    """Dict-backed store for EventRecord instances, keyed by id.

    Event windows are interpreted in ``tz`` when compared with the clock.
    """

    def __init__(self, tz: tzinfo = timezone.utc) -> None:
        self.tz = tz
        self._store: dict[str, EventRecord] = {}
        self._users: dict[str, User] = {}
        self._registrations: dict[str, set[str]] = {}

    def add(self, event: EventRecord) -> None:
        self._store[event.id] = event

    def add_user(self, user: User) -> None:
        self._users[user.id] = user

    def register(self, event_id: str, user_id: str) -> None:
        self._registrations.setdefault(event_id, set()).add(user_id)

    def list_all(self) -> list[EventRecord]:
        return list(self._store.values())

    async def get(self, event_id: str) -> EventRecord | None:
        return self._store.get(event_id)

    async def commit(self, event: EventRecord) -> EventRecord:
        self._store[event.id] = event
        return event

    async def find_candidates(self, filter: CandidateFilter) -> list[EventRecord]:
        found = [
            e
            for e in self._store.values()
            if e.status != EventStatus.CANCELLED
            and e.id != filter.exclude_id
            and filter.matches(e.category, e.location, e.window)
        ]
        return sorted(found, key=lambda e: e.window.starts_at(self.tz))

    async def find_upcoming(self, now: datetime, within_hours: int) -> list[EventRecord]:
        until = now + timedelta(hours=within_hours)
        found = [
            e
            for e in self._published()
            if now <= e.window.starts_at(self.tz) <= until
        ]
        return sorted(found, key=lambda e: e.window.starts_at(self.tz))

    async def find_with_deadline_within(self, now: datetime, hours: int) -> list[EventRecord]:
        until = now + timedelta(hours=hours)
        found = [
            e
            for e in self._published()
            if e.registration_deadline is not None
            and now <= e.registration_deadline <= until
        ]
        return sorted(found, key=lambda e: e.registration_deadline)

    async def find_unregistered_users(self, event_id: str) -> list[User]:
        registered = self._registrations.get(event_id, set())
        return [u for uid, u in self._users.items() if uid not in registered]

    async def purge_ended_before(self, cutoff: datetime) -> int:
        stale = [eid for eid, e in self._store.items() if e.window.ends_at(self.tz) < cutoff]
        for eid in stale:
            del self._store[eid]
            self._registrations.pop(eid, None)
        return len(stale)

    def _published(self) -> list[EventRecord]:
        return [e for e in self._store.values() if e.status == EventStatus.PUBLISHED]


class InMemoryHoldStore:
    """Holds keyed by id with a unique index on slot key.

    None of the mutating methods await, so each one runs as a single step
    on the event loop.
    """

    def __init__(self) -> None:
        self._store: dict[str, PencilHold] = {}
        self._by_slot: dict[str, str] = {}

    async def insert_if_absent(self, hold: PencilHold, now: datetime) -> PencilHold | None:
        existing_id = self._by_slot.get(hold.slot_key)
        if existing_id is not None:
            existing = self._store[existing_id]
            if not existing.is_expired(now):
                return existing
            self._remove(existing_id)
        self._store[hold.id] = hold
        self._by_slot[hold.slot_key] = hold.id
        return None

    async def get(self, hold_id: str) -> PencilHold | None:
        return self._store.get(hold_id)

    async def replace(self, hold: PencilHold) -> bool:
        if hold.id not in self._store:
            return False
        self._store[hold.id] = hold
        return True

    async def take(self, hold_id: str) -> PencilHold | None:
        return self._remove(hold_id)

    async def delete(self, hold_id: str) -> bool:
        return self._remove(hold_id) is not None

    async def find_active(self, filter: CandidateFilter, now: datetime) -> list[PencilHold]:
        found = [
            h
            for h in self._store.values()
            if not h.is_expired(now)
            and h.id != filter.exclude_id
            and filter.matches(h.slot.category, h.slot.location, h.window)
        ]
        return sorted(found, key=lambda h: (h.window.start_date, h.window.start_time))

    async def list_for_owner(self, owner_id: str) -> list[PencilHold]:
        return sorted(
            (h for h in self._store.values() if h.owner_id == owner_id),
            key=lambda h: h.created_at,
        )

    async def delete_expired(self, now: datetime) -> int:
        expired = [hid for hid, h in self._store.items() if h.is_expired(now)]
        for hid in expired:
            self._remove(hid)
        return len(expired)

    def _remove(self, hold_id: str) -> PencilHold | None:
        hold = self._store.pop(hold_id, None)
        if hold is not None and self._by_slot.get(hold.slot_key) == hold_id:
            del self._by_slot[hold.slot_key]
        return hold


class InMemorySubscriberDirectory:
    """Subscribers with optional per-event scoping.

    A subscriber added without ``event_ids`` receives reminders for every event.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, Subscriber] = {}
        self._scopes: dict[str, set[str] | None] = {}

    def add(self, subscriber: Subscriber, event_ids: list[str] | None = None) -> None:
        self._subscribers[subscriber.id] = subscriber
        self._scopes[subscriber.id] = set(event_ids) if event_ids is not None else None

    async def get_event_subscribers(self, event_id: str) -> SubscriberSet:
        result = SubscriberSet()
        for sub in self._subscribers.values():
            scope = self._scopes.get(sub.id)
            if not sub.active or (scope is not None and event_id not in scope):
                continue
            if sub.channel == Channel.PUSH:
                result.push.append(sub)
            else:
                result.email.append(sub)
        return result

    async def get_weekly_digest_subscribers(self) -> list[Subscriber]:
        return [
            s
            for s in self._subscribers.values()
            if s.active and s.weekly_digest and s.channel == Channel.EMAIL
        ]

    async def purge_cancelled_before(self, cutoff: datetime) -> int:
        stale = [
            sid
            for sid, s in self._subscribers.items()
            if not s.active and s.updated_at < cutoff
        ]
        for sid in stale:
            del self._subscribers[sid]
            self._scopes.pop(sid, None)
        return len(stale)


class InMemoryNotificationLog:
    """Records which (kind, event, channel, recipient) notifications went out."""

    def __init__(self) -> None:
        self._sent: dict[NotificationKey, datetime] = {}

    async def was_sent(self, key: NotificationKey) -> bool:
        return key in self._sent

    async def mark_sent(self, key: NotificationKey, at: datetime) -> None:
        self._sent.setdefault(key, at)

    async def purge_before(self, cutoff: datetime) -> int:
        stale = [k for k, at in self._sent.items() if at < cutoff]
        for k in stale:
            del self._sent[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self._sent)


class LoggingNotificationDispatch:
    """Dispatch that logs each notification instead of delivering it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    async def send_event_reminder(self, recipient: Subscriber, event: EventRecord) -> None:
        self._record("event_reminder", recipient.address, event.id)

    async def send_registration_deadline_reminder(self, recipient: User, event: EventRecord) -> None:
        self._record("deadline_reminder", recipient.email, event.id)

    async def send_weekly_digest(self, recipient: Subscriber, events: list[EventRecord]) -> None:
        self._record("weekly_digest", recipient.address, ",".join(e.id for e in events))

    def _record(self, kind: str, address: str, subject: str) -> None:
        self.sent.append((kind, address, subject))
        logger.info(f"{kind} -> {address} ({subject})")
