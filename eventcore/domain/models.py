"""Domain models for conflict detection, pencil holds and scheduled jobs."""

from __future__ import annotations

import re
import uuid
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import StrEnum
from typing import Any, Literal

from pydantic import AwareDatetime, BaseModel, Field, model_validator

MINUTES_PER_DAY = 24 * 60


class EventStatus(StrEnum):
    DRAFT = "draft"
    PUBLISHED = "published"
    CANCELLED = "cancelled"


class ConflictType(StrEnum):
    """Conflict classifications, declared highest priority first."""

    SAME_VENUE_TIME = "same-venue-time"
    SAME_VENUE_TIME_HOLD = "same-venue-time-hold"
    SAME_CATEGORY_TIME = "same-category-time"
    SAME_CATEGORY_TIME_HOLD = "same-category-time-hold"
    SAME_CITY_TIME = "same-city-time"
    SAME_CITY_TIME_HOLD = "same-city-time-hold"

    @property
    def priority(self) -> int:
        """Lower is more severe."""
        return list(ConflictType).index(self)

    @property
    def is_hold(self) -> bool:
        return self.value.endswith("-hold")

    @property
    def is_venue_level(self) -> bool:
        return self.value.startswith("same-venue-")

    def as_hold(self) -> ConflictType:
        return self if self.is_hold else ConflictType(f"{self.value}-hold")


class Channel(StrEnum):
    EMAIL = "email"
    PUSH = "push"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def normalize_key(value: str) -> str:
    return re.sub(r"\s+", " ", value.strip().lower())


# ---------------------------------------------------------------------------
# Time windows
# ---------------------------------------------------------------------------


class TimeWindow(BaseModel):
    """A calendar-day span where each day is occupied by ``[start_time, end_time)``.

    A multi-day window whose ``start_time`` is not before its ``end_time``
    occupies each of its days entirely.
    """

    start_date: date
    end_date: date
    start_time: time
    end_time: time

    @model_validator(mode="after")
    def _ordered(self) -> TimeWindow:
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        if self.start_date == self.end_date and self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time on a single-day window")
        return self

    @property
    def is_all_day(self) -> bool:
        return self.start_time >= self.end_time

    def days(self) -> list[date]:
        span = (self.end_date - self.start_date).days
        return [self.start_date + timedelta(days=i) for i in range(span + 1)]

    def daily_minutes(self) -> tuple[int, int]:
        """Return the occupied ``[start, end)`` minutes of each day."""
        if self.is_all_day:
            return 0, MINUTES_PER_DAY
        return _minutes(self.start_time), _minutes(self.end_time)

    def shifted(self, *, minutes: int = 0, days: int = 0) -> TimeWindow | None:
        """Return the window moved by ``minutes`` within the day and by ``days``.

        Returns ``None`` when the time shift would leave the day.
        """
        start, end = _minutes(self.start_time) + minutes, _minutes(self.end_time) + minutes
        if minutes and (start < 0 or end >= MINUTES_PER_DAY):
            return None
        return TimeWindow(
            start_date=self.start_date + timedelta(days=days),
            end_date=self.end_date + timedelta(days=days),
            start_time=_from_minutes(start),
            end_time=_from_minutes(end),
        )

    def starts_at(self, tz: tzinfo = timezone.utc) -> datetime:
        return datetime.combine(self.start_date, self.start_time, tzinfo=tz)

    def ends_at(self, tz: tzinfo = timezone.utc) -> datetime:
        return datetime.combine(self.end_date, self.end_time, tzinfo=tz)


def _minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def _from_minutes(value: int) -> time:
    return time(hour=value // 60, minute=value % 60)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class Coordinates(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class Location(BaseModel):
    city: str = Field(min_length=1)
    venue_name: str = Field(min_length=1)
    coordinates: Coordinates | None = None

    @property
    def city_key(self) -> str:
        return normalize_key(self.city)

    @property
    def venue_key(self) -> tuple[str, str]:
        return self.city_key, normalize_key(self.venue_name)


class CandidateEvent(BaseModel):
    """An event proposal as submitted for a conflict check."""

    id: str | None = None
    title: str | None = None
    category: str = Field(min_length=1)
    location: Location
    window: TimeWindow

    @property
    def category_key(self) -> str:
        return normalize_key(self.category)


class EventRecord(CandidateEvent):
    id: str = Field(default_factory=_new_id)
    title: str = ""
    status: EventStatus = EventStatus.DRAFT
    registration_deadline: AwareDatetime | None = None
    capacity: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)

    def display_name(self) -> str:
        return self.title or self.id


class CandidateFilter(BaseModel):
    """Query handed to the repositories when gathering occupants."""

    city: str
    category: str
    venue_name: str | None = None
    date_from: date
    date_to: date
    exclude_id: str | None = None

    def matches(self, category: str, location: Location, window: TimeWindow) -> bool:
        if window.end_date < self.date_from or window.start_date > self.date_to:
            return False
        same_city = location.city_key == normalize_key(self.city)
        same_category = normalize_key(category) == normalize_key(self.category)
        same_venue = self.venue_name is not None and normalize_key(
            location.venue_name
        ) == normalize_key(self.venue_name)
        return same_city or same_category or same_venue


# ---------------------------------------------------------------------------
# Pencil holds
# ---------------------------------------------------------------------------


class SlotDescriptor(BaseModel):
    category: str = Field(min_length=1)
    location: Location
    window: TimeWindow

    @property
    def category_key(self) -> str:
        return normalize_key(self.category)

    @property
    def slot_key(self) -> str:
        w = self.window
        return "|".join(
            [
                self.location.city_key,
                normalize_key(self.location.venue_name),
                normalize_key(self.category),
                w.start_date.isoformat(),
                w.end_date.isoformat(),
                f"{w.start_time:%H:%M}",
                f"{w.end_time:%H:%M}",
            ]
        )


class PencilHold(BaseModel):
    id: str = Field(default_factory=_new_id)
    slot: SlotDescriptor
    owner_id: str
    created_at: datetime
    expires_at: datetime
    notes: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _expires_after_creation(self) -> PencilHold:
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be after created_at")
        return self

    @property
    def slot_key(self) -> str:
        return self.slot.slot_key

    @property
    def window(self) -> TimeWindow:
        return self.slot.window

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


# ---------------------------------------------------------------------------
# Conflict reports
# ---------------------------------------------------------------------------


class Conflict(BaseModel):
    against_kind: Literal["event", "hold"]
    against_id: str
    against: EventRecord | PencilHold
    conflict_type: ConflictType
    message: str
    day: date


class Suggestions(BaseModel):
    alternative_times: list[TimeWindow] = Field(default_factory=list)
    alternative_dates: list[TimeWindow] = Field(default_factory=list)
    alternative_locations: list[Location] = Field(default_factory=list)
    nearby_venues: list[str] = Field(default_factory=list)


class ConflictReport(BaseModel):
    has_conflict: bool = False
    has_blocking_conflict: bool = False
    conflicts: list[Conflict] = Field(default_factory=list)
    conflict_type: ConflictType | None = None
    message: str = "No conflicts found"
    suggestions: Suggestions = Field(default_factory=Suggestions)
    degraded: bool = False


# ---------------------------------------------------------------------------
# Recipients and job bookkeeping
# ---------------------------------------------------------------------------


class User(BaseModel):
    id: str = Field(default_factory=_new_id)
    email: str
    name: str | None = None


class Subscriber(BaseModel):
    id: str = Field(default_factory=_new_id)
    channel: Channel = Channel.EMAIL
    user_id: str | None = None
    email: str | None = None
    endpoint: str | None = None
    weekly_digest: bool = False
    active: bool = True
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def address(self) -> str:
        return self.email or self.endpoint or self.user_id or self.id


class SubscriberSet(BaseModel):
    email: list[Subscriber] = Field(default_factory=list)
    push: list[Subscriber] = Field(default_factory=list)


class NotificationKey(BaseModel, frozen=True):
    kind: str
    event_id: str
    channel: Channel
    recipient_id: str


class JobReport(BaseModel):
    """Outcome counters of one job run."""

    job: str
    started_at: datetime
    finished_at: datetime | None = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    detail: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Request / Response DTOs
# ---------------------------------------------------------------------------


class CreateHoldRequest(BaseModel):
    slot: SlotDescriptor
    owner_id: str = Field(min_length=1)
    ttl_hours: float | None = Field(default=None, gt=0)
    notes: str | None = Field(default=None, max_length=500)


class ExtendHoldRequest(BaseModel):
    ttl_hours: float = Field(gt=0)


class PromoteHoldRequest(BaseModel):
    title: str = ""
    capacity: int = Field(default=0, ge=0)
    registration_deadline: datetime | None = None
