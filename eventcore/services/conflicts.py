"""Service for detecting scheduling conflicts between events and pencil holds."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

import pydantic

from eventcore.config import Settings, get_settings
from eventcore.domain.errors import CandidateValidationError, RepositoryError
from eventcore.domain.models import (
    CandidateEvent,
    CandidateFilter,
    Conflict,
    ConflictReport,
    ConflictType,
    EventRecord,
    Location,
    PencilHold,
    Suggestions,
    TimeWindow,
)
from eventcore.repos.base import EventRepository
from eventcore.services.clock import TimeSource
from eventcore.services.holds import ReservationHoldManager
from eventcore.services.intervals import first_overlap_day
from eventcore.services.venues import VenueDirectory, distance_km

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Occupants: committed events block hard, holds block soft
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Committed:
    event: EventRecord
    kind = "event"

    @property
    def id(self) -> str:
        return self.event.id

    @property
    def category(self) -> str:
        return self.event.category

    @property
    def category_key(self) -> str:
        return self.event.category_key

    @property
    def location(self) -> Location:
        return self.event.location

    @property
    def window(self) -> TimeWindow:
        return self.event.window

    @property
    def record(self) -> EventRecord:
        return self.event


@dataclass(frozen=True)
class Held:
    hold: PencilHold
    kind = "hold"

    @property
    def id(self) -> str:
        return self.hold.id

    @property
    def category(self) -> str:
        return self.hold.slot.category

    @property
    def category_key(self) -> str:
        return self.hold.slot.category_key

    @property
    def location(self) -> Location:
        return self.hold.slot.location

    @property
    def window(self) -> TimeWindow:
        return self.hold.window

    @property
    def record(self) -> PencilHold:
        return self.hold


Occupant = Committed | Held


def _hours(window: TimeWindow) -> str:
    if window.is_all_day:
        return "all day"
    return f"{window.start_time:%H:%M}-{window.end_time:%H:%M}"


def _describe(conflict_type: ConflictType, occupant: Occupant, day: date) -> str:
    venue = occupant.location.venue_name
    city = occupant.location.city
    when = f"{_hours(occupant.window)} on {day.isoformat()}"
    match conflict_type:
        case ConflictType.SAME_VENUE_TIME:
            return f"{venue} is booked {when}"
        case ConflictType.SAME_VENUE_TIME_HOLD:
            return f"{venue} is pencil-held {when} until {occupant.hold.expires_at:%Y-%m-%d %H:%M}"
        case ConflictType.SAME_CATEGORY_TIME:
            return (
                f"Another {occupant.category} event, {occupant.event.display_name()}, "
                f"runs {when} in {city}"
            )
        case ConflictType.SAME_CATEGORY_TIME_HOLD:
            return f"A {occupant.category} slot at {venue} is pencil-held {when} in {city}"
        case ConflictType.SAME_CITY_TIME:
            return (
                f"{occupant.event.display_name()} ({occupant.category}) "
                f"runs {when} at {venue}, {city}"
            )
        case _:
            return f"{venue} has a {occupant.category} pencil hold {when} in {city}"


def classify(candidate: CandidateEvent, occupant: Occupant) -> Conflict | None:
    """Return the conflict ``occupant`` causes for ``candidate``, if any.

    Only occupants in the candidate's city can conflict. Same venue beats
    same category, which beats same city; holds rank just below the
    equivalent committed event.
    """
    day = first_overlap_day(candidate.window, occupant.window)
    if day is None or occupant.location.city_key != candidate.location.city_key:
        return None

    if occupant.location.venue_key == candidate.location.venue_key:
        conflict_type = ConflictType.SAME_VENUE_TIME
    elif occupant.category_key == candidate.category_key:
        conflict_type = ConflictType.SAME_CATEGORY_TIME
    else:
        conflict_type = ConflictType.SAME_CITY_TIME
    if isinstance(occupant, Held):
        conflict_type = conflict_type.as_hold()

    return Conflict(
        against_kind=occupant.kind,
        against_id=occupant.id,
        against=occupant.record,
        conflict_type=conflict_type,
        message=_describe(conflict_type, occupant, day),
        day=day,
    )


class ConflictDetectionEngine:
    """Checks candidate events against committed events and active pencil holds."""

    def __init__(
        self,
        events: EventRepository,
        holds: ReservationHoldManager,
        venues: VenueDirectory,
        clock: TimeSource,
        settings: Settings | None = None,
    ) -> None:
        self.events = events
        self.holds = holds
        self.venues = venues
        self.clock = clock
        self.settings = settings or get_settings()

    async def check_conflicts(
        self,
        candidate: CandidateEvent | Mapping[str, Any],
        exclude_id: str | None = None,
        owner_id: str | None = None,
    ) -> ConflictReport:
        """Build a ConflictReport for ``candidate``.

        ``exclude_id`` lets an edit of an existing event ignore its own record;
        holds owned by ``owner_id`` are ignored so a holder can check their slot.
        A failed or timed-out lookup yields a degraded "no conflict" report
        rather than an error.
        """
        candidate = _validate(candidate)
        query = self._build_filter(candidate, exclude_id)

        try:
            occupants = await self._gather_occupants(query, owner_id)
        except RepositoryError as e:
            logger.warning(
                f"Conflict check degraded for {candidate.location.venue_name} "
                f"({candidate.location.city}): {e!r}"
            )
            return ConflictReport(
                degraded=True,
                message=(
                    "Conflict check unavailable: existing events could not be "
                    "queried, so no conflict warnings were produced"
                ),
            )

        conflicts = [c for o in occupants if (c := classify(candidate, o)) is not None]
        if not conflicts:
            return ConflictReport()

        start = candidate.window.starts_at()
        starts = {o.id: o.window.starts_at() for o in occupants}
        conflicts.sort(
            key=lambda c: (
                c.conflict_type.priority,
                abs(starts[c.against_id] - start),
                c.against_id,
            )
        )
        primary = conflicts[0]
        message = primary.message
        if len(conflicts) > 1:
            message += f" (+{len(conflicts) - 1} more)"

        return ConflictReport(
            has_conflict=True,
            has_blocking_conflict=any(not c.conflict_type.is_hold for c in conflicts),
            conflicts=conflicts,
            conflict_type=primary.conflict_type,
            message=message,
            suggestions=self._suggest(candidate, occupants),
        )

    def _build_filter(self, candidate: CandidateEvent, exclude_id: str | None) -> CandidateFilter:
        # Widened so the same occupant set can vet alternative dates.
        buffer = timedelta(days=self.settings.conflict_buffer_days)
        horizon = timedelta(days=self.settings.alternative_date_days)
        return CandidateFilter(
            city=candidate.location.city,
            category=candidate.category,
            venue_name=candidate.location.venue_name,
            date_from=candidate.window.start_date - buffer,
            date_to=candidate.window.end_date + horizon + buffer,
            exclude_id=exclude_id,
        )

    async def _gather_occupants(
        self, query: CandidateFilter, owner_id: str | None
    ) -> list[Occupant]:
        timeout = self.settings.call_timeout_seconds
        now: datetime = self.clock.now()
        try:
            events = await asyncio.wait_for(self.events.find_candidates(query), timeout)
            holds = await asyncio.wait_for(self.holds.find_active_holds(query), timeout)
        except RepositoryError:
            raise
        except asyncio.TimeoutError as e:
            raise RepositoryError(f"occupant lookup timed out after {timeout}s") from e
        except Exception as e:
            raise RepositoryError(f"occupant lookup failed: {e!r}") from e

        occupants: list[Occupant] = [Committed(e) for e in events if e.id != query.exclude_id]
        occupants.extend(
            Held(h)
            for h in holds
            if not h.is_expired(now) and h.owner_id != owner_id and h.id != query.exclude_id
        )
        return occupants

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    def _suggest(self, candidate: CandidateEvent, occupants: list[Occupant]) -> Suggestions:
        limit = self.settings.suggestion_limit
        window = candidate.window
        suggestions = Suggestions()

        if not window.is_all_day:
            for hours in self.settings.alternative_time_shifts_hours:
                for sign in (1, -1):
                    shifted = window.shifted(minutes=sign * hours * 60)
                    if shifted is not None and self._is_free(candidate, shifted, occupants):
                        suggestions.alternative_times.append(shifted)
            del suggestions.alternative_times[limit:]

        for offset in range(1, self.settings.alternative_date_days + 1):
            if len(suggestions.alternative_dates) >= limit:
                break
            shifted = window.shifted(days=offset)
            if self._is_free(candidate, shifted, occupants):
                suggestions.alternative_dates.append(shifted)

        free_venues = [
            venue
            for venue in self.venues.alternatives_to(candidate.location)
            if self._venue_fits(candidate, venue, occupants)
        ]
        suggestions.alternative_locations = free_venues[:limit]

        origin = candidate.location.coordinates
        if origin is not None:
            nearby = sorted(
                (
                    (distance_km(origin, v.coordinates), v.venue_name)
                    for v in free_venues
                    if v.coordinates is not None
                ),
            )
            suggestions.nearby_venues = [
                name for dist, name in nearby if dist <= self.settings.nearby_radius_km
            ][:limit]

        return suggestions

    @staticmethod
    def _is_free(candidate: CandidateEvent, window: TimeWindow, occupants: list[Occupant]) -> bool:
        shifted = candidate.model_copy(update={"window": window})
        return all(classify(shifted, o) is None for o in occupants)

    @staticmethod
    def _venue_fits(candidate: CandidateEvent, venue: Location, occupants: list[Occupant]) -> bool:
        """True when moving to ``venue`` adds no conflict of its own.

        Category and city conflicts stay the same at every venue of the city,
        so only a venue-level conflict at ``venue`` rules it out.
        """
        moved = candidate.model_copy(update={"location": venue})
        return all(
            (c := classify(moved, o)) is None or not c.conflict_type.is_venue_level
            for o in occupants
        )


def _validate(candidate: CandidateEvent | Mapping[str, Any]) -> CandidateEvent:
    if isinstance(candidate, CandidateEvent):
        return candidate
    try:
        return CandidateEvent.model_validate(candidate)
    except pydantic.ValidationError as e:
        raise CandidateValidationError(str(e)) from e
