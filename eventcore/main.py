"""FastAPI application: the service surface over conflict checks, holds and jobs."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from datetime import datetime, timedelta
from typing import Any

from fastapi import FastAPI, HTTPException, Response

from eventcore.config import get_settings
from eventcore.domain.errors import (
    CandidateValidationError,
    HoldExpired,
    HoldNotFound,
    SlotAlreadyHeld,
)
from eventcore.domain.models import (
    CandidateEvent,
    ConflictReport,
    CreateHoldRequest,
    EventRecord,
    ExtendHoldRequest,
    JobReport,
    PencilHold,
    PromoteHoldRequest,
)
from eventcore.log import setup_logging
from eventcore.repos.memory import (
    InMemoryEventRepository,
    InMemoryHoldStore,
    InMemoryNotificationLog,
    InMemorySubscriberDirectory,
    LoggingNotificationDispatch,
)
from eventcore.services.clock import SystemClock
from eventcore.services.conflicts import ConflictDetectionEngine
from eventcore.services.holds import ReservationHoldManager
from eventcore.services.jobs import NotificationJobs
from eventcore.services.scheduler import ScheduledJobRunner
from eventcore.services.venues import VenueDirectory

# ── Singletons (created at import time for simplicity) ────────────────
settings = get_settings()
clock = SystemClock()
event_repo = InMemoryEventRepository(tz=settings.tz)
hold_store = InMemoryHoldStore()
subscriber_directory = InMemorySubscriberDirectory()
notification_log = InMemoryNotificationLog()
dispatch = LoggingNotificationDispatch()

hold_manager = ReservationHoldManager(hold_store, event_repo, clock, settings)
engine = ConflictDetectionEngine(
    event_repo, hold_manager, VenueDirectory(settings.venues), clock, settings
)
jobs = NotificationJobs(
    event_repo, subscriber_directory, dispatch, notification_log, hold_manager, clock, settings
)
runner = ScheduledJobRunner(
    jobs.descriptors(), clock, tick_seconds=settings.dispatcher_tick_seconds, tz=settings.tz
)


@contextlib.asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    setup_logging(settings.log_level, settings.log_json)
    dispatcher = asyncio.create_task(runner.run_forever()) if settings.scheduler_enabled else None
    try:
        yield
    finally:
        await runner.shutdown()
        if dispatcher is not None:
            dispatcher.cancel()
            await asyncio.gather(dispatcher, return_exceptions=True)


app = FastAPI(title="Event Conflict Service", lifespan=lifespan)


# ── Conflict checks ───────────────────────────────────────────────────


@app.post("/conflicts/check", response_model=ConflictReport)
async def check_conflicts(
    candidate: CandidateEvent,
    exclude_id: str | None = None,
    owner_id: str | None = None,
) -> ConflictReport:
    """Report collisions of a proposed event with events and pencil holds."""
    return await engine.check_conflicts(candidate, exclude_id=exclude_id, owner_id=owner_id)


# ── Pencil holds ──────────────────────────────────────────────────────


@app.post("/holds", response_model=PencilHold, status_code=201)
async def create_hold(body: CreateHoldRequest) -> PencilHold:
    ttl = timedelta(hours=body.ttl_hours) if body.ttl_hours is not None else None
    try:
        return await hold_manager.create_hold(body.slot, body.owner_id, ttl=ttl, notes=body.notes)
    except SlotAlreadyHeld as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except CandidateValidationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e


@app.get("/holds/{hold_id}", response_model=PencilHold)
async def get_hold(hold_id: str) -> PencilHold:
    try:
        return await hold_manager.get_hold(hold_id)
    except HoldNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@app.get("/owners/{owner_id}/holds", response_model=list[PencilHold])
async def list_owner_holds(owner_id: str) -> list[PencilHold]:
    return await hold_manager.list_holds_for_owner(owner_id)


@app.post("/holds/{hold_id}/extend", response_model=PencilHold)
async def extend_hold(hold_id: str, body: ExtendHoldRequest) -> PencilHold:
    try:
        return await hold_manager.extend_hold(hold_id, timedelta(hours=body.ttl_hours))
    except HoldNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except HoldExpired as e:
        raise HTTPException(status_code=410, detail=str(e)) from e


@app.delete("/holds/{hold_id}", status_code=204)
async def release_hold(hold_id: str) -> Response:
    await hold_manager.release_hold(hold_id)
    return Response(status_code=204)


@app.post("/holds/{hold_id}/promote", response_model=EventRecord, status_code=201)
async def promote_hold(hold_id: str, body: PromoteHoldRequest) -> EventRecord:
    """Commit a held slot as a published event."""
    try:
        return await hold_manager.promote_hold(
            hold_id,
            title=body.title,
            capacity=body.capacity,
            registration_deadline=_aware(body.registration_deadline),
        )
    except HoldNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except HoldExpired as e:
        raise HTTPException(status_code=410, detail=str(e)) from e


# ── Scheduled jobs ────────────────────────────────────────────────────


@app.get("/jobs")
async def list_jobs() -> list[dict[str, Any]]:
    return runner.status()


@app.post("/jobs/{name}/run", response_model=JobReport)
async def run_job(name: str, now: datetime | None = None) -> JobReport:
    """Run one job now, outside its cadence."""
    if name not in runner.job_names:
        raise HTTPException(status_code=404, detail=f"Unknown job: {name}")
    report = await runner.run_job(name, _aware(now))
    if report is None:
        raise HTTPException(status_code=409, detail=f"Job {name} is running or failed")
    return report


@app.post("/tick")
async def tick(now: datetime | None = None) -> dict:
    """Fire every job due at *now* and wait for the runs to finish.

    Pass *now* as a query param to control the simulated clock.
    Defaults to the system clock when omitted.
    """
    current_time = _aware(now) or clock.now()
    started = await runner.tick(current_time)
    await runner.wait_idle()
    return {"time": current_time.isoformat(), "jobs_started": started}


def _aware(now: datetime | None) -> datetime | None:
    if now is not None and now.tzinfo is None:
        return now.replace(tzinfo=settings.tz)
    return now
