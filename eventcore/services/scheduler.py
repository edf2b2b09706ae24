"""
Table-driven periodic job dispatcher.

Every job is a ``JobDescriptor`` (name, cadence, handler). One dispatcher
fires due jobs as independent asyncio tasks:

- a job still running when its next trigger comes due is skipped, not queued
- an exception escaping a handler is logged and never stops other jobs or
  later runs of the same job
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Any

from dateutil.rrule import DAILY, HOURLY, WEEKLY, rrule, weekday

from eventcore.domain.models import JobReport
from eventcore.services.clock import TimeSource

logger = logging.getLogger(__name__)

JobHandler = Callable[[datetime], Awaitable[JobReport]]

_FREQ_SPAN = {HOURLY: timedelta(hours=1), DAILY: timedelta(days=1), WEEKLY: timedelta(weeks=1)}


@dataclass(frozen=True)
class Cadence:
    """A fixed wall-clock schedule, e.g. every 6 hours or Mondays at 09:00."""

    freq: int
    interval: int = 1
    byweekday: weekday | None = None
    byhour: int | None = None

    @property
    def period(self) -> timedelta:
        return _FREQ_SPAN[self.freq] * self.interval

    def next_after(self, moment: datetime) -> datetime:
        """Return the first fire time strictly after ``moment``."""
        # Anchored at midnight so "every 6h" fires at 00, 06, 12 and 18.
        anchor = moment.replace(hour=0, minute=0, second=0, microsecond=0)
        if self.freq == WEEKLY:
            anchor -= timedelta(days=anchor.weekday())
        rule = rrule(
            self.freq,
            dtstart=anchor,
            interval=self.interval,
            byweekday=self.byweekday,
            byhour=self.byhour,
            byminute=0,
            bysecond=0,
        )
        return rule.after(moment)


def hourly() -> Cadence:
    return Cadence(HOURLY)


def every_hours(hours: int) -> Cadence:
    return Cadence(HOURLY, interval=hours)


def daily(at_hour: int = 0) -> Cadence:
    return Cadence(DAILY, byhour=at_hour)


def weekly(on: weekday, at_hour: int = 0) -> Cadence:
    return Cadence(WEEKLY, byweekday=on, byhour=at_hour)


@dataclass
class JobDescriptor:
    name: str
    cadence: Cadence
    handler: JobHandler


@dataclass
class _JobState:
    descriptor: JobDescriptor
    next_run: datetime
    task: asyncio.Task | None = None
    last_report: JobReport | None = None
    last_error: str | None = None
    runs: int = 0
    skipped_triggers: int = 0
    history: list[JobReport] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


class ScheduledJobRunner:
    """Fires the jobs of a descriptor table on their cadences."""

    HISTORY_LIMIT = 20

    def __init__(
        self,
        jobs: list[JobDescriptor],
        clock: TimeSource,
        tick_seconds: float = 30.0,
        tz: tzinfo | None = None,
    ) -> None:
        names = [j.name for j in jobs]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate job names: {names}")
        self._tz = tz
        now = self._local(clock.now())
        self._jobs = {j.name: _JobState(j, next_run=j.cadence.next_after(now)) for j in jobs}
        self._clock = clock
        self._tick_seconds = tick_seconds
        self._shutdown_event = asyncio.Event()

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Fire every job that is due at ``now``; return the names started.

        A job whose trigger was missed several times fires once and is
        rescheduled after ``now``.
        """
        now = now or self._clock.now()
        started: list[str] = []
        for name, state in self._jobs.items():
            if now < state.next_run:
                continue
            state.next_run = state.descriptor.cadence.next_after(self._local(now))
            if self._start(state, now):
                started.append(name)
        return started

    async def run_job(self, name: str, now: datetime | None = None) -> JobReport | None:
        """Run one job immediately and wait for it.

        Returns ``None`` when the job is already running or its run failed.
        """
        state = self._jobs[name]
        now = now or self._clock.now()
        if not self._start(state, now):
            return None
        await asyncio.gather(state.task, return_exceptions=True)
        return state.last_report if state.last_error is None else None

    async def wait_idle(self) -> None:
        """Wait for every in-flight run to finish."""
        tasks = [s.task for s in self._jobs.values() if s.running]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def run_forever(self) -> None:
        # A previous shutdown leaves the event set; a restarted app must loop again.
        self._shutdown_event.clear()
        logger.info(f"Starting job dispatcher ({len(self._jobs)} jobs, tick {self._tick_seconds}s)")
        try:
            while not self._shutdown_event.is_set():
                try:
                    await self.tick()
                except Exception as e:
                    logger.error(f"Dispatcher tick failed: {e}", exc_info=True)
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._tick_seconds)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Job dispatcher cancelled")
            raise
        logger.info("Job dispatcher stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def shutdown(self) -> None:
        """Stop dispatching and cancel in-flight runs."""
        self.request_shutdown()
        tasks = [s.task for s in self._jobs.values() if s.running]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def status(self) -> list[dict[str, Any]]:
        return [
            {
                "name": name,
                "cadence_seconds": s.descriptor.cadence.period.total_seconds(),
                "next_run": s.next_run,
                "running": s.running,
                "runs": s.runs,
                "skipped_triggers": s.skipped_triggers,
                "last_report": s.last_report,
                "last_error": s.last_error,
            }
            for name, s in self._jobs.items()
        ]

    def history(self, name: str) -> list[JobReport]:
        return list(self._jobs[name].history)

    def _local(self, moment: datetime) -> datetime:
        return moment.astimezone(self._tz) if self._tz is not None else moment

    def _start(self, state: _JobState, now: datetime) -> bool:
        name = state.descriptor.name
        if state.running:
            state.skipped_triggers += 1
            logger.warning(f"Job {name} still running; skipping trigger at {now.isoformat()}")
            return False
        state.task = asyncio.create_task(self._run(state, now), name=f"job:{name}")
        return True

    async def _run(self, state: _JobState, now: datetime) -> None:
        name = state.descriptor.name
        state.runs += 1
        logger.info(f"Job {name} started")
        try:
            report = await state.descriptor.handler(now)
        except Exception as e:
            state.last_error = repr(e)
            logger.error(f"Job {name} failed: {e}", exc_info=True)
            return

        state.last_error = None
        state.last_report = report
        state.history.append(report)
        del state.history[: -self.HISTORY_LIMIT]
        logger.info(
            f"Job {name} completed: {report.succeeded} succeeded, "
            f"{report.failed} failed, {report.skipped} skipped"
        )
