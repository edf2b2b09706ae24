"""Reminder, digest and cleanup jobs run by the ScheduledJobRunner.

Every send is best effort: a failure for one recipient is logged and counted
and the batch carries on. Successful sends are recorded in the notification
log so later ticks inside the same eligibility window skip them. Sends for
one event fan out concurrently, at most ``send_concurrency`` at a time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta
from typing import TypeVar

from dateutil.rrule import MO, SU

from eventcore.config import Settings, get_settings
from eventcore.domain.errors import NotificationError
from eventcore.domain.models import Channel, JobReport, NotificationKey
from eventcore.repos.base import (
    EventRepository,
    NotificationDispatch,
    NotificationLog,
    SubscriberDirectory,
)
from eventcore.services.clock import TimeSource
from eventcore.services.holds import ReservationHoldManager
from eventcore.services.scheduler import (
    JobDescriptor,
    daily,
    every_hours,
    hourly,
    weekly,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

EVENT_REMINDER = "event_reminder"
DEADLINE_REMINDER = "deadline_reminder"
WEEKLY_DIGEST = "weekly_digest"


class NotificationJobs:
    """Handlers for the periodic jobs, wired with explicit collaborators."""

    def __init__(
        self,
        events: EventRepository,
        subscribers: SubscriberDirectory,
        dispatch: NotificationDispatch,
        notification_log: NotificationLog,
        holds: ReservationHoldManager,
        clock: TimeSource,
        settings: Settings | None = None,
    ) -> None:
        self.events = events
        self.subscribers = subscribers
        self.dispatch = dispatch
        self.notification_log = notification_log
        self.holds = holds
        self.clock = clock
        self.settings = settings or get_settings()

    def descriptors(self) -> list[JobDescriptor]:
        return [
            JobDescriptor("event-reminder", hourly(), self.event_reminders),
            JobDescriptor("deadline-reminder", every_hours(6), self.deadline_reminders),
            JobDescriptor("hold-cleanup", daily(at_hour=0), self.hold_cleanup),
            JobDescriptor("weekly-digest", weekly(MO, at_hour=9), self.weekly_digest),
            JobDescriptor("retention-cleanup", weekly(SU, at_hour=2), self.retention_cleanup),
        ]

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def event_reminders(self, now: datetime) -> JobReport:
        """Remind every subscriber of events starting within the reminder window."""
        report = JobReport(job="event-reminder", started_at=now)
        upcoming = await self._call(
            self.events.find_upcoming(now, self.settings.reminder_window_hours)
        )

        for event in upcoming:
            try:
                subscribers = await self._call(self.subscribers.get_event_subscribers(event.id))
            except Exception as e:
                report.failed += 1
                logger.error(f"event-reminder: subscriber lookup failed for event {event.id}: {e!r}")
                continue

            await self._fan_out(
                self._deliver(
                    report,
                    NotificationKey(
                        kind=EVENT_REMINDER, event_id=event.id, channel=sub.channel, recipient_id=sub.id
                    ),
                    sub.address,
                    lambda sub=sub, event=event: self.dispatch.send_event_reminder(sub, event),
                )
                for sub in [*subscribers.email, *subscribers.push]
            )

        report.processed = len(upcoming)
        return self._finish(report)

    async def deadline_reminders(self, now: datetime) -> JobReport:
        """Nudge users who have not registered for events whose deadline is close."""
        report = JobReport(job="deadline-reminder", started_at=now)
        closing = await self._call(
            self.events.find_with_deadline_within(now, self.settings.deadline_window_hours)
        )

        for event in closing:
            try:
                users = await self._call(self.events.find_unregistered_users(event.id))
            except Exception as e:
                report.failed += 1
                logger.error(f"deadline-reminder: user lookup failed for event {event.id}: {e!r}")
                continue

            await self._fan_out(
                self._deliver(
                    report,
                    NotificationKey(
                        kind=DEADLINE_REMINDER, event_id=event.id, channel=Channel.EMAIL, recipient_id=user.id
                    ),
                    user.email,
                    lambda user=user, event=event: self.dispatch.send_registration_deadline_reminder(
                        user, event
                    ),
                )
                for user in users
            )

        report.processed = len(closing)
        return self._finish(report)

    async def hold_cleanup(self, now: datetime) -> JobReport:
        report = JobReport(job="hold-cleanup", started_at=now)
        removed = await self._call(self.holds.sweep_expired(now))
        report.processed = report.succeeded = removed
        report.detail["removed"] = removed
        return self._finish(report)

    async def weekly_digest(self, now: datetime) -> JobReport:
        """Send one digest of the coming week's events per digest subscriber."""
        report = JobReport(job="weekly-digest", started_at=now)
        events = await self._call(
            self.events.find_upcoming(now, self.settings.digest_horizon_days * 24)
        )
        subscribers = await self._call(self.subscribers.get_weekly_digest_subscribers())
        year, week, _ = now.isocalendar()
        digest_id = f"{year}-W{week:02d}"

        await self._fan_out(
            self._deliver(
                report,
                NotificationKey(
                    kind=WEEKLY_DIGEST, event_id=digest_id, channel=sub.channel, recipient_id=sub.id
                ),
                sub.address,
                lambda sub=sub: self.dispatch.send_weekly_digest(sub, events),
            )
            for sub in subscribers
        )

        report.processed = len(subscribers)
        report.detail.update(digest=digest_id, events=len(events))
        return self._finish(report)

    async def retention_cleanup(self, now: datetime) -> JobReport:
        """Purge records older than the retention period.

        Each purge runs on its own so one failing store does not stop the rest.
        """
        report = JobReport(job="retention-cleanup", started_at=now)
        cutoff = now - timedelta(days=self.settings.retention_days)
        purges: dict[str, Callable[[], Awaitable[int]]] = {
            "events": lambda: self.events.purge_ended_before(cutoff),
            "subscriptions": lambda: self.subscribers.purge_cancelled_before(cutoff),
            "notifications": lambda: self.notification_log.purge_before(cutoff),
        }
        for name, purge in purges.items():
            try:
                removed = await self._call(purge())
            except Exception as e:
                report.failed += 1
                logger.error(f"retention-cleanup: purging {name} failed: {e!r}")
                continue
            report.succeeded += 1
            report.processed += removed
            report.detail[name] = removed
        return self._finish(report)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _call(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, self.settings.call_timeout_seconds)

    async def _fan_out(self, deliveries: Iterable[Awaitable[None]]) -> None:
        """Run per-recipient deliveries concurrently, at most ``send_concurrency`` at once."""
        limit = asyncio.Semaphore(self.settings.send_concurrency)

        async def bounded(delivery: Awaitable[None]) -> None:
            async with limit:
                await delivery

        await asyncio.gather(*(bounded(d) for d in deliveries))

    async def _deliver(
        self,
        report: JobReport,
        key: NotificationKey,
        recipient: str,
        send: Callable[[], Awaitable[None]],
    ) -> None:
        try:
            if await self._call(self.notification_log.was_sent(key)):
                report.skipped += 1
                return
            await self._call(send())
        except Exception as e:
            report.failed += 1
            error = NotificationError(key.kind, recipient, repr(e))
            logger.error(f"{report.job}: {error} (event {key.event_id})")
            return

        report.succeeded += 1
        try:
            await self._call(self.notification_log.mark_sent(key, report.started_at))
        except Exception as e:
            logger.warning(
                f"{report.job}: could not record {key.kind} to {recipient} "
                f"for event {key.event_id}, it may be sent again: {e!r}"
            )

    def _finish(self, report: JobReport) -> JobReport:
        report.finished_at = self.clock.now()
        return report
