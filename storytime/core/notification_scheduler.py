"""
StoryTime — Notification Scheduler.

Pre-event reminders: fire time = event start minus a lead (default 15 min).
The pending fires live in an owned Schedule (heap + index) rather than a
module-level singleton, and the scheduler takes an injected clock, so
tick(now) is deterministic in tests.

Persistence goes through the notification log: UNIQUE (event_id, theme)
is the idempotency key, and a DELIVERED entry is never re-armed.
"""

from __future__ import annotations

import heapq
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from storytime.core.retry import OperationClass, RetryPolicy, policy_for
from storytime.core.themes import fallback_message, format_time
from storytime.data.db import EventDB, IntegrationDB, NotificationDB, StorylineDB, utcnow
from storytime.data.models import (
    DeliveryOutcome,
    Event,
    EventStatus,
    NotificationLog,
    Theme,
)
from storytime.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

FireKey = tuple[int, Theme]


@dataclass(order=True)
class ScheduledFire:
    fire_at: datetime
    seq: int
    event_id: int = field(compare=False)
    theme: Theme = field(compare=False)
    user_id: int = field(compare=False)
    removed: bool = field(default=False, compare=False)

    @property
    def key(self) -> FireKey:
        return (self.event_id, self.theme)


class Schedule:
    """Time-ordered pending fires, one per (event, theme).

    Replaced or removed entries are flagged and skipped when popped.
    """

    def __init__(self) -> None:
        self._heap: list[ScheduledFire] = []
        self._index: dict[FireKey, ScheduledFire] = {}
        self._seq = itertools.count()

    def push(self, event_id: int, theme: Theme, user_id: int, fire_at: datetime) -> ScheduledFire:
        existing = self._index.get((event_id, theme))
        if existing is not None:
            existing.removed = True
        entry = ScheduledFire(fire_at, next(self._seq), event_id, theme, user_id)
        heapq.heappush(self._heap, entry)
        self._index[entry.key] = entry
        return entry

    def remove(self, event_id: int) -> int:
        """Drop every pending fire of an event. Returns how many were removed."""
        keys = [k for k in self._index if k[0] == event_id]
        for key in keys:
            self._index.pop(key).removed = True
        return len(keys)

    def discard(self, event_id: int, theme: Theme) -> None:
        entry = self._index.pop((event_id, theme), None)
        if entry is not None:
            entry.removed = True

    def get(self, event_id: int, theme: Theme) -> ScheduledFire | None:
        return self._index.get((event_id, theme))

    def pop_due(self, now: datetime) -> list[ScheduledFire]:
        """Remove and return entries with fire_at <= now, earliest first."""
        due: list[ScheduledFire] = []
        while self._heap and self._heap[0].fire_at <= now:
            entry = heapq.heappop(self._heap)
            if entry.removed:
                continue
            del self._index[entry.key]
            due.append(entry)
        return due

    def next_fire_at(self) -> datetime | None:
        while self._heap and self._heap[0].removed:
            heapq.heappop(self._heap)
        return self._heap[0].fire_at if self._heap else None

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, key: FireKey) -> bool:
        return key in self._index


class NotificationScheduler:
    def __init__(
        self,
        schedule: Schedule,
        events: EventDB,
        notifications: NotificationDB,
        storylines: StorylineDB,
        sink: NotificationPort,
        integrations: IntegrationDB | None = None,
        clock: Callable[[], datetime] = utcnow,
        lead: timedelta | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        from storytime.config import settings

        self._schedule = schedule
        self._events = events
        self._notifications = notifications
        self._storylines = storylines
        self._sink = sink
        self._integrations = integrations
        self._clock = clock
        self._lead = lead if lead is not None else timedelta(minutes=settings.NOTIFICATION_LEAD_MINUTES)
        self._policy = policy or policy_for(OperationClass.NOTIFICATION)
        self._default_tz = settings.TIMEZONE

    def fire_time(self, event: Event) -> datetime:
        return event.start_time - self._lead

    def load(self) -> int:
        """Rebuild the in-memory schedule from PENDING log entries."""
        count = 0
        for log in self._notifications.list_pending():
            self._schedule.push(log.event_id, log.theme, log.user_id, log.fire_at)
            count += 1
        logger.info(
            "Notification schedule loaded: %d pending fire(s), next at %s",
            count, self._schedule.next_fire_at(),
        )
        return count

    async def schedule(
        self, event: Event, theme: Theme, user_id: int,
    ) -> NotificationLog | None:
        """Insert or move the fire for (event, theme).

        A fire time already in the past delivers immediately, as long as the
        event itself has not started.
        """
        if event.status == EventStatus.CANCELLED:
            self.cancel(event.id)
            return None

        now = self._clock()
        if event.start_time <= now:
            logger.debug("Event #%d already started, not scheduling", event.id)
            return None

        fire_at = self.fire_time(event)
        existing = self._notifications.get(event.id, theme)
        if existing is not None and existing.outcome == DeliveryOutcome.DELIVERED:
            return existing
        if (
            existing is not None
            and existing.outcome == DeliveryOutcome.PENDING
            and existing.fire_at == fire_at
            and (event.id, theme) in self._schedule
        ):
            return existing

        log = self._notifications.arm(event.id, theme, user_id, fire_at)
        if fire_at <= now:
            self._schedule.discard(event.id, theme)
            logger.info("Event #%d is inside the lead window, notifying now", event.id)
            return await self._deliver(ScheduledFire(fire_at, -1, event.id, theme, user_id), now)

        self._schedule.push(event.id, theme, user_id, fire_at)
        logger.info(
            "Notification for event #%d (%s) scheduled at %s",
            event.id, theme.value, fire_at.isoformat(),
        )
        return log

    def cancel(self, event_id: int) -> int:
        """Remove pending fires of an event and mark their log entries CANCELLED."""
        self._schedule.remove(event_id)
        cancelled = self._notifications.cancel_for_event(event_id)
        if cancelled:
            logger.info("Cancelled %d pending notification(s) for event #%d", cancelled, event_id)
        return cancelled

    async def tick(self, now: datetime | None = None) -> list[NotificationLog]:
        """Deliver every due fire, earliest first. One failure never stops the rest."""
        now = now or self._clock()
        results: list[NotificationLog] = []
        for entry in self._schedule.pop_due(now):
            try:
                log = await self._deliver(entry, now)
            except Exception as exc:
                logger.error(
                    "Notification for event #%d (%s) crashed: %s",
                    entry.event_id, entry.theme.value, exc,
                )
                continue
            if log is not None:
                results.append(log)
        return results

    def format_message(self, event: Event, theme: Theme, now: datetime | None = None) -> str:
        tz = self._timezone_for(event)
        storyline = self._storylines.get_active(event.id, theme)
        if storyline is not None and storyline.matches(event.fingerprint, now or self._clock()):
            emoji, story = storyline.emoji, storyline.story_text
        else:
            emoji, story = fallback_message(theme, event.title, event.start_time, tz)

        header = story if story.startswith(emoji) else f"{emoji} {story}"
        details = f"📅 {event.title} • {format_time(event.start_time, tz)}"
        if event.location:
            details += f" • 📍 {event.location}"
        return f"{header}\n\n{details}"

    def _timezone_for(self, event: Event) -> str:
        if self._integrations is not None:
            calendar = self._integrations.get_calendar(event.calendar_id)
            if calendar is not None and calendar.timezone:
                return calendar.timezone
        return self._default_tz

    async def _deliver(self, entry: ScheduledFire, now: datetime) -> NotificationLog | None:
        log = self._notifications.get(entry.event_id, entry.theme)
        if log is None or log.outcome != DeliveryOutcome.PENDING:
            return log

        event = self._events.get_event(entry.event_id)
        if event is None or event.status == EventStatus.CANCELLED:
            log.outcome = DeliveryOutcome.CANCELLED
            self._notifications.record_attempt(log)
            return log
        if event.start_time <= now:
            log.outcome = DeliveryOutcome.FAILED
            log.last_error = "event started before delivery"
            self._notifications.record_attempt(log)
            logger.warning("Dropped stale reminder for event #%d", event.id)
            return log

        log.attempts += 1
        try:
            await self._sink.send_message(log.user_id, self.format_message(event, entry.theme, now))
        except Exception as exc:
            log.last_error = str(exc) or type(exc).__name__
            if log.attempts >= self._policy.max_attempts:
                log.outcome = DeliveryOutcome.FAILED
                logger.error(
                    "Notification for event #%d (%s) failed permanently after %d attempt(s): %s",
                    event.id, entry.theme.value, log.attempts, exc,
                )
            else:
                log.fire_at = now + timedelta(seconds=self._policy.backoff(log.attempts))
                self._schedule.push(log.event_id, log.theme, log.user_id, log.fire_at)
                logger.warning(
                    "Notification for event #%d (%s) attempt %d/%d failed (%s), retrying at %s",
                    event.id, entry.theme.value, log.attempts, self._policy.max_attempts,
                    exc, log.fire_at.isoformat(),
                )
        else:
            log.outcome = DeliveryOutcome.DELIVERED
            log.delivered_at = now
            log.last_error = None
            logger.info(
                "Notification delivered for event #%d (%s) to %d",
                event.id, entry.theme.value, log.user_id,
            )

        self._notifications.record_attempt(log)
        return log
