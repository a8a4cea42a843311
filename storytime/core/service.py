"""
StoryTime — Pipeline service.

Composition root and upward-facing API of the sync & storyline pipeline:

    trigger_sync(integration_id) -> SyncStatus
    get_events(EventFilter)      -> list[EventView]
    get_sync_status(id)          -> SyncStatus | None
    tick(now)                    -> list[NotificationLog]

The bot (or any other front end) talks to this class only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from storytime.adapters.calendar_factory import create_calendar_adapter
from storytime.core.notification_scheduler import NotificationScheduler, Schedule
from storytime.core.story_queue import StorylineQueue
from storytime.core.storyline_cache import StoryGenerator, StorylineCache
from storytime.core.sync_engine import SyncEngine
from storytime.data.db import (
    EventDB,
    EventFilter,
    IntegrationDB,
    NotificationDB,
    StorylineDB,
    SyncStatusDB,
    utcnow,
)
from storytime.data.models import (
    Event,
    NotificationLog,
    Storyline,
    SyncOutcome,
    SyncStatus,
    Theme,
)
from storytime.ports.calendar_port import CalendarProviderPort
from storytime.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


@dataclass
class EventView:
    """An event together with its active storyline for the integration's theme."""

    event: Event
    storyline: Storyline | None = None


class StoryTimeService:
    def __init__(
        self,
        integrations: IntegrationDB,
        events: EventDB,
        storylines: StorylineDB,
        sync_status: SyncStatusDB,
        notifications: NotificationDB,
        cache: StorylineCache,
        queue: StorylineQueue,
        scheduler: NotificationScheduler,
        engine: SyncEngine,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.integrations = integrations
        self.events = events
        self.storylines = storylines
        self.sync_status = sync_status
        self.notifications = notifications
        self.cache = cache
        self.queue = queue
        self.scheduler = scheduler
        self.engine = engine
        self._clock = clock

    @classmethod
    def build(
        cls,
        sink: NotificationPort,
        generator: StoryGenerator | None = None,
        db_path: str | None = None,
        adapter_factory: Callable[[str], CalendarProviderPort] = create_calendar_adapter,
        clock: Callable[[], datetime] = utcnow,
    ) -> "StoryTimeService":
        """Wire the store, cache, queue, scheduler and sync engine together."""
        if generator is None:
            from storytime.core.storyline_generator import ProviderChain
            generator = ProviderChain.from_settings()

        integrations = IntegrationDB(db_path)
        events = EventDB(db_path)
        storylines = StorylineDB(db_path)
        sync_status = SyncStatusDB(db_path)
        notifications = NotificationDB(db_path)

        cache = StorylineCache(generator, events, storylines, integrations, clock=clock)
        queue = StorylineQueue(cache)
        scheduler = NotificationScheduler(
            Schedule(), events, notifications, storylines, sink,
            integrations=integrations, clock=clock,
        )
        engine = SyncEngine(
            integrations, events, sync_status, queue, scheduler,
            cache=cache, adapter_factory=adapter_factory, clock=clock,
        )
        return cls(
            integrations, events, storylines, sync_status, notifications,
            cache, queue, scheduler, engine, clock=clock,
        )

    def start(self) -> int:
        """Reload persisted pending notifications. Call once at start-up."""
        return self.scheduler.load()

    async def trigger_sync(self, integration_id: int) -> SyncStatus:
        return await self.engine.trigger_sync(integration_id)

    async def sync_all(self) -> dict[int, SyncStatus]:
        return await self.engine.sync_all()

    def get_events(self, flt: EventFilter | None = None) -> list[EventView]:
        """Stored events matching the filter, each with its current storyline (or None)."""
        flt = flt or EventFilter()
        now = self._clock()
        views: list[EventView] = []
        theme_by_calendar: dict[int, Theme | None] = {}
        for event in self.events.query(flt):
            if event.calendar_id not in theme_by_calendar:
                calendar = self.integrations.get_calendar(event.calendar_id)
                integration = (
                    self.integrations.get_integration(calendar.integration_id)
                    if calendar else None
                )
                theme_by_calendar[event.calendar_id] = integration.theme if integration else None
            theme = theme_by_calendar[event.calendar_id]

            storyline = self.storylines.get_active(event.id, theme) if theme else None
            if storyline is not None and not storyline.matches(event.fingerprint, now):
                storyline = None
            views.append(EventView(event, storyline))
        return views

    def get_sync_status(self, integration_id: int) -> SyncStatus | None:
        """Latest sync outcome; in_progress while a sync is running."""
        if self.engine.is_syncing(integration_id):
            return SyncStatus(
                id=0,
                integration_id=integration_id,
                outcome=SyncOutcome.IN_PROGRESS,
                timestamp=self._clock(),
            )
        return self.sync_status.latest(integration_id)

    async def tick(self, now: datetime | None = None) -> list[NotificationLog]:
        return await self.scheduler.tick(now)

    def purge_expired_storylines(self) -> int:
        return self.storylines.purge_expired(self._clock())

    async def drain(self) -> None:
        """Wait for queued storyline generation to finish."""
        await self.queue.drain()
