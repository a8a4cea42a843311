"""
StoryTime — Sync Engine.

One sync attempt per integration:

    STARTED → FETCHING → RECONCILING → COMPLETED | FAILED

Every provider call finishes before anything is written, so a failed or
cancelled fetch leaves stored events exactly as they were. Reconciliation
writes go through EventDB.apply_reconciliation in one transaction; then
new/changed events are handed to the storyline queue and the notification
scheduler. At most one sync runs per integration at a time: concurrent
requests join the in-flight run.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from storytime.adapters.calendar_factory import create_calendar_adapter, parse_credential
from storytime.core.notification_scheduler import NotificationScheduler
from storytime.core.story_queue import StoryJob, StorylineQueue
from storytime.core.storyline_cache import StorylineCache
from storytime.data.db import EventDB, IntegrationDB, NewEvent, SyncStatusDB, utcnow
from storytime.data.models import (
    Calendar,
    Event,
    EventStatus,
    Integration,
    IntegrationStatus,
    SyncOutcome,
    SyncStatus,
)
from storytime.ports.calendar_port import (
    AuthExpired,
    CalendarError,
    CalendarProviderPort,
    NotFound,
    ProviderCredential,
    ProviderEvent,
    SyncWindow,
)

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    STARTED = "STARTED"
    FETCHING = "FETCHING"
    RECONCILING = "RECONCILING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SkippedInactive(Exception):
    """Integration is missing or not ACTIVE. Not an error; nothing recorded."""


def compute_fingerprint(
    title: str,
    description: str,
    start_time: datetime,
    end_time: datetime,
    location: str | None,
) -> str:
    """SHA-256 over an event's mutable content fields."""
    parts = [
        title or "",
        description or "",
        start_time.isoformat(),
        end_time.isoformat(),
        location or "",
    ]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


def fingerprint_of(pe: ProviderEvent) -> str:
    return compute_fingerprint(pe.title, pe.description, pe.start_time, pe.end_time, pe.location)


@dataclass
class _CalendarPull:
    provider_calendar_id: str
    name: str
    timezone: str
    is_primary: bool
    events: list[ProviderEvent] | None  # None: calendar inactive or vanished


@dataclass
class _Plan:
    inserts: list[NewEvent]
    updates: list[Event]
    cancellations: list[int]
    processed: int = 0


class SyncEngine:
    def __init__(
        self,
        integrations: IntegrationDB,
        events: EventDB,
        sync_status: SyncStatusDB,
        queue: StorylineQueue,
        scheduler: NotificationScheduler,
        cache: StorylineCache | None = None,
        adapter_factory: Callable[[str], CalendarProviderPort] = create_calendar_adapter,
        clock: Callable[[], datetime] = utcnow,
        window_days: int | None = None,
    ) -> None:
        from storytime.config import settings

        self._integrations = integrations
        self._events = events
        self._sync_status = sync_status
        self._queue = queue
        self._scheduler = scheduler
        self._cache = cache
        self._adapter_factory = adapter_factory
        self._clock = clock
        self._window = timedelta(days=window_days or settings.SYNC_WINDOW_DAYS)
        self._inflight: dict[int, asyncio.Task[SyncStatus]] = {}

    def is_syncing(self, integration_id: int) -> bool:
        return integration_id in self._inflight

    async def trigger_sync(self, integration_id: int) -> SyncStatus:
        """Run (or join) a sync for one integration and return its SyncStatus.

        Raises SkippedInactive when the integration is missing or not ACTIVE.
        """
        running = self._inflight.get(integration_id)
        if running is not None:
            logger.info("Sync for integration #%d already running, joining it", integration_id)
            return await asyncio.shield(running)

        integration = self._integrations.get_integration(integration_id)
        if integration is None or integration.status != IntegrationStatus.ACTIVE:
            state = integration.status.value if integration else "missing"
            logger.info("Skipping sync for integration #%d (%s)", integration_id, state)
            raise SkippedInactive(f"Integration #{integration_id} is {state}")

        task = asyncio.create_task(self._run(integration))
        self._inflight[integration_id] = task
        task.add_done_callback(lambda t, i=integration_id: self._inflight.pop(i, None))
        return await task

    async def sync_all(self) -> dict[int, SyncStatus]:
        """Sync every ACTIVE integration concurrently; failures stay per integration."""
        integrations = self._integrations.list_integrations(status=IntegrationStatus.ACTIVE)
        results = await asyncio.gather(
            *(self.trigger_sync(i.id) for i in integrations), return_exceptions=True,
        )
        statuses: dict[int, SyncStatus] = {}
        for integration, result in zip(integrations, results):
            if isinstance(result, SyncStatus):
                statuses[integration.id] = result
            elif isinstance(result, SkippedInactive):
                continue
            else:
                logger.error("Sync for integration #%d crashed: %s", integration.id, result)
        logger.info(
            "Sync cycle finished: %d/%d integration(s) succeeded",
            sum(1 for s in statuses.values() if s.outcome == SyncOutcome.SUCCESS),
            len(integrations),
        )
        return statuses

    # -- one attempt ---------------------------------------------------------

    def _phase(self, integration: Integration, phase: SyncPhase, detail: str = "") -> None:
        logger.info(
            "Sync integration #%d: %s%s", integration.id, phase.value, f" ({detail})" if detail else "",
        )

    def _credential(self, integration: Integration, now: datetime) -> ProviderCredential:
        token_json = self._integrations.get_credential_json(integration.credential_ref)
        if token_json is None:
            raise AuthExpired("No stored credential for integration")
        credential = parse_credential(integration.provider, token_json)
        if credential.is_expired(now) and not credential.can_refresh:
            raise AuthExpired("Credential expired and cannot be refreshed")
        return credential

    async def _run(self, integration: Integration) -> SyncStatus:
        self._phase(integration, SyncPhase.STARTED)
        now = self._clock()
        window = SyncWindow(now, now + self._window)
        try:
            credential = self._credential(integration, now)
            adapter = self._adapter_factory(integration.provider)

            self._phase(integration, SyncPhase.FETCHING)
            pulls = await self._fetch(integration, adapter, credential, window)

            self._phase(integration, SyncPhase.RECONCILING)
            processed = await self._reconcile(integration, pulls, window)
        except asyncio.CancelledError:
            self._phase(integration, SyncPhase.FAILED, "cancelled")
            self._sync_status.append(integration.id, SyncOutcome.ERROR, error="Sync cancelled")
            raise
        except AuthExpired as exc:
            self._phase(integration, SyncPhase.FAILED, f"auth: {exc}")
            self._integrations.set_status(integration.id, IntegrationStatus.ERROR)
            return self._sync_status.append(
                integration.id, SyncOutcome.ERROR, error=f"AuthExpired: {exc}",
            )
        except CalendarError as exc:
            self._phase(integration, SyncPhase.FAILED, f"{type(exc).__name__}: {exc}")
            return self._sync_status.append(
                integration.id, SyncOutcome.ERROR, error=f"{type(exc).__name__}: {exc}",
            )
        except Exception as exc:
            logger.exception("Unexpected error syncing integration #%d", integration.id)
            self._phase(integration, SyncPhase.FAILED, str(exc))
            return self._sync_status.append(
                integration.id, SyncOutcome.ERROR, error=f"{type(exc).__name__}: {exc}",
            )

        self._integrations.mark_synced(integration.id, now)
        self._phase(integration, SyncPhase.COMPLETED, f"{processed} event(s)")
        return self._sync_status.append(
            integration.id, SyncOutcome.SUCCESS, events_processed=processed,
        )

    async def _fetch(
        self,
        integration: Integration,
        adapter: CalendarProviderPort,
        credential: ProviderCredential,
        window: SyncWindow,
    ) -> list[_CalendarPull]:
        stored = {
            c.provider_calendar_id: c
            for c in self._integrations.list_calendars(integration.id)
        }
        pulls: list[_CalendarPull] = []
        async for pc in adapter.list_calendars(credential):
            known = stored.get(pc.provider_calendar_id)
            active = known.is_active if known is not None else pc.is_primary
            events = None
            if active:
                try:
                    events = [
                        e async for e in adapter.list_events(
                            credential, pc.provider_calendar_id, window,
                        )
                    ]
                except NotFound:
                    logger.warning(
                        "Calendar %s vanished at the provider, skipping", pc.provider_calendar_id,
                    )
            pulls.append(
                _CalendarPull(pc.provider_calendar_id, pc.name, pc.timezone, pc.is_primary, events)
            )
        return pulls

    def _plan(self, calendar: Calendar, pulled: list[ProviderEvent], window: SyncWindow) -> _Plan:
        stored = {e.provider_event_id: e for e in self._events.list_for_calendar(calendar.id)}
        plan = _Plan(inserts=[], updates=[], cancellations=[])
        seen: set[str] = set()

        for pe in pulled:
            if pe.provider_event_id in seen:
                continue
            seen.add(pe.provider_event_id)
            plan.processed += 1

            fingerprint = fingerprint_of(pe)
            status = EventStatus.CANCELLED if pe.cancelled else EventStatus.ACTIVE
            existing = stored.get(pe.provider_event_id)

            if existing is None:
                if pe.cancelled:
                    continue
                plan.inserts.append(
                    NewEvent(
                        calendar_id=calendar.id,
                        provider_event_id=pe.provider_event_id,
                        title=pe.title,
                        description=pe.description,
                        start_time=pe.start_time,
                        end_time=pe.end_time,
                        is_all_day=pe.is_all_day,
                        location=pe.location,
                        meeting_link=pe.meeting_link,
                        attendee_count=pe.attendee_count,
                        status=status,
                        fingerprint=fingerprint,
                    )
                )
            elif existing.fingerprint != fingerprint or existing.status != status:
                plan.updates.append(
                    replace(
                        existing,
                        title=pe.title,
                        description=pe.description,
                        start_time=pe.start_time,
                        end_time=pe.end_time,
                        is_all_day=pe.is_all_day,
                        location=pe.location,
                        meeting_link=pe.meeting_link,
                        attendee_count=pe.attendee_count,
                        status=status,
                        fingerprint=fingerprint,
                    )
                )

        for provider_event_id, event in stored.items():
            if (
                provider_event_id not in seen
                and event.status == EventStatus.ACTIVE
                and window.contains(event.start_time)
            ):
                plan.cancellations.append(event.id)
        return plan

    async def _reconcile(
        self, integration: Integration, pulls: list[_CalendarPull], window: SyncWindow,
    ) -> int:
        inserts: list[NewEvent] = []
        updates: list[Event] = []
        cancellations: list[int] = []
        unchanged: list[Event] = []
        processed = 0

        for pull in pulls:
            calendar = self._integrations.upsert_calendar(
                integration.id, pull.provider_calendar_id, pull.name,
                timezone_name=pull.timezone, is_primary=pull.is_primary,
            )
            if pull.events is None:
                continue
            plan = self._plan(calendar, pull.events, window)
            inserts += plan.inserts
            updates += plan.updates
            cancellations += plan.cancellations
            processed += plan.processed

            touched = {e.id for e in plan.updates} | set(plan.cancellations)
            unchanged += [
                e for e in self._events.list_for_calendar(calendar.id)
                if e.id not in touched and e.status == EventStatus.ACTIVE
                and window.contains(e.start_time)
            ]

        inserted = self._events.apply_reconciliation(inserts, updates, cancellations)

        for event_id in cancellations:
            self._scheduler.cancel(event_id)
        for event in inserted + updates:
            if event.status == EventStatus.CANCELLED:
                self._scheduler.cancel(event.id)
                continue
            await self._handoff(integration, event)
        for event in unchanged:
            # Earlier generation failed or expired: retry without rescheduling.
            job = StoryJob(event.id, integration.theme, event.fingerprint)
            if self._queue.is_pending(job) or self._cache is None:
                continue
            if self._cache.lookup(job.event_id, job.theme, job.fingerprint) is None:
                logger.info("Resubmitting storyline for event #%d (%s)", event.id, job.theme.value)
                self._queue.submit(job)

        return processed

    async def _handoff(self, integration: Integration, event: Event) -> None:
        self._queue.submit(StoryJob(event.id, integration.theme, event.fingerprint))
        await self._scheduler.schedule(event, integration.theme, integration.user_id)
