"""
StoryTime — Storyline Cache.

get_or_generate(event_id, theme, fingerprint) returns the active,
unexpired storyline whose fingerprint matches, or generates one.
Concurrent callers for the same key share a single in-flight generation.
Records are written only after the provider chain succeeds.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Protocol

from storytime.data.db import EventDB, IntegrationDB, StorylineDB, utcnow
from storytime.data.models import Event, Storyline, Theme
from storytime.ports.story_port import GeneratedStory, PreviousStory, StoryContext

logger = logging.getLogger(__name__)

CacheKey = tuple[int, Theme, str]


class StoryGenerator(Protocol):
    async def generate(self, context: StoryContext) -> GeneratedStory: ...


class EventUnavailable(LookupError):
    """Event vanished or changed content before its storyline was generated."""


class StorylineCache:
    def __init__(
        self,
        generator: StoryGenerator,
        events: EventDB,
        storylines: StorylineDB,
        integrations: IntegrationDB,
        clock: Callable[[], datetime] = utcnow,
        lifetime: timedelta | None = None,
        max_concurrency: int | None = None,
        context_limit: int | None = None,
    ) -> None:
        from storytime.config import settings

        self._generator = generator
        self._events = events
        self._storylines = storylines
        self._integrations = integrations
        self._clock = clock
        self._lifetime = lifetime or timedelta(hours=settings.STORYLINE_CACHE_HOURS)
        self._semaphore = asyncio.Semaphore(max_concurrency or settings.AI_MAX_CONCURRENCY)
        self._context_limit = (
            context_limit if context_limit is not None else settings.STORY_CONTEXT_LIMIT
        )
        self._locale = settings.DEFAULT_LOCALE
        self._default_tz = settings.TIMEZONE
        self._inflight: dict[CacheKey, asyncio.Task[Storyline]] = {}

    def lookup(self, event_id: int, theme: Theme, fingerprint: str) -> Storyline | None:
        """Return a cache hit without generating, or None."""
        active = self._storylines.get_active(event_id, theme)
        if active is None:
            return None
        return active if active.matches(fingerprint, self._clock()) else None

    def in_flight(self) -> int:
        return len(self._inflight)

    async def get_or_generate(
        self, event_id: int, theme: Theme, fingerprint: str,
    ) -> Storyline:
        hit = self.lookup(event_id, theme, fingerprint)
        if hit is not None:
            logger.debug("Storyline cache hit for event #%d (%s)", event_id, theme.value)
            return hit

        key: CacheKey = (event_id, theme, fingerprint)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._generate(event_id, theme, fingerprint))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._finished(k, t))
        else:
            logger.debug("Joining in-flight generation for event #%d (%s)", event_id, theme.value)

        # A caller that gives up must not cancel the generation others await.
        return await asyncio.shield(task)

    def _finished(self, key: CacheKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Storyline generation failed for event #%d (%s): %s",
                key[0], key[1].value, task.exception(),
            )

    def _build_context(self, event: Event, theme: Theme) -> StoryContext:
        calendar = self._integrations.get_calendar(event.calendar_id)
        integration = (
            self._integrations.get_integration(calendar.integration_id) if calendar else None
        )
        if calendar is None or integration is None:
            raise EventUnavailable(f"Event #{event.id} has no owning integration")

        prior = self._storylines.recent_for_user(
            integration.user_id, theme, limit=self._context_limit, exclude_event_id=event.id,
        )
        context = StoryContext(
            event_title=event.title,
            start_time=event.start_time,
            end_time=event.end_time,
            theme=theme,
            event_description=event.description,
            location=event.location,
            attendee_count=event.attendee_count,
            meeting_link=event.meeting_link,
            locale=self._locale,
            timezone=calendar.timezone or self._default_tz,
            previous_stories=tuple(
                PreviousStory(p.event_title, p.story_text, p.event_start) for p in prior
            ),
        )
        return context

    async def _generate(self, event_id: int, theme: Theme, fingerprint: str) -> Storyline:
        event = self._events.get_event(event_id)
        if event is None:
            raise EventUnavailable(f"Event #{event_id} not found")
        if event.fingerprint != fingerprint:
            raise EventUnavailable(
                f"Event #{event_id} changed since fingerprint {fingerprint[:8]} was requested"
            )
        context = self._build_context(event, theme)

        async with self._semaphore:
            story = await self._generator.generate(context)

        now = self._clock()
        return self._storylines.supersede(
            event_id=event_id,
            theme=theme,
            story_text=story.story_text,
            plain_text=story.plain_text,
            emoji=story.emoji,
            provider=story.provider,
            fingerprint=fingerprint,
            created_at=now,
            expires_at=now + self._lifetime,
            model=story.model or None,
            tokens_used=story.tokens_used,
        )
