"""
StoryTime — Storyline job queue.

Explicit handoff between the sync engine and the storyline cache. A sync
cycle submits jobs and returns; the queue runs them as asyncio tasks,
tracks what is still pending, and records outcomes. drain() lets callers
(and tests) wait for the backlog to settle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from storytime.core.storyline_cache import StorylineCache
from storytime.data.models import Theme

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoryJob:
    event_id: int
    theme: Theme
    fingerprint: str


class StorylineQueue:
    def __init__(self, cache: StorylineCache) -> None:
        self._cache = cache
        self._tasks: dict[StoryJob, asyncio.Task] = {}
        self.completed = 0
        self.failed = 0

    def submit(self, job: StoryJob) -> asyncio.Task:
        """Schedule generation for a job; a duplicate pending job is reused."""
        task = self._tasks.get(job)
        if task is not None:
            return task
        task = asyncio.create_task(self._run(job))
        self._tasks[job] = task
        logger.debug(
            "Queued storyline job for event #%d (%s); %d generation(s) in flight",
            job.event_id, job.theme.value, self._cache.in_flight(),
        )
        task.add_done_callback(lambda t, j=job: self._tasks.pop(j, None))
        return task

    async def _run(self, job: StoryJob) -> None:
        try:
            await self._cache.get_or_generate(job.event_id, job.theme, job.fingerprint)
            self.completed += 1
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Event stays without a storyline; the next sync resubmits it.
            self.failed += 1
            logger.warning(
                "Storyline job for event #%d (%s) failed: %s",
                job.event_id, job.theme.value, exc,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def is_pending(self, job: StoryJob) -> bool:
        return job in self._tasks

    async def drain(self) -> None:
        """Wait until every submitted job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
