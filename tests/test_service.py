"""Tests for storytime.core.service — the pipeline end to end.

Everything below the service is real except the calendar provider,
the AI chain and the chat sink.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import NOW, VALID_TOKEN, FakeCalendarAdapter, provider_event
from storytime.core.service import StoryTimeService
from storytime.core.story_queue import StoryJob
from storytime.data.db import EventFilter
from storytime.data.models import DeliveryOutcome, SyncOutcome, Theme
from storytime.ports.story_port import QuotaExceeded


@pytest.fixture
def adapter():
    return FakeCalendarAdapter(events={"primary": [provider_event("e1", "Quarterly Review", location="HQ")]})


@pytest.fixture
def service(tmp_db_path, sink, generator, adapter, clock):
    return StoryTimeService.build(
        sink=sink,
        generator=generator,
        db_path=tmp_db_path,
        adapter_factory=lambda provider: adapter,
        clock=clock,
    )


@pytest.fixture
def account(service):
    return service.integrations.add_integration(12345, "google", VALID_TOKEN, theme=Theme.GENZ)


class TestSyncAndQuery:
    @pytest.mark.asyncio
    async def test_sync_then_get_events_with_storyline(self, service, account):
        status = await service.trigger_sync(account.id)
        await service.drain()

        assert status.outcome == SyncOutcome.SUCCESS
        views = service.get_events(EventFilter(integration_id=account.id))
        assert len(views) == 1
        assert views[0].event.title == "Quarterly Review"
        assert views[0].storyline is not None
        assert views[0].storyline.theme == Theme.GENZ

    @pytest.mark.asyncio
    async def test_get_events_before_generation(self, service, account, generator):
        generator.gate = asyncio.Event()
        await service.trigger_sync(account.id)

        views = service.get_events()

        assert len(views) == 1
        assert views[0].storyline is None
        generator.gate.set()
        await service.drain()
        assert service.get_events()[0].storyline is not None

    @pytest.mark.asyncio
    async def test_expired_storyline_hidden(self, service, account, clock):
        await service.trigger_sync(account.id)
        await service.drain()

        clock.advance(hours=25)

        assert service.get_events()[0].storyline is None

    @pytest.mark.asyncio
    async def test_edited_event_hides_storyline_of_previous_version(
        self, service, account, adapter, generator, sink,
    ):
        await service.trigger_sync(account.id)
        await service.drain()

        adapter.events["primary"] = [provider_event("e1", "Dentist", start=NOW + timedelta(hours=3))]
        generator.error = QuotaExceeded("monthly quota reached", provider="fake")
        await service.trigger_sync(account.id)
        await service.drain()

        view = service.get_events()[0]
        assert view.event.title == "Dentist"
        assert view.storyline is None

        await service.tick(NOW + timedelta(hours=2, minutes=46))
        text = sink.sent[0][1]
        assert "Quarterly Review" not in text
        assert "bestie" in text
        assert "📅 Dentist" in text

    @pytest.mark.asyncio
    async def test_filter_by_window(self, service, account):
        await service.trigger_sync(account.id)
        await service.drain()
        flt = EventFilter(start_from=NOW + timedelta(hours=2), start_to=NOW + timedelta(days=1))
        assert service.get_events(flt) == []


class TestSyncStatus:
    @pytest.mark.asyncio
    async def test_never_synced(self, service, account):
        assert service.get_sync_status(account.id) is None

    @pytest.mark.asyncio
    async def test_in_progress_then_latest(self, service, account, adapter):
        adapter.gate = asyncio.Event()
        task = asyncio.create_task(service.trigger_sync(account.id))
        await asyncio.sleep(0)

        running = service.get_sync_status(account.id)
        assert running.outcome == SyncOutcome.IN_PROGRESS
        assert running.timestamp == NOW

        adapter.gate.set()
        done = await task
        assert service.get_sync_status(account.id).id == done.id
        assert service.get_sync_status(account.id).outcome == SyncOutcome.SUCCESS

    @pytest.mark.asyncio
    async def test_sync_all(self, service, account):
        statuses = await service.sync_all()
        assert statuses[account.id].events_processed == 1


class TestNotifications:
    @pytest.mark.asyncio
    async def test_reminder_carries_storyline(self, service, account, sink):
        await service.trigger_sync(account.id)
        await service.drain()

        assert await service.tick(NOW + timedelta(minutes=44)) == []
        logs = await service.tick(NOW + timedelta(minutes=46))

        assert logs[0].outcome == DeliveryOutcome.DELIVERED
        user_id, text = sink.sent[0]
        assert user_id == 12345
        assert "The quest of Quarterly Review begins soon." in text
        assert "📅 Quarterly Review • 10:00 AM • 📍 HQ" in text

    @pytest.mark.asyncio
    async def test_reminder_without_storyline_uses_fallback(self, service, account, sink, generator):
        generator.gate = asyncio.Event()
        await service.trigger_sync(account.id)

        await service.tick(NOW + timedelta(minutes=46))

        assert "bestie" in sink.sent[0][1]
        generator.gate.set()
        await service.drain()

    @pytest.mark.asyncio
    async def test_restart_restores_pending_reminders(
        self, service, account, tmp_db_path, sink, generator, adapter, clock,
    ):
        await service.trigger_sync(account.id)
        await service.drain()

        restarted = StoryTimeService.build(
            sink=sink, generator=generator, db_path=tmp_db_path,
            adapter_factory=lambda provider: adapter, clock=clock,
        )
        assert restarted.start() == 1
        await restarted.tick(NOW + timedelta(minutes=46))

        assert len(sink.sent) == 1


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_purge_expired_storylines(self, service, account, clock):
        await service.trigger_sync(account.id)
        await service.drain()
        event = service.get_events()[0].event

        assert service.purge_expired_storylines() == 0
        clock.advance(hours=24)
        assert service.purge_expired_storylines() == 1
        assert service.storylines.list_for_event(event.id) == []


class TestStorylineQueue:
    @pytest.mark.asyncio
    async def test_duplicate_jobs_are_deduplicated(self, service, account, generator):
        generator.gate = asyncio.Event()
        await service.trigger_sync(account.id)
        event = service.get_events()[0].event
        job = StoryJob(event.id, Theme.GENZ, event.fingerprint)

        assert service.queue.is_pending(job)
        assert service.queue.submit(job) is service.queue.submit(job)
        assert service.queue.pending == 1

        generator.gate.set()
        await service.drain()

        assert service.queue.pending == 0
        assert service.queue.completed == 1
        assert generator.calls == 1
