"""Tests for storytime.core.notification_scheduler — pre-event reminders.

All times are driven by FakeClock / explicit tick(now); nothing sleeps.
Events start at 10:00 UTC by default, so the reminder fires at 09:45.
"""

from datetime import timedelta

import pytest

from conftest import NOW, VALID_TOKEN
from storytime.core.notification_scheduler import NotificationScheduler, Schedule
from storytime.core.retry import RetryPolicy
from storytime.data.models import DeliveryOutcome, EventStatus, Theme

T0944 = NOW + timedelta(minutes=44)
T0946 = NOW + timedelta(minutes=46)


@pytest.fixture
def schedule():
    return Schedule()


@pytest.fixture
def scheduler(schedule, event_db, notification_db, storyline_db, integration_db, sink, clock):
    return NotificationScheduler(
        schedule, event_db, notification_db, storyline_db, sink,
        integrations=integration_db,
        clock=clock,
        lead=timedelta(minutes=15),
        policy=RetryPolicy(max_attempts=3, base_delay=0, jitter=0),
    )


def _save_story(storyline_db, event, text="🔮 Hail, Champion! The sages convene for the Team Sync.", expires=None):
    return storyline_db.supersede(
        event_id=event.id, theme=Theme.FANTASY, story_text=text, plain_text="Team Sync",
        emoji="🔮", provider="fake", fingerprint=event.fingerprint,
        created_at=NOW, expires_at=expires or NOW + timedelta(hours=24),
    )


class TestSchedule:
    def test_pop_due_earliest_first(self):
        s = Schedule()
        s.push(1, Theme.FANTASY, 1, NOW + timedelta(minutes=10))
        s.push(2, Theme.FANTASY, 1, NOW + timedelta(minutes=5))
        s.push(3, Theme.FANTASY, 1, NOW + timedelta(minutes=30))

        due = s.pop_due(NOW + timedelta(minutes=10))

        assert [e.event_id for e in due] == [2, 1]
        assert len(s) == 1
        assert s.next_fire_at() == NOW + timedelta(minutes=30)

    def test_push_replaces_existing_entry(self):
        s = Schedule()
        s.push(1, Theme.FANTASY, 1, NOW)
        s.push(1, Theme.FANTASY, 1, NOW + timedelta(hours=1))

        assert len(s) == 1
        assert s.pop_due(NOW) == []
        assert s.get(1, Theme.FANTASY).fire_at == NOW + timedelta(hours=1)

    def test_remove_drops_every_theme(self):
        s = Schedule()
        s.push(1, Theme.FANTASY, 1, NOW)
        s.push(1, Theme.MEME, 1, NOW)
        s.push(2, Theme.MEME, 1, NOW)

        assert s.remove(1) == 2
        assert (1, Theme.FANTASY) not in s
        assert [e.event_id for e in s.pop_due(NOW)] == [2]

    def test_discard_and_empty(self):
        s = Schedule()
        s.push(1, Theme.FANTASY, 1, NOW)
        s.discard(1, Theme.FANTASY)
        s.discard(1, Theme.FANTASY)
        assert len(s) == 0
        assert s.next_fire_at() is None


class TestScheduling:
    @pytest.mark.asyncio
    async def test_fires_at_lead_before_start(self, scheduler, schedule, make_event):
        event = make_event()
        log = await scheduler.schedule(event, Theme.FANTASY, 12345)

        assert log.outcome == DeliveryOutcome.PENDING
        assert log.fire_at == NOW + timedelta(minutes=45)
        assert schedule.get(event.id, Theme.FANTASY).fire_at == log.fire_at

    @pytest.mark.asyncio
    async def test_fires_between_0944_and_0946(self, scheduler, sink, notification_db, make_event):
        event = make_event()
        await scheduler.schedule(event, Theme.FANTASY, 12345)

        assert await scheduler.tick(T0944) == []
        assert sink.sent == []

        delivered = await scheduler.tick(T0946)

        assert len(delivered) == 1
        assert delivered[0].outcome == DeliveryOutcome.DELIVERED
        assert delivered[0].delivered_at == T0946
        assert len(sink.sent) == 1
        assert sink.sent[0][0] == 12345
        assert notification_db.get(event.id, Theme.FANTASY).outcome == DeliveryOutcome.DELIVERED

    @pytest.mark.asyncio
    async def test_delivers_exactly_once(self, scheduler, sink, make_event):
        event = make_event()
        await scheduler.schedule(event, Theme.FANTASY, 12345)
        await scheduler.tick(T0946)

        # A later sync re-schedules the same event; nothing is sent again.
        log = await scheduler.schedule(event, Theme.FANTASY, 12345)
        await scheduler.tick(T0946 + timedelta(minutes=1))

        assert log.outcome == DeliveryOutcome.DELIVERED
        assert len(sink.sent) == 1

    @pytest.mark.asyncio
    async def test_schedule_is_idempotent(self, scheduler, schedule, make_event):
        event = make_event()
        first = await scheduler.schedule(event, Theme.FANTASY, 12345)
        second = await scheduler.schedule(event, Theme.FANTASY, 12345)
        assert first.id == second.id
        assert len(schedule) == 1

    @pytest.mark.asyncio
    async def test_moved_event_moves_fire_time(self, scheduler, sink, event_db, make_event):
        from dataclasses import replace

        event = make_event()
        await scheduler.schedule(event, Theme.FANTASY, 12345)
        moved = replace(event, start_time=event.start_time + timedelta(hours=1),
                        end_time=event.end_time + timedelta(hours=1))
        event_db.apply_reconciliation([], [moved], [])

        log = await scheduler.schedule(moved, Theme.FANTASY, 12345)

        assert log.fire_at == NOW + timedelta(hours=1, minutes=45)
        assert await scheduler.tick(T0946) == []
        assert len(await scheduler.tick(NOW + timedelta(hours=1, minutes=46))) == 1
        assert len(sink.sent) == 1

    @pytest.mark.asyncio
    async def test_inside_lead_window_fires_immediately(self, scheduler, sink, schedule, make_event):
        event = make_event(start=NOW + timedelta(minutes=10))

        log = await scheduler.schedule(event, Theme.FANTASY, 12345)

        assert log.outcome == DeliveryOutcome.DELIVERED
        assert log.attempts == 1
        assert len(sink.sent) == 1
        assert len(schedule) == 0

    @pytest.mark.asyncio
    async def test_started_event_is_not_scheduled(self, scheduler, sink, notification_db, make_event):
        event = make_event(start=NOW - timedelta(minutes=5))
        assert await scheduler.schedule(event, Theme.FANTASY, 12345) is None
        assert notification_db.get(event.id, Theme.FANTASY) is None
        assert sink.sent == []

    @pytest.mark.asyncio
    async def test_cancelled_event_cancels_pending(self, scheduler, schedule, notification_db, make_event):
        from dataclasses import replace

        event = make_event()
        await scheduler.schedule(event, Theme.FANTASY, 12345)

        result = await scheduler.schedule(
            replace(event, status=EventStatus.CANCELLED), Theme.FANTASY, 12345,
        )

        assert result is None
        assert len(schedule) == 0
        assert notification_db.get(event.id, Theme.FANTASY).outcome == DeliveryOutcome.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_removes_fire(self, scheduler, sink, notification_db, make_event):
        event = make_event()
        await scheduler.schedule(event, Theme.FANTASY, 12345)

        assert scheduler.cancel(event.id) == 1
        assert await scheduler.tick(T0946) == []
        assert sink.sent == []
        assert notification_db.get(event.id, Theme.FANTASY).outcome == DeliveryOutcome.CANCELLED


class TestDelivery:
    @pytest.mark.asyncio
    async def test_event_cancelled_in_store_is_not_sent(self, scheduler, sink, event_db, make_event):
        event = make_event()
        await scheduler.schedule(event, Theme.FANTASY, 12345)
        event_db.apply_reconciliation([], [], [event.id])

        results = await scheduler.tick(T0946)

        assert results[0].outcome == DeliveryOutcome.CANCELLED
        assert sink.sent == []

    @pytest.mark.asyncio
    async def test_event_started_before_delivery(self, scheduler, sink, make_event):
        event = make_event()
        await scheduler.schedule(event, Theme.FANTASY, 12345)

        results = await scheduler.tick(NOW + timedelta(hours=1, minutes=1))

        assert results[0].outcome == DeliveryOutcome.FAILED
        assert results[0].last_error == "event started before delivery"
        assert sink.sent == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, scheduler, sink, make_event):
        event = make_event()
        await scheduler.schedule(event, Theme.FANTASY, 12345)
        sink.failures_left = 2

        first = await scheduler.tick(T0946)
        assert first[0].outcome == DeliveryOutcome.PENDING
        assert first[0].attempts == 1
        assert first[0].last_error == "sink down"

        await scheduler.tick(T0946)
        final = await scheduler.tick(T0946)

        assert final[0].outcome == DeliveryOutcome.DELIVERED
        assert final[0].attempts == 3
        assert len(sink.sent) == 1

    @pytest.mark.asyncio
    async def test_retry_ceiling_marks_failed(self, scheduler, sink, schedule, notification_db, make_event):
        event = make_event()
        await scheduler.schedule(event, Theme.FANTASY, 12345)
        sink.failures_left = 10

        for _ in range(5):
            await scheduler.tick(T0946)

        log = notification_db.get(event.id, Theme.FANTASY)
        assert log.outcome == DeliveryOutcome.FAILED
        assert log.attempts == 3
        assert len(schedule) == 0
        assert sink.sent == []

    @pytest.mark.asyncio
    async def test_one_failing_destination_does_not_block_others(
        self, scheduler, sink, integration_db, make_event,
    ):
        integration_db.add_integration(999, "google", VALID_TOKEN)
        a = make_event(title="For 999")
        b = make_event(title="For 12345")
        await scheduler.schedule(a, Theme.FANTASY, 999)
        await scheduler.schedule(b, Theme.FANTASY, 12345)
        sink.fail_for = {999}

        results = {log.event_id: log for log in await scheduler.tick(T0946)}

        assert results[a.id].outcome == DeliveryOutcome.PENDING
        assert results[b.id].outcome == DeliveryOutcome.DELIVERED
        assert [uid for uid, _ in sink.sent] == [12345]

    @pytest.mark.asyncio
    async def test_due_fires_delivered_in_time_order(self, scheduler, sink, make_event):
        later = make_event(title="Later", start=NOW + timedelta(minutes=70))
        sooner = make_event(title="Sooner", start=NOW + timedelta(minutes=60))
        await scheduler.schedule(later, Theme.FANTASY, 12345)
        await scheduler.schedule(sooner, Theme.FANTASY, 12345)

        await scheduler.tick(NOW + timedelta(minutes=56))

        assert ["Sooner" in text for _, text in sink.sent] == [True, False]

    @pytest.mark.asyncio
    async def test_load_restores_pending_fires(
        self, event_db, notification_db, storyline_db, integration_db, sink, clock, scheduler, make_event,
    ):
        event = make_event()
        await scheduler.schedule(event, Theme.FANTASY, 12345)

        schedule = Schedule()
        restarted = NotificationScheduler(
            schedule, event_db, notification_db, storyline_db, sink,
            integrations=integration_db, clock=clock, lead=timedelta(minutes=15),
        )
        assert restarted.load() == 1
        assert schedule.next_fire_at() == NOW + timedelta(minutes=45)
        assert len(await restarted.tick(T0946)) == 1
        assert len(sink.sent) == 1


class TestFormatMessage:
    def test_uses_storyline(self, scheduler, storyline_db, make_event):
        event = make_event(location="Room 4")
        _save_story(storyline_db, event)

        text = scheduler.format_message(event, Theme.FANTASY, NOW)

        assert text == (
            "🔮 Hail, Champion! The sages convene for the Team Sync.\n\n"
            "📅 Team Sync • 10:00 AM • 📍 Room 4"
        )

    def test_prefixes_emoji_when_missing(self, scheduler, storyline_db, make_event):
        event = make_event()
        _save_story(storyline_db, event, text="Hail, Champion! The sages convene for the Team Sync.")

        text = scheduler.format_message(event, Theme.FANTASY, NOW)

        assert text.startswith("🔮 Hail, Champion!")
        assert text.endswith("📅 Team Sync • 10:00 AM")

    def test_falls_back_without_storyline(self, scheduler, make_event):
        event = make_event(title="Dentist")
        text = scheduler.format_message(event, Theme.MEME, NOW)
        assert '"Dentist" at 10:00 AM' in text
        assert "this is fine" in text

    def test_expired_storyline_falls_back(self, scheduler, storyline_db, make_event):
        event = make_event(title="Dentist")
        _save_story(storyline_db, event, expires=NOW + timedelta(minutes=30))

        text = scheduler.format_message(event, Theme.FANTASY, NOW + timedelta(minutes=45))

        assert "The sages convene" not in text
        assert "A quest awaits!" in text

    @pytest.mark.asyncio
    async def test_edited_event_does_not_reuse_old_storyline(
        self, scheduler, sink, storyline_db, event_db, make_event,
    ):
        from dataclasses import replace
        from storytime.core.sync_engine import compute_fingerprint

        event = make_event()
        _save_story(storyline_db, event)
        edited = replace(
            event, title="Dentist",
            fingerprint=compute_fingerprint("Dentist", "", event.start_time, event.end_time, None),
        )
        event_db.apply_reconciliation([], [edited], [])

        await scheduler.schedule(edited, Theme.FANTASY, 12345)
        await scheduler.tick(T0946)

        text = sink.sent[0][1]
        assert "The sages convene" not in text
        assert "A quest awaits!" in text
        assert "📅 Dentist • 10:00 AM" in text

    def test_calendar_timezone(self, scheduler, integration_db, integration, make_event):
        integration_db.upsert_calendar(
            integration.id, "primary", "Main", timezone_name="Asia/Jerusalem", is_primary=True,
        )
        event = make_event()
        assert "12:00 PM" in scheduler.format_message(event, Theme.FANTASY, NOW)
