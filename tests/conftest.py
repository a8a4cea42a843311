"""Shared test fixtures and configuration.

Sets up fake environment variables so storytime.config doesn't sys.exit(),
and provides temp-file databases plus in-memory fakes for the provider,
the AI generator and the chat sink.
"""

import os

# Patch env vars BEFORE any storytime imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("GEMINI_API_KEY", "fake-gemini-key-for-tests")
os.environ.setdefault("AI_PROVIDERS", "gemini")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("RETRY_BASE_DELAY_SECONDS", "0")

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from storytime.ports.calendar_port import ProviderCalendar, ProviderEvent
from storytime.ports.notification_port import DeliveryError
from storytime.ports.story_port import GeneratedStory

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

VALID_TOKEN = json.dumps({
    "token": "access",
    "refresh_token": "refresh",
    "expiry": "2099-01-01T00:00:00Z",
})
EXPIRED_TOKEN = json.dumps({"token": "access", "expiry": "2000-01-01T00:00:00Z"})


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeCalendarAdapter:
    """In-memory CalendarProviderPort."""

    def __init__(self, calendars=None, events=None) -> None:
        self.calendars = calendars if calendars is not None else [
            ProviderCalendar("primary", "Main", "UTC", True),
        ]
        self.events: dict[str, list[ProviderEvent]] = events if events is not None else {}
        self.error: Exception | None = None
        self.list_calendars_calls = 0
        self.list_events_calls = 0
        self.gate: asyncio.Event | None = None

    async def list_calendars(self, credential):
        self.list_calendars_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        for cal in self.calendars:
            yield cal

    async def list_events(self, credential, provider_calendar_id, window):
        self.list_events_calls += 1
        if self.error is not None:
            raise self.error
        for ev in self.events.get(provider_calendar_id, []):
            yield ev


class FakeGenerator:
    """Stands in for ProviderChain; counts calls, can block or fail."""

    def __init__(self) -> None:
        self.calls = 0
        self.contexts = []
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None

    async def generate(self, context):
        self.calls += 1
        self.contexts.append(context)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return GeneratedStory(
            story_text=f"⚔️ Hail, Champion! The quest of {context.event_title} begins soon.",
            plain_text=context.event_title,
            emoji="⚔️",
            provider="fake",
            model="fake-1",
            tokens_used=42,
        )


class FakeSink:
    """NotificationPort that records messages and can fail on demand."""

    def __init__(self) -> None:
        self.sent: list[tuple[int, str]] = []
        self.failures_left = 0
        self.fail_for: set[int] = set()

    async def send_message(self, user_id: int, text: str) -> None:
        if user_id in self.fail_for:
            raise DeliveryError(f"chat {user_id} unreachable")
        if self.failures_left > 0:
            self.failures_left -= 1
            raise DeliveryError("sink down")
        self.sent.append((user_id, text))


def provider_event(
    pid: str,
    title: str = "Team Sync",
    start: datetime | None = None,
    minutes: int = 30,
    **kwargs,
) -> ProviderEvent:
    start = start or NOW + timedelta(hours=1)
    return ProviderEvent(
        provider_event_id=pid,
        title=title,
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Databases
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_storytime.db")


@pytest.fixture
def integration_db(tmp_db_path):
    from storytime.data.db import IntegrationDB
    return IntegrationDB(db_path=tmp_db_path)


@pytest.fixture
def event_db(tmp_db_path):
    from storytime.data.db import EventDB
    return EventDB(db_path=tmp_db_path)


@pytest.fixture
def storyline_db(tmp_db_path):
    from storytime.data.db import StorylineDB
    return StorylineDB(db_path=tmp_db_path)


@pytest.fixture
def sync_status_db(tmp_db_path):
    from storytime.data.db import SyncStatusDB
    return SyncStatusDB(db_path=tmp_db_path)


@pytest.fixture
def notification_db(tmp_db_path):
    from storytime.data.db import NotificationDB
    return NotificationDB(db_path=tmp_db_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def integration(integration_db):
    from storytime.data.models import Theme
    return integration_db.add_integration(
        user_id=12345, provider="google", token_json=VALID_TOKEN, theme=Theme.FANTASY,
    )


@pytest.fixture
def calendar(integration_db, integration):
    return integration_db.upsert_calendar(
        integration.id, "primary", "Main", timezone_name="UTC", is_primary=True,
    )


@pytest.fixture
def make_event(event_db, calendar):
    """Insert a stored event directly and return it."""
    from storytime.core.sync_engine import compute_fingerprint
    from storytime.data.db import NewEvent
    from storytime.data.models import EventStatus

    counter = {"n": 0}

    def _make(title="Team Sync", start=None, minutes=30, location=None, calendar_id=None):
        counter["n"] += 1
        start = start or NOW + timedelta(hours=1)
        end = start + timedelta(minutes=minutes)
        new = NewEvent(
            calendar_id=calendar_id or calendar.id,
            provider_event_id=f"evt-{counter['n']}",
            title=title,
            description="",
            start_time=start,
            end_time=end,
            is_all_day=False,
            location=location,
            meeting_link=None,
            attendee_count=None,
            status=EventStatus.ACTIVE,
            fingerprint=compute_fingerprint(title, "", start, end, location),
        )
        return event_db.apply_reconciliation([new], [], [])[0]

    return _make
