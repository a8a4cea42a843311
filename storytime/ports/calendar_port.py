"""Calendar port — abstract interface for calendar providers.

Core modules depend on this protocol, never on a specific provider.
Adapters translate provider failures into the CalendarError family below.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Protocol


class CalendarError(Exception):
    """Raised when any calendar provider operation fails."""


class AuthExpired(CalendarError):
    """Credential expired or revoked. Needs user re-consent; never retried."""


class Throttled(CalendarError):
    """Provider rate limit hit. retry_after (seconds) is a floor for backoff."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class NetworkFailure(CalendarError):
    """Transport-level or 5xx failure. Transient."""


class NotFound(CalendarError):
    """Calendar or event vanished at the provider."""


@dataclass(frozen=True)
class SyncWindow:
    """Half-open [start, end) range of event start times to fetch."""

    start: datetime
    end: datetime

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end


@dataclass(frozen=True)
class ProviderCredential:
    """Opaque bearer credential with an expiry.

    token_json is whatever the provider adapter needs to rebuild its client.
    """

    token_json: str
    expires_at: datetime | None = None
    can_refresh: bool = False

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True)
class ProviderCalendar:
    provider_calendar_id: str
    name: str
    timezone: str = "UTC"
    is_primary: bool = False


@dataclass(frozen=True)
class ProviderEvent:
    """A provider event normalized into the internal shape."""

    provider_event_id: str
    title: str
    start_time: datetime
    end_time: datetime
    description: str = ""
    is_all_day: bool = False
    location: str | None = None
    meeting_link: str | None = None
    attendee_count: int | None = None
    cancelled: bool = False


class CalendarProviderPort(Protocol):
    """Abstract calendar provider used by the sync engine."""

    def list_calendars(
        self, credential: ProviderCredential
    ) -> AsyncIterator[ProviderCalendar]: ...

    def list_events(
        self,
        credential: ProviderCredential,
        provider_calendar_id: str,
        window: SyncWindow,
    ) -> AsyncIterator[ProviderEvent]: ...
