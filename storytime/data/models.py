"""
StoryTime — Data Models.

Local mirror of the user's external calendar plus everything StoryTime
derives from it: storylines, sync audit rows and the notification log.
Calendar events still live at the provider; these rows are reconciled
copies keyed by (calendar_id, provider_event_id).

All datetimes are timezone-aware UTC.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class IntegrationStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"
    REVOKED = "REVOKED"


class EventStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class SyncOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    IN_PROGRESS = "in_progress"


class DeliveryOutcome(str, Enum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class Theme(str, Enum):
    FANTASY = "FANTASY"
    GENZ = "GENZ"
    MEME = "MEME"


@dataclass
class Integration:
    """A user's connected external-calendar account."""

    id: int
    user_id: int                      # owning user; also the chat destination
    provider: str                     # e.g. "google"
    status: IntegrationStatus
    credential_ref: str               # key into the credentials table
    theme: Theme = Theme.FANTASY
    last_sync_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class Calendar:
    """One provider calendar under an integration.

    is_active is toggled by the user and gates whether its events sync.
    """

    id: int
    integration_id: int
    provider_calendar_id: str
    name: str
    timezone: str = "UTC"
    is_primary: bool = False
    is_active: bool = True


@dataclass
class Event:
    """A reconciled calendar event."""

    id: int
    calendar_id: int
    provider_event_id: str
    title: str
    start_time: datetime
    end_time: datetime
    description: str = ""
    is_all_day: bool = False
    location: str | None = None
    meeting_link: str | None = None
    attendee_count: int | None = None
    status: EventStatus = EventStatus.ACTIVE
    fingerprint: str = ""
    updated_at: datetime | None = None


@dataclass
class Storyline:
    """AI narrative for one (event, theme).

    Never updated in place — a regeneration inserts a new row and
    deactivates the previous one.
    """

    id: int
    event_id: int
    theme: Theme
    story_text: str
    plain_text: str
    emoji: str
    provider: str
    fingerprint: str
    created_at: datetime
    expires_at: datetime
    model: str | None = None
    tokens_used: int | None = None
    is_active: bool = True

    def is_valid(self, now: datetime) -> bool:
        return self.is_active and now < self.expires_at

    def matches(self, fingerprint: str, now: datetime) -> bool:
        """Valid and written for this exact version of the event."""
        return self.fingerprint == fingerprint and self.is_valid(now)


@dataclass
class SyncStatus:
    """Append-only audit row, one per sync attempt."""

    id: int
    integration_id: int
    outcome: SyncOutcome
    timestamp: datetime
    events_processed: int = 0
    error: str | None = None


@dataclass
class NotificationLog:
    """Delivery record for one (event, theme) reminder.

    Terminal once DELIVERED, FAILED or CANCELLED.
    """

    id: int
    event_id: int
    theme: Theme
    user_id: int
    fire_at: datetime
    outcome: DeliveryOutcome = DeliveryOutcome.PENDING
    attempts: int = 0
    last_error: str | None = None
    delivered_at: datetime | None = None
