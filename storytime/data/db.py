"""
StoryTime — SQLite store.

Single source of truth for integrations, reconciled events, storylines,
the sync audit trail and the notification log. Only the sync engine,
the storyline cache and the notification scheduler write here.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from storytime.data.models import (
    Calendar,
    DeliveryOutcome,
    Event,
    EventStatus,
    Integration,
    IntegrationStatus,
    NotificationLog,
    Storyline,
    SyncOutcome,
    SyncStatus,
    Theme,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS integrations (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER NOT NULL,
    provider        TEXT    NOT NULL,
    status          TEXT    NOT NULL DEFAULT 'PENDING',
    credential_ref  TEXT    NOT NULL,
    theme           TEXT    NOT NULL DEFAULT 'FANTASY',
    last_sync_at    TEXT,
    created_at      TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS credentials (
    ref         TEXT PRIMARY KEY,
    token_json  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS calendars (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    integration_id        INTEGER NOT NULL REFERENCES integrations(id),
    provider_calendar_id  TEXT    NOT NULL,
    name                  TEXT    NOT NULL,
    timezone              TEXT    NOT NULL DEFAULT 'UTC',
    is_primary            INTEGER NOT NULL DEFAULT 0,
    is_active             INTEGER NOT NULL DEFAULT 1,
    UNIQUE (integration_id, provider_calendar_id)
);

CREATE TABLE IF NOT EXISTS events (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    calendar_id        INTEGER NOT NULL REFERENCES calendars(id),
    provider_event_id  TEXT    NOT NULL,
    title              TEXT    NOT NULL,
    description        TEXT    NOT NULL DEFAULT '',
    start_time         TEXT    NOT NULL,
    end_time           TEXT    NOT NULL,
    is_all_day         INTEGER NOT NULL DEFAULT 0,
    location           TEXT,
    meeting_link       TEXT,
    attendee_count     INTEGER,
    status             TEXT    NOT NULL DEFAULT 'ACTIVE',
    fingerprint        TEXT    NOT NULL,
    updated_at         TEXT    NOT NULL,
    UNIQUE (calendar_id, provider_event_id)
);

CREATE TABLE IF NOT EXISTS storylines (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id     INTEGER NOT NULL REFERENCES events(id),
    theme        TEXT    NOT NULL,
    story_text   TEXT    NOT NULL,
    plain_text   TEXT    NOT NULL,
    emoji        TEXT    NOT NULL,
    provider     TEXT    NOT NULL,
    model        TEXT,
    tokens_used  INTEGER,
    fingerprint  TEXT    NOT NULL,
    created_at   TEXT    NOT NULL,
    expires_at   TEXT    NOT NULL,
    is_active    INTEGER NOT NULL DEFAULT 1
);

CREATE UNIQUE INDEX IF NOT EXISTS storylines_one_active
    ON storylines (event_id, theme) WHERE is_active = 1;

CREATE TABLE IF NOT EXISTS sync_status (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    integration_id    INTEGER NOT NULL,
    outcome           TEXT    NOT NULL,
    timestamp         TEXT    NOT NULL,
    events_processed  INTEGER NOT NULL DEFAULT 0,
    error             TEXT
);

CREATE TABLE IF NOT EXISTS notification_log (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id      INTEGER NOT NULL,
    theme         TEXT    NOT NULL,
    user_id       INTEGER NOT NULL,
    fire_at       TEXT    NOT NULL,
    outcome       TEXT    NOT NULL DEFAULT 'PENDING',
    attempts      INTEGER NOT NULL DEFAULT 0,
    last_error    TEXT,
    delivered_at  TEXT,
    UNIQUE (event_id, theme)
);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime | None) -> str | None:
    """Serialize a datetime as fixed-width UTC ISO text (sortable as TEXT)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class _SQLiteDB:
    """Connection handling shared by every table wrapper below."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from storytime.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
        logger.debug("%s initialized at %s", type(self).__name__, self._db_path)


# ---------------------------------------------------------------------------
# Integrations, credentials and calendars
# ---------------------------------------------------------------------------


class IntegrationDB(_SQLiteDB):
    """Connected calendar accounts, their credentials and calendars."""

    @staticmethod
    def _row_to_integration(row: sqlite3.Row) -> Integration:
        return Integration(
            id=row["id"],
            user_id=row["user_id"],
            provider=row["provider"],
            status=IntegrationStatus(row["status"]),
            credential_ref=row["credential_ref"],
            theme=Theme(row["theme"]),
            last_sync_at=_dt(row["last_sync_at"]),
            created_at=_dt(row["created_at"]),
        )

    @staticmethod
    def _row_to_calendar(row: sqlite3.Row) -> Calendar:
        return Calendar(
            id=row["id"],
            integration_id=row["integration_id"],
            provider_calendar_id=row["provider_calendar_id"],
            name=row["name"],
            timezone=row["timezone"],
            is_primary=bool(row["is_primary"]),
            is_active=bool(row["is_active"]),
        )

    def add_integration(
        self,
        user_id: int,
        provider: str,
        token_json: str,
        theme: Theme | None = None,
        status: IntegrationStatus = IntegrationStatus.ACTIVE,
    ) -> Integration:
        """Register an integration after a successful OAuth exchange."""
        if theme is None:
            from storytime.config import settings
            theme = Theme(settings.DEFAULT_THEME)
        now = utcnow()
        credential_ref = uuid.uuid4().hex
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO credentials (ref, token_json) VALUES (?, ?)",
                (credential_ref, token_json),
            )
            cursor = conn.execute(
                """
                INSERT INTO integrations
                    (user_id, provider, status, credential_ref, theme, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user_id, provider.lower(), status.value, credential_ref, theme.value, _ts(now)),
            )
            integration_id = cursor.lastrowid

        logger.info(
            "Integration #%d added: %s for user %d", integration_id, provider, user_id,
        )
        return Integration(
            id=integration_id,
            user_id=user_id,
            provider=provider.lower(),
            status=status,
            credential_ref=credential_ref,
            theme=theme,
            created_at=now,
        )

    def get_integration(self, integration_id: int) -> Integration | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM integrations WHERE id = ?", (integration_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_integration(row)

    def list_integrations(
        self,
        status: IntegrationStatus | None = None,
        user_id: int | None = None,
    ) -> list[Integration]:
        conditions: list[str] = []
        params: list = []
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(user_id)

        query = "SELECT * FROM integrations"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_integration(r) for r in rows]

    def set_status(self, integration_id: int, status: IntegrationStatus) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE integrations SET status = ? WHERE id = ?",
                (status.value, integration_id),
            )
        logger.info("Integration #%d status -> %s", integration_id, status.value)

    def mark_synced(self, integration_id: int, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE integrations SET last_sync_at = ? WHERE id = ?",
                (_ts(at), integration_id),
            )

    def deactivate(self, integration_id: int) -> bool:
        """Soft-deactivate on disconnect (status REVOKED)."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE integrations SET status = ? WHERE id = ? AND status != ?",
                (IntegrationStatus.REVOKED.value, integration_id, IntegrationStatus.REVOKED.value),
            )
        revoked = cursor.rowcount > 0
        if revoked:
            logger.info("Integration #%d revoked", integration_id)
        return revoked

    def get_credential_json(self, credential_ref: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT token_json FROM credentials WHERE ref = ?", (credential_ref,)
            ).fetchone()
        return row["token_json"] if row else None

    def set_credential_json(self, credential_ref: str, token_json: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE credentials SET token_json = ? WHERE ref = ?",
                (token_json, credential_ref),
            )

    def upsert_calendar(
        self,
        integration_id: int,
        provider_calendar_id: str,
        name: str,
        timezone_name: str = "UTC",
        is_primary: bool = False,
    ) -> Calendar:
        """Insert or refresh a calendar. New calendars start active only if primary.

        An existing calendar keeps the user's is_active toggle.
        """
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO calendars
                    (integration_id, provider_calendar_id, name, timezone, is_primary, is_active)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (integration_id, provider_calendar_id) DO UPDATE SET
                    name = excluded.name,
                    timezone = excluded.timezone,
                    is_primary = excluded.is_primary
                """,
                (
                    integration_id, provider_calendar_id, name, timezone_name,
                    int(is_primary), int(is_primary),
                ),
            )
            row = conn.execute(
                """
                SELECT * FROM calendars
                WHERE integration_id = ? AND provider_calendar_id = ?
                """,
                (integration_id, provider_calendar_id),
            ).fetchone()
        return self._row_to_calendar(row)

    def get_calendar(self, calendar_id: int) -> Calendar | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM calendars WHERE id = ?", (calendar_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_calendar(row)

    def list_calendars(
        self, integration_id: int, active_only: bool = False,
    ) -> list[Calendar]:
        query = "SELECT * FROM calendars WHERE integration_id = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY is_primary DESC, id"
        with self._connect() as conn:
            rows = conn.execute(query, (integration_id,)).fetchall()
        return [self._row_to_calendar(r) for r in rows]

    def set_calendar_active(self, calendar_id: int, active: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE calendars SET is_active = ? WHERE id = ?",
                (int(active), calendar_id),
            )
        logger.info("Calendar #%d is_active -> %s", calendar_id, active)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass
class EventFilter:
    """Query filter for EventDB.query (all fields optional)."""

    integration_id: int | None = None
    calendar_id: int | None = None
    start_from: datetime | None = None
    start_to: datetime | None = None
    include_cancelled: bool = False


@dataclass
class NewEvent:
    """Field bundle for an event the provider returned that we haven't stored."""

    calendar_id: int
    provider_event_id: str
    title: str
    description: str
    start_time: datetime
    end_time: datetime
    is_all_day: bool
    location: str | None
    meeting_link: str | None
    attendee_count: int | None
    status: EventStatus
    fingerprint: str


class EventDB(_SQLiteDB):
    """Reconciled copies of provider events."""

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            calendar_id=row["calendar_id"],
            provider_event_id=row["provider_event_id"],
            title=row["title"],
            description=row["description"],
            start_time=_dt(row["start_time"]),
            end_time=_dt(row["end_time"]),
            is_all_day=bool(row["is_all_day"]),
            location=row["location"],
            meeting_link=row["meeting_link"],
            attendee_count=row["attendee_count"],
            status=EventStatus(row["status"]),
            fingerprint=row["fingerprint"],
            updated_at=_dt(row["updated_at"]),
        )

    def get_event(self, event_id: int) -> Event | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM events WHERE id = ?", (event_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def list_for_calendar(self, calendar_id: int) -> list[Event]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE calendar_id = ? ORDER BY start_time, id",
                (calendar_id,),
            ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def query(self, flt: EventFilter) -> list[Event]:
        conditions: list[str] = []
        params: list = []
        if flt.integration_id is not None:
            conditions.append("c.integration_id = ?")
            params.append(flt.integration_id)
        if flt.calendar_id is not None:
            conditions.append("e.calendar_id = ?")
            params.append(flt.calendar_id)
        if flt.start_from is not None:
            conditions.append("e.start_time >= ?")
            params.append(_ts(flt.start_from))
        if flt.start_to is not None:
            conditions.append("e.start_time < ?")
            params.append(_ts(flt.start_to))
        if not flt.include_cancelled:
            conditions.append("e.status = ?")
            params.append(EventStatus.ACTIVE.value)

        query = "SELECT e.* FROM events e JOIN calendars c ON c.id = e.calendar_id"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY e.start_time, e.id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    def apply_reconciliation(
        self,
        inserts: list[NewEvent],
        updates: list[Event],
        cancellations: list[int],
    ) -> list[Event]:
        """Apply one sync cycle's writes in a single transaction.

        Returns the inserted events with their new ids.
        """
        now = utcnow()
        inserted: list[Event] = []
        with self._connect() as conn:
            for new in inserts:
                cursor = conn.execute(
                    """
                    INSERT INTO events
                        (calendar_id, provider_event_id, title, description,
                         start_time, end_time, is_all_day, location, meeting_link,
                         attendee_count, status, fingerprint, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        new.calendar_id, new.provider_event_id, new.title, new.description,
                        _ts(new.start_time), _ts(new.end_time), int(new.is_all_day),
                        new.location, new.meeting_link, new.attendee_count,
                        new.status.value, new.fingerprint, _ts(now),
                    ),
                )
                inserted.append(
                    Event(
                        id=cursor.lastrowid,
                        calendar_id=new.calendar_id,
                        provider_event_id=new.provider_event_id,
                        title=new.title,
                        description=new.description,
                        start_time=new.start_time,
                        end_time=new.end_time,
                        is_all_day=new.is_all_day,
                        location=new.location,
                        meeting_link=new.meeting_link,
                        attendee_count=new.attendee_count,
                        status=new.status,
                        fingerprint=new.fingerprint,
                        updated_at=now,
                    )
                )

            for ev in updates:
                conn.execute(
                    """
                    UPDATE events SET
                        title = ?, description = ?, start_time = ?, end_time = ?,
                        is_all_day = ?, location = ?, meeting_link = ?,
                        attendee_count = ?, status = ?, fingerprint = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        ev.title, ev.description, _ts(ev.start_time), _ts(ev.end_time),
                        int(ev.is_all_day), ev.location, ev.meeting_link,
                        ev.attendee_count, ev.status.value, ev.fingerprint, _ts(now),
                        ev.id,
                    ),
                )
                ev.updated_at = now

            if cancellations:
                conn.executemany(
                    "UPDATE events SET status = ?, updated_at = ? WHERE id = ?",
                    [(EventStatus.CANCELLED.value, _ts(now), eid) for eid in cancellations],
                )

        logger.info(
            "Reconciled events: %d inserted, %d updated, %d cancelled",
            len(inserts), len(updates), len(cancellations),
        )
        return inserted


# ---------------------------------------------------------------------------
# Storylines
# ---------------------------------------------------------------------------


@dataclass
class PriorStory:
    """A past storyline used as continuity context in prompts."""

    event_title: str
    story_text: str
    event_start: datetime


class StorylineDB(_SQLiteDB):
    """Generated storylines. Rows are superseded, never edited."""

    @staticmethod
    def _row_to_storyline(row: sqlite3.Row) -> Storyline:
        return Storyline(
            id=row["id"],
            event_id=row["event_id"],
            theme=Theme(row["theme"]),
            story_text=row["story_text"],
            plain_text=row["plain_text"],
            emoji=row["emoji"],
            provider=row["provider"],
            model=row["model"],
            tokens_used=row["tokens_used"],
            fingerprint=row["fingerprint"],
            created_at=_dt(row["created_at"]),
            expires_at=_dt(row["expires_at"]),
            is_active=bool(row["is_active"]),
        )

    def get_active(self, event_id: int, theme: Theme) -> Storyline | None:
        """Return the active record for (event, theme), expired or not."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM storylines WHERE event_id = ? AND theme = ? AND is_active = 1",
                (event_id, theme.value),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_storyline(row)

    def list_for_event(self, event_id: int) -> list[Storyline]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM storylines WHERE event_id = ? ORDER BY id",
                (event_id,),
            ).fetchall()
        return [self._row_to_storyline(r) for r in rows]

    def supersede(
        self,
        event_id: int,
        theme: Theme,
        story_text: str,
        plain_text: str,
        emoji: str,
        provider: str,
        fingerprint: str,
        created_at: datetime,
        expires_at: datetime,
        model: str | None = None,
        tokens_used: int | None = None,
    ) -> Storyline:
        """Deactivate any prior record for (event, theme) and insert the new one."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE storylines SET is_active = 0 WHERE event_id = ? AND theme = ? AND is_active = 1",
                (event_id, theme.value),
            )
            cursor = conn.execute(
                """
                INSERT INTO storylines
                    (event_id, theme, story_text, plain_text, emoji, provider, model,
                     tokens_used, fingerprint, created_at, expires_at, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                """,
                (
                    event_id, theme.value, story_text, plain_text, emoji, provider, model,
                    tokens_used, fingerprint, _ts(created_at), _ts(expires_at),
                ),
            )
            storyline_id = cursor.lastrowid

        logger.info(
            "Storyline #%d saved for event #%d (%s via %s)",
            storyline_id, event_id, theme.value, provider,
        )
        return Storyline(
            id=storyline_id,
            event_id=event_id,
            theme=theme,
            story_text=story_text,
            plain_text=plain_text,
            emoji=emoji,
            provider=provider,
            model=model,
            tokens_used=tokens_used,
            fingerprint=fingerprint,
            created_at=created_at,
            expires_at=expires_at,
            is_active=True,
        )

    def recent_for_user(
        self,
        user_id: int,
        theme: Theme,
        limit: int = 3,
        exclude_event_id: int | None = None,
    ) -> list[PriorStory]:
        """Most recent active storylines of a user in a theme, newest first."""
        query = """
            SELECT e.title AS event_title, s.story_text, e.start_time AS event_start
            FROM storylines s
            JOIN events e ON e.id = s.event_id
            JOIN calendars c ON c.id = e.calendar_id
            JOIN integrations i ON i.id = c.integration_id
            WHERE i.user_id = ? AND s.theme = ? AND s.is_active = 1
        """
        params: list = [user_id, theme.value]
        if exclude_event_id is not None:
            query += " AND s.event_id != ?"
            params.append(exclude_event_id)
        query += " ORDER BY s.created_at DESC, s.id DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            PriorStory(
                event_title=r["event_title"],
                story_text=r["story_text"],
                event_start=_dt(r["event_start"]),
            )
            for r in rows
        ]

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete expired or superseded storylines. Returns the number removed."""
        now = now or utcnow()
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM storylines WHERE expires_at <= ? OR is_active = 0",
                (_ts(now),),
            )
        removed = cursor.rowcount
        if removed:
            logger.info("Purged %d expired storyline(s)", removed)
        return removed


# ---------------------------------------------------------------------------
# Sync audit trail
# ---------------------------------------------------------------------------


class SyncStatusDB(_SQLiteDB):
    """Append-only record of sync attempts."""

    @staticmethod
    def _row_to_status(row: sqlite3.Row) -> SyncStatus:
        return SyncStatus(
            id=row["id"],
            integration_id=row["integration_id"],
            outcome=SyncOutcome(row["outcome"]),
            timestamp=_dt(row["timestamp"]),
            events_processed=row["events_processed"],
            error=row["error"],
        )

    def append(
        self,
        integration_id: int,
        outcome: SyncOutcome,
        events_processed: int = 0,
        error: str | None = None,
        timestamp: datetime | None = None,
    ) -> SyncStatus:
        timestamp = timestamp or utcnow()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_status
                    (integration_id, outcome, timestamp, events_processed, error)
                VALUES (?, ?, ?, ?, ?)
                """,
                (integration_id, outcome.value, _ts(timestamp), events_processed, error),
            )
        return SyncStatus(
            id=cursor.lastrowid,
            integration_id=integration_id,
            outcome=outcome,
            timestamp=timestamp,
            events_processed=events_processed,
            error=error,
        )

    def latest(self, integration_id: int) -> SyncStatus | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_status WHERE integration_id = ? ORDER BY id DESC LIMIT 1",
                (integration_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_status(row)

    def history(self, integration_id: int, limit: int = 20) -> list[SyncStatus]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_status WHERE integration_id = ? ORDER BY id DESC LIMIT ?",
                (integration_id, limit),
            ).fetchall()
        return [self._row_to_status(r) for r in rows]


# ---------------------------------------------------------------------------
# Notification log
# ---------------------------------------------------------------------------


class NotificationDB(_SQLiteDB):
    """Persisted schedule. UNIQUE (event_id, theme) is the idempotency key."""

    @staticmethod
    def _row_to_log(row: sqlite3.Row) -> NotificationLog:
        return NotificationLog(
            id=row["id"],
            event_id=row["event_id"],
            theme=Theme(row["theme"]),
            user_id=row["user_id"],
            fire_at=_dt(row["fire_at"]),
            outcome=DeliveryOutcome(row["outcome"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            delivered_at=_dt(row["delivered_at"]),
        )

    def get(self, event_id: int, theme: Theme) -> NotificationLog | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM notification_log WHERE event_id = ? AND theme = ?",
                (event_id, theme.value),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_log(row)

    def arm(
        self, event_id: int, theme: Theme, user_id: int, fire_at: datetime,
    ) -> NotificationLog:
        """Create or re-arm the PENDING entry for (event, theme).

        A DELIVERED entry is returned untouched.
        """
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO notification_log (event_id, theme, user_id, fire_at, outcome, attempts)
                VALUES (?, ?, ?, ?, 'PENDING', 0)
                ON CONFLICT (event_id, theme) DO UPDATE SET
                    user_id = excluded.user_id,
                    fire_at = excluded.fire_at,
                    outcome = 'PENDING',
                    attempts = 0,
                    last_error = NULL
                WHERE notification_log.outcome != 'DELIVERED'
                """,
                (event_id, theme.value, user_id, _ts(fire_at)),
            )
            row = conn.execute(
                "SELECT * FROM notification_log WHERE event_id = ? AND theme = ?",
                (event_id, theme.value),
            ).fetchone()
        return self._row_to_log(row)

    def list_pending(self) -> list[NotificationLog]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM notification_log WHERE outcome = 'PENDING' ORDER BY fire_at, id"
            ).fetchall()
        return [self._row_to_log(r) for r in rows]

    def record_attempt(self, log: NotificationLog) -> None:
        """Persist outcome, attempt count and (re-armed) fire time of a log entry."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE notification_log SET
                    fire_at = ?, outcome = ?, attempts = ?, last_error = ?, delivered_at = ?
                WHERE id = ?
                """,
                (
                    _ts(log.fire_at), log.outcome.value, log.attempts,
                    log.last_error, _ts(log.delivered_at), log.id,
                ),
            )

    def cancel_for_event(self, event_id: int) -> int:
        """Mark every PENDING entry of an event CANCELLED."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE notification_log SET outcome = 'CANCELLED' "
                "WHERE event_id = ? AND outcome = 'PENDING'",
                (event_id,),
            )
        return cursor.rowcount
