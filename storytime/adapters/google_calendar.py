"""Google Calendar adapter — implements CalendarProviderPort for Google Calendar API.

All Google-specific logic lives here. Core modules never import this directly;
they depend on the CalendarProviderPort protocol.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, time, timezone
from typing import Any, AsyncIterator, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.errors import HttpError

from storytime.core.retry import OperationClass, run_with_retry
from storytime.integrations.google_auth import get_calendar_service_for_credential
from storytime.ports.calendar_port import (
    AuthExpired,
    CalendarError,
    NetworkFailure,
    NotFound,
    ProviderCalendar,
    ProviderCredential,
    ProviderEvent,
    SyncWindow,
    Throttled,
)

logger = logging.getLogger(__name__)

_PAGE_SIZE = 250
_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


def _http_error_reason(exc: HttpError) -> str:
    try:
        details = exc.error_details or []
    except AttributeError:
        details = []
    for detail in details:
        if isinstance(detail, dict) and detail.get("reason"):
            return detail["reason"]
    return ""


def _translate_http_error(exc: HttpError) -> CalendarError:
    """Map a Google API HttpError onto the calendar error taxonomy."""
    status = int(getattr(exc.resp, "status", 0) or 0)
    reason = _http_error_reason(exc)

    if status == 429 or (status == 403 and reason in _RATE_LIMIT_REASONS):
        retry_after = None
        header = exc.resp.get("retry-after") if hasattr(exc.resp, "get") else None
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        return Throttled(f"Google Calendar rate limit ({reason or status})", retry_after=retry_after)
    if status in (401, 403):
        return AuthExpired(f"Google Calendar rejected credential (HTTP {status} {reason})")
    if status in (404, 410):
        return NotFound(f"Google Calendar resource not found (HTTP {status})")
    if status >= 500:
        return NetworkFailure(f"Google Calendar server error (HTTP {status})")
    return CalendarError(f"Google Calendar API error (HTTP {status}): {exc}")


def _parse_event_time(value: dict, tz: ZoneInfo) -> tuple[datetime, bool]:
    """Return (UTC instant, is_all_day) for a Google start/end object."""
    if value.get("dateTime"):
        dt = datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=tz)
        return dt.astimezone(timezone.utc), False
    if value.get("date"):
        day = date.fromisoformat(value["date"])
        return datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc), True
    raise ValueError(f"Event time has neither dateTime nor date: {value!r}")


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown calendar timezone %r, using UTC", name)
        return ZoneInfo("UTC")


def normalize_event(item: dict, calendar_tz: str | None = None) -> ProviderEvent:
    """Convert a Google Calendar API event item into a ProviderEvent."""
    tz = _zone(calendar_tz)
    start, is_all_day = _parse_event_time(item.get("start", {}), tz)
    end, _ = _parse_event_time(item.get("end", item.get("start", {})), tz)
    attendees = item.get("attendees")
    return ProviderEvent(
        provider_event_id=item["id"],
        title=item.get("summary") or "Untitled Event",
        description=item.get("description") or "",
        start_time=start,
        end_time=end,
        is_all_day=is_all_day,
        location=item.get("location"),
        meeting_link=item.get("hangoutLink") or item.get("htmlLink"),
        attendee_count=len(attendees) if attendees is not None else None,
        cancelled=(item.get("status") or "confirmed").lower() == "cancelled",
    )


class GoogleCalendarAdapter:
    """Google Calendar implementation of CalendarProviderPort."""

    def __init__(
        self,
        service_factory: Callable[[ProviderCredential], Any] = get_calendar_service_for_credential,
    ) -> None:
        self._service_factory = service_factory

    async def _service(self, credential: ProviderCredential) -> Any:
        try:
            return await asyncio.to_thread(self._service_factory, credential)
        except TransportError as exc:
            raise NetworkFailure(f"Google auth transport error: {exc}") from exc

    async def _execute(self, request: Any, label: str) -> dict:
        """Execute one API request with translation and external-fetch retries."""

        async def _once() -> dict:
            try:
                return await asyncio.to_thread(request.execute)
            except HttpError as exc:
                raise _translate_http_error(exc) from exc
            except RefreshError as exc:
                raise AuthExpired(f"Google token refresh rejected: {exc}") from exc
            except (TransportError, ConnectionError, TimeoutError) as exc:
                raise NetworkFailure(f"Google Calendar network error: {exc}") from exc

        return await run_with_retry(
            OperationClass.EXTERNAL_FETCH,
            _once,
            retry_on=(Throttled, NetworkFailure),
            retry_after=lambda exc: getattr(exc, "retry_after", None),
            label=label,
        )

    async def list_calendars(
        self, credential: ProviderCredential
    ) -> AsyncIterator[ProviderCalendar]:
        service = await self._service(credential)
        page_token: str | None = None
        while True:
            request = service.calendarList().list(
                pageToken=page_token, maxResults=_PAGE_SIZE,
            )
            data = await self._execute(request, "calendarList.list")
            for item in data.get("items", []):
                yield ProviderCalendar(
                    provider_calendar_id=item["id"],
                    name=item.get("summaryOverride") or item.get("summary") or item["id"],
                    timezone=item.get("timeZone") or "UTC",
                    is_primary=bool(item.get("primary", False)),
                )
            page_token = data.get("nextPageToken")
            if not page_token:
                break

    async def list_events(
        self,
        credential: ProviderCredential,
        provider_calendar_id: str,
        window: SyncWindow,
    ) -> AsyncIterator[ProviderEvent]:
        service = await self._service(credential)
        page_token: str | None = None
        fetched = 0
        while True:
            request = service.events().list(
                calendarId=provider_calendar_id,
                timeMin=window.start.isoformat(),
                timeMax=window.end.isoformat(),
                singleEvents=True,
                orderBy="startTime",
                maxResults=_PAGE_SIZE,
                pageToken=page_token,
            )
            data = await self._execute(request, f"events.list {provider_calendar_id}")
            calendar_tz = data.get("timeZone")
            for item in data.get("items", []):
                try:
                    event = normalize_event(item, calendar_tz)
                except (KeyError, ValueError) as exc:
                    logger.warning(
                        "Skipping malformed Google event %s: %s", item.get("id"), exc,
                    )
                    continue
                fetched += 1
                yield event
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        logger.info(
            "Fetched %d event(s) from Google calendar %s", fetched, provider_calendar_id,
        )
