"""
StoryTime — Google Calendar credentials.

Turns a stored authorized-user token JSON into a Calendar API v3 service.
The OAuth consent flow itself happens elsewhere; here the token is an
opaque bearer with an expiry that we respect.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from storytime.ports.calendar_port import AuthExpired, ProviderCredential

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]


def parse_credential(token_json: str) -> ProviderCredential:
    """Read expiry and refreshability out of a stored token JSON."""
    try:
        info = json.loads(token_json)
    except (TypeError, ValueError) as exc:
        raise AuthExpired(f"Stored Google credential is not valid JSON: {exc}") from exc

    expires_at = None
    expiry = info.get("expiry")
    if expiry:
        expires_at = datetime.fromisoformat(expiry.replace("Z", "+00:00"))
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

    return ProviderCredential(
        token_json=token_json,
        expires_at=expires_at,
        can_refresh=bool(info.get("refresh_token")),
    )


def _load_credentials(credential: ProviderCredential) -> Credentials:
    from storytime.config import settings

    info = json.loads(credential.token_json)
    # Tokens exported without client info still refresh with the app's client.
    info.setdefault("client_id", settings.GOOGLE_CLIENT_ID)
    info.setdefault("client_secret", settings.GOOGLE_CLIENT_SECRET)
    if "refresh_token" in info:
        return Credentials.from_authorized_user_info(info, SCOPES)
    return Credentials(token=info.get("token"), scopes=SCOPES)


def get_calendar_service_for_credential(
    credential: ProviderCredential, now: datetime | None = None,
):
    """Build a Google Calendar API service from a stored credential.

    Refreshes the token if expired. Raises AuthExpired when the credential
    is expired and cannot be refreshed, or the refresh is rejected.
    """
    now = now or datetime.now(timezone.utc)
    if credential.is_expired(now) and not credential.can_refresh:
        raise AuthExpired("Google credential expired and has no refresh token")

    creds = _load_credentials(credential)
    if credential.is_expired(now) or (creds.expired and creds.refresh_token):
        try:
            creds.refresh(Request())
            logger.info("Google token refreshed")
        except RefreshError as exc:
            raise AuthExpired(f"Google token refresh rejected: {exc}") from exc

    return build("calendar", "v3", credentials=creds, cache_discovery=False)
