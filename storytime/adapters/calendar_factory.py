"""Calendar adapter factory — creates the right provider client for an integration."""

from __future__ import annotations

from storytime.ports.calendar_port import CalendarProviderPort, ProviderCredential


def create_calendar_adapter(provider: str) -> CalendarProviderPort:
    """Return the calendar adapter matching an integration's provider kind."""
    provider = provider.lower()

    if provider == "google":
        from storytime.adapters.google_calendar import GoogleCalendarAdapter

        return GoogleCalendarAdapter()

    raise ValueError(f"Unknown calendar provider: {provider!r}")


def parse_credential(provider: str, token_json: str) -> ProviderCredential:
    """Decode a stored token into the provider's opaque credential."""
    provider = provider.lower()

    if provider == "google":
        from storytime.integrations.google_auth import parse_credential as parse_google

        return parse_google(token_json)

    raise ValueError(f"Unknown calendar provider: {provider!r}")
