"""Tests for the calendar adapter factory."""

import pytest

from conftest import VALID_TOKEN
from storytime.adapters.calendar_factory import create_calendar_adapter, parse_credential


class TestCreateCalendarAdapter:
    def test_returns_google_adapter(self):
        adapter = create_calendar_adapter("google")
        from storytime.adapters.google_calendar import GoogleCalendarAdapter
        assert isinstance(adapter, GoogleCalendarAdapter)

    def test_case_insensitive(self):
        adapter = create_calendar_adapter("Google")
        from storytime.adapters.google_calendar import GoogleCalendarAdapter
        assert isinstance(adapter, GoogleCalendarAdapter)

    def test_unknown_provider_raises(self):
        with pytest.raises(ValueError, match="Unknown calendar provider"):
            create_calendar_adapter("nonexistent")


class TestParseCredential:
    def test_google_token(self):
        credential = parse_credential("google", VALID_TOKEN)
        assert credential.token_json == VALID_TOKEN
        assert credential.can_refresh is True

    def test_unknown_provider_raises(self):
        with pytest.raises(ValueError, match="Unknown calendar provider"):
            parse_credential("outlook", VALID_TOKEN)
