"""
StoryTime — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from storytime/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)

_AI_KEY_FIELDS = {
    "gemini": "GEMINI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "cohere": "COHERE_API_KEY",
}


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # SQLite
    DATABASE_PATH: str = "data/storytime.db"

    # Sync
    SYNC_WINDOW_DAYS: int = 2
    SYNC_INTERVAL_MINUTES: int = 60

    # Notifications
    NOTIFICATION_LEAD_MINUTES: int = 15
    TICK_INTERVAL_SECONDS: int = 60

    # Storylines
    STORYLINE_CACHE_HOURS: int = 24
    STORY_CONTEXT_LIMIT: int = 3
    DEFAULT_THEME: str = "FANTASY"
    DEFAULT_LOCALE: str = "en-US"
    TIMEZONE: str = "UTC"

    # AI — ordered fallback chain (gemini, anthropic, openai, cohere)
    AI_PROVIDERS: list[str] = ["gemini"]
    AI_MODEL: str = ""          # empty → smart default per provider
    AI_MAX_TOKENS: int = 300
    AI_TEMPERATURE: float = 0.8
    AI_MAX_CONCURRENCY: int = 4
    GEMINI_API_KEY: str = ""
    ANTHROPIC_API_KEY: str = ""
    OPENAI_API_KEY: str = ""
    COHERE_API_KEY: str = ""

    # Retry ceilings (total attempts per operation class)
    RETRY_EXTERNAL_FETCH: int = 3
    RETRY_AI_GENERATION: int = 2
    RETRY_NOTIFICATION: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 60.0

    # Chat sink: "telegram" | "slack"
    CHAT_SINK: str = "telegram"
    TELEGRAM_BOT_TOKEN: str = ""
    SLACK_BOT_TOKEN: str = ""
    SLACK_CHANNEL: str = ""     # empty → post to the integration owner's id

    # Google Calendar OAuth client (token refresh only)
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""

    # Security
    ALLOWED_USER_IDS: list[int] = []

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("AI_PROVIDERS", mode="before")
    @classmethod
    def parse_providers(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            v = v.split(",")
        return [p.strip().lower() for p in v if p and p.strip()]

    @field_validator("DEFAULT_THEME", mode="before")
    @classmethod
    def parse_theme(cls, v: str) -> str:
        return v.strip().upper()

    def api_key_for(self, provider: str) -> str:
        """Return the configured API key for an AI provider ('' if none)."""
        field_name = _AI_KEY_FIELDS.get(provider.lower())
        return getattr(self, field_name) if field_name else ""


def _is_placeholder(value: str) -> bool:
    return not value or value.startswith("your-")


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    env = {
        name: os.environ[name]
        for name in Settings.model_fields
        if os.environ.get(name, "") != ""
    }
    loaded = Settings(**env)

    if not any(not _is_placeholder(loaded.api_key_for(p)) for p in loaded.AI_PROVIDERS):
        print(
            "ERROR: no API key set in .env for any of AI_PROVIDERS="
            f"{','.join(loaded.AI_PROVIDERS)}",
            file=sys.stderr,
        )
        sys.exit(1)

    # The Telegram bot hosts the jobs and commands whatever the sink is.
    if _is_placeholder(loaded.TELEGRAM_BOT_TOKEN):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)
    if loaded.CHAT_SINK.lower() == "slack" and _is_placeholder(loaded.SLACK_BOT_TOKEN):
        print("ERROR: SLACK_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return loaded


# Singleton — imported by all other modules as:
#   from storytime.config import settings
settings = _load_settings()
