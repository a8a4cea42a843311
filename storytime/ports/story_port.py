"""Story port — request/response shapes and failure kinds for storyline generation.

Every AI backend variant raises one of the StoryGenerationError subclasses;
callers decide on retry and fallback from the class alone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from storytime.data.models import Theme


class StoryGenerationError(Exception):
    """Base class for storyline generation failures."""

    retryable = False

    def __init__(self, message: str, provider: str = "") -> None:
        super().__init__(message)
        self.provider = provider


class InvalidCredential(StoryGenerationError):
    """API key rejected. Terminal for this provider."""


class QuotaExceeded(StoryGenerationError):
    """Account quota or billing limit reached. Terminal for this provider."""


class MalformedRequest(StoryGenerationError):
    """Provider rejected the request shape. Terminal for this provider."""


class RateLimited(StoryGenerationError):
    retryable = True


class NetworkFailure(StoryGenerationError):
    retryable = True


class UnparsableResponse(StoryGenerationError):
    """Output did not decode into the story schema. Retried, but bounded."""

    retryable = True

    def __init__(self, message: str, provider: str = "", raw: str = "") -> None:
        super().__init__(message, provider)
        self.raw = raw


class AllProvidersFailed(StoryGenerationError):
    """Every provider in the fallback chain failed for one request."""

    def __init__(self, errors: list[StoryGenerationError]) -> None:
        summary = "; ".join(f"{e.provider}: {type(e).__name__}: {e}" for e in errors)
        super().__init__(f"All AI providers failed ({summary})", provider="")
        self.errors = errors


@dataclass(frozen=True)
class PreviousStory:
    event_title: str
    story_text: str
    event_start: datetime


@dataclass(frozen=True)
class StoryContext:
    """Event facts and user preferences that shape one storyline."""

    event_title: str
    start_time: datetime
    end_time: datetime
    theme: Theme
    event_description: str = ""
    location: str | None = None
    attendee_count: int | None = None
    meeting_link: str | None = None
    locale: str = "en-US"
    timezone: str = "UTC"
    previous_stories: tuple[PreviousStory, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class StoryRequest:
    prompt: str
    api_key: str
    model: str = ""
    max_tokens: int = 300
    temperature: float = 0.8


@dataclass(frozen=True)
class GeneratedStory:
    story_text: str
    plain_text: str
    emoji: str
    provider: str
    model: str = ""
    tokens_used: int | None = None
