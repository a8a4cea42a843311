"""
StoryTime — Story response decoder.

AI providers return loosely structured text. This module turns it into a
tagged result: Parsed (schema-valid payload) or Unparsable (with reason).
Nothing downstream touches the raw JSON.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Union

from pydantic import BaseModel, ValidationError, field_validator

logger = logging.getLogger(__name__)

STORY_MIN_CHARS = 30
STORY_MAX_CHARS = 800

_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class StoryPayload(BaseModel):
    """Expected AI response shape.

    JSON example:
    {
        "story_text": "👑 Hail, Noble Champion! ...",
        "emoji": "👑",
        "plain_text": "Budget Planning Meeting at 3:00 PM"
    }
    """
    story_text: str
    emoji: str
    plain_text: str

    @field_validator("story_text", "emoji", "plain_text", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("story_text")
    @classmethod
    def story_length(cls, v: str) -> str:
        if not STORY_MIN_CHARS <= len(v) <= STORY_MAX_CHARS:
            raise ValueError(
                f"story_text must be {STORY_MIN_CHARS}-{STORY_MAX_CHARS} characters, got {len(v)}"
            )
        return v

    @field_validator("emoji", "plain_text")
    @classmethod
    def not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("must not be empty")
        return v


@dataclass(frozen=True)
class Parsed:
    payload: StoryPayload


@dataclass(frozen=True)
class Unparsable:
    reason: str
    raw: str


ParseResult = Union[Parsed, Unparsable]


def _clean_llm_response(raw_text: str) -> str:
    """Remove markdown code fences around the JSON body."""
    cleaned = raw_text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def _extract_object(text: str) -> dict | None:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        # Prose around the object ("Here is the JSON: {...}")
        match = _OBJECT_RE.search(text)
        if match is None:
            return None
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            return None
    return data if isinstance(data, dict) else None


def parse_story_response(raw_text: str | None) -> ParseResult:
    """Decode provider output into Parsed | Unparsable. Never raises."""
    if not raw_text or not raw_text.strip():
        return Unparsable("empty response", raw_text or "")

    data = _extract_object(_clean_llm_response(raw_text))
    if data is None:
        logger.warning("AI response is not a JSON object: '%s'", raw_text[:200])
        return Unparsable("no JSON object found", raw_text)

    try:
        return Parsed(StoryPayload.model_validate(data))
    except ValidationError as exc:
        reason = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        logger.warning("AI response failed schema validation: %s", reason)
        return Unparsable(reason, raw_text)
