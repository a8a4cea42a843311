"""
StoryTime — AI Provider Registry.

Each backend is a capability set {generate, validate_credential,
default_model, max_tokens} registered under a name; the storyline
generator picks variants by configuration (AI_PROVIDERS).
Supports: gemini, anthropic, openai, cohere.

SDK exceptions are translated into the StoryGenerationError family so
callers never see provider-specific error types.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from storytime.ports.story_port import (
    InvalidCredential,
    MalformedRequest,
    NetworkFailure,
    QuotaExceeded,
    RateLimited,
    StoryGenerationError,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a creative story generator. CRITICAL: You MUST respond with ONLY "
    "valid JSON containing exactly these fields: story_text, emoji, and "
    "plain_text. Do not include any explanations, markdown, or text outside "
    "the JSON object."
)


@dataclass
class Completion:
    """Raw provider output. tokens_used is informational and may be missing."""

    text: str
    tokens_used: int | None = None


# Type alias for provider implementations:
#   (api_key, model, system, user_message, max_tokens, temperature) -> Completion
_CompleteFn = Callable[[str, str, str, str, int, float], Awaitable[Completion]]


# ---------------------------------------------------------------------------
# Provider implementations
# ---------------------------------------------------------------------------


async def _complete_gemini(
    api_key: str, model: str, system: str, user_message: str, max_tokens: int, temperature: float,
) -> Completion:
    import google.generativeai as genai

    genai.configure(api_key=api_key)
    gm = genai.GenerativeModel(
        model_name=model,
        system_instruction=system,
    )
    response = await gm.generate_content_async(
        user_message,
        generation_config=genai.types.GenerationConfig(
            max_output_tokens=max_tokens, temperature=temperature,
        ),
    )
    usage = getattr(response, "usage_metadata", None)
    return Completion(
        text=response.text,
        tokens_used=getattr(usage, "total_token_count", None),
    )


async def _complete_anthropic(
    api_key: str, model: str, system: str, user_message: str, max_tokens: int, temperature: float,
) -> Completion:
    import anthropic

    client = anthropic.AsyncAnthropic(api_key=api_key)
    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        system=system,
        messages=[{"role": "user", "content": user_message}],
    )
    usage = getattr(response, "usage", None)
    tokens = None
    if usage is not None:
        tokens = (usage.input_tokens or 0) + (usage.output_tokens or 0)
    return Completion(text=response.content[0].text, tokens_used=tokens)


async def _complete_openai(
    api_key: str, model: str, system: str, user_message: str, max_tokens: int, temperature: float,
) -> Completion:
    from openai import AsyncOpenAI

    client = AsyncOpenAI(api_key=api_key)
    response = await client.chat.completions.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user_message},
        ],
    )
    usage = getattr(response, "usage", None)
    return Completion(
        text=response.choices[0].message.content or "",
        tokens_used=getattr(usage, "total_tokens", None),
    )


async def _complete_cohere(
    api_key: str, model: str, system: str, user_message: str, max_tokens: int, temperature: float,
) -> Completion:
    import cohere

    client = cohere.AsyncClientV2(api_key=api_key)
    response = await client.chat(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user_message},
        ],
    )
    tokens = None
    usage = getattr(response, "usage", None)
    billed = getattr(usage, "billed_units", None)
    if billed is not None:
        tokens = int((billed.input_tokens or 0) + (billed.output_tokens or 0))
    return Completion(text=response.message.content[0].text, tokens_used=tokens)


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


def _status_code(exc: BaseException) -> int | None:
    # anthropic/openai/cohere expose status_code; google.api_core uses code
    for attr in ("status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_error(provider: str, exc: BaseException) -> StoryGenerationError:
    """Translate an SDK exception into the generation failure taxonomy."""
    if isinstance(exc, StoryGenerationError):
        return exc

    message = str(exc) or type(exc).__name__
    lowered = message.lower()
    status = _status_code(exc)

    if status == 401:
        return InvalidCredential(f"{provider}: invalid API key", provider)
    if status == 429:
        if "quota" in lowered or "billing" in lowered:
            return QuotaExceeded(f"{provider}: quota exceeded: {message}", provider)
        return RateLimited(f"{provider}: rate limited: {message}", provider)
    if status == 403:
        if "api key" in lowered or "permission" in lowered:
            return InvalidCredential(f"{provider}: credential rejected: {message}", provider)
        return QuotaExceeded(f"{provider}: quota exceeded: {message}", provider)
    if status in (400, 404, 413, 422):
        if "api key" in lowered:
            return InvalidCredential(f"{provider}: invalid API key: {message}", provider)
        return MalformedRequest(f"{provider}: request rejected: {message}", provider)
    if status is not None and status >= 500:
        return NetworkFailure(f"{provider}: server error {status}: {message}", provider)

    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, ConnectionError, TimeoutError)):
        return NetworkFailure(f"{provider}: network failure: {message}", provider)
    name = type(exc).__name__
    if "Connection" in name or "Timeout" in name:
        return NetworkFailure(f"{provider}: network failure: {message}", provider)

    return NetworkFailure(f"{provider}: unexpected error {name}: {message}", provider)


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StoryProvider:
    """Capability set of one AI backend."""

    name: str
    complete_fn: _CompleteFn
    default_model: str
    max_tokens: int

    async def generate(
        self,
        api_key: str,
        system: str,
        user_message: str,
        model: str = "",
        max_tokens: int = 300,
        temperature: float = 0.8,
    ) -> Completion:
        """Send a prompt and return the raw completion.

        Raises StoryGenerationError subclasses only.
        """
        if not api_key or not api_key.strip():
            raise InvalidCredential(f"{self.name}: API key is required", self.name)
        if max_tokens < 1 or max_tokens > self.max_tokens:
            raise MalformedRequest(
                f"{self.name}: max_tokens must be between 1 and {self.max_tokens}", self.name,
            )
        try:
            return await self.complete_fn(
                api_key, model or self.default_model, system, user_message, max_tokens, temperature,
            )
        except (asyncio.CancelledError, StoryGenerationError):
            raise
        except Exception as exc:
            raise classify_error(self.name, exc) from exc

    async def validate_credential(self, api_key: str) -> bool:
        """Make a tiny request to check whether the key is accepted."""
        try:
            await self.generate(api_key, "Reply with OK.", "ping", max_tokens=5, temperature=0)
            return True
        except StoryGenerationError as exc:
            logger.warning("API key validation failed for %s: %s", self.name, exc)
            return False


PROVIDERS: dict[str, StoryProvider] = {
    "gemini":    StoryProvider("gemini",    _complete_gemini,    "gemini-2.0-flash",          8192),
    "anthropic": StoryProvider("anthropic", _complete_anthropic, "claude-haiku-4-5-20251001", 4096),
    "openai":    StoryProvider("openai",    _complete_openai,    "gpt-4o-mini",               4096),
    "cohere":    StoryProvider("cohere",    _complete_cohere,    "command-a-03-2025",         4096),
}


def get_provider(name: str) -> StoryProvider:
    """Look up a provider variant by configured name."""
    key = name.lower()
    if key not in PROVIDERS:
        raise ValueError(
            f"Unknown AI provider {name!r}. Supported: {', '.join(PROVIDERS)}"
        )
    return PROVIDERS[key]
