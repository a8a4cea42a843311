"""
StoryTime — Storyline Generator.

StorylineGenerator drives one provider variant: prompt → completion →
schema decode, retrying transient and unparsable outcomes up to the
ai-generation ceiling. ProviderChain walks the configured providers in
order and falls back to the next one when a provider gives up.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from storytime.core.llm import SYSTEM_PROMPT, StoryProvider, get_provider
from storytime.core.retry import OperationClass, RetryPolicy, run_with_retry
from storytime.core.story_parser import Unparsable, parse_story_response
from storytime.core.themes import build_prompt
from storytime.ports.story_port import (
    AllProvidersFailed,
    GeneratedStory,
    NetworkFailure,
    RateLimited,
    StoryContext,
    StoryGenerationError,
    StoryRequest,
    UnparsableResponse,
)

logger = logging.getLogger(__name__)

_RETRYABLE = (RateLimited, NetworkFailure, UnparsableResponse)


class StorylineGenerator:
    """One configured AI backend plus its credential and model parameters."""

    def __init__(
        self,
        provider: StoryProvider,
        api_key: str,
        model: str = "",
        max_tokens: int = 300,
        temperature: float = 0.8,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self._api_key = api_key
        self._model = model or provider.default_model
        self._max_tokens = min(max_tokens, provider.max_tokens)
        self._temperature = temperature
        self._policy = policy
        self._sleep = sleep

    @property
    def name(self) -> str:
        return self.provider.name

    def make_request(self, prompt: str) -> StoryRequest:
        return StoryRequest(
            prompt=prompt,
            api_key=self._api_key,
            model=self._model,
            max_tokens=self._max_tokens,
            temperature=self._temperature,
        )

    async def _attempt(self, request: StoryRequest) -> GeneratedStory:
        completion = await self.provider.generate(
            request.api_key,
            SYSTEM_PROMPT,
            request.prompt,
            model=request.model,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
        )
        result = parse_story_response(completion.text)
        if isinstance(result, Unparsable):
            raise UnparsableResponse(
                f"{self.name}: unparsable story response ({result.reason})",
                self.name,
                raw=result.raw,
            )
        payload = result.payload
        return GeneratedStory(
            story_text=payload.story_text,
            plain_text=payload.plain_text,
            emoji=payload.emoji,
            provider=self.name,
            model=request.model or self.provider.default_model,
            tokens_used=completion.tokens_used,
        )

    async def generate_story(
        self, request: StoryRequest, context: StoryContext,
    ) -> GeneratedStory:
        """Generate one storyline with this provider.

        RateLimited, NetworkFailure and UnparsableResponse are retried up to
        the ai-generation ceiling; other failures propagate at once.
        """
        story = await run_with_retry(
            OperationClass.AI_GENERATION,
            lambda: self._attempt(request),
            retry_on=_RETRYABLE,
            policy=self._policy,
            sleep=self._sleep,
            label=f"{self.name} '{context.event_title}'",
        )
        logger.info(
            "Story generated by %s for '%s' (%s tokens)",
            self.name, context.event_title,
            story.tokens_used if story.tokens_used is not None else "?",
        )
        return story

    async def validate_credential(self) -> bool:
        return await self.provider.validate_credential(self._api_key)


class ProviderChain:
    """Ordered fallback over configured providers.

    Any StoryGenerationError surviving a provider's own retries hands the
    request to the next provider. When every provider fails the chain
    raises AllProvidersFailed and the caller writes nothing.
    """

    def __init__(self, generators: list[StorylineGenerator]) -> None:
        if not generators:
            raise ValueError("ProviderChain needs at least one provider")
        self.generators = generators

    @classmethod
    def from_settings(cls) -> "ProviderChain":
        from storytime.config import settings

        generators = []
        for name in settings.AI_PROVIDERS:
            api_key = settings.api_key_for(name)
            if not api_key:
                logger.warning("AI provider %s has no API key configured, skipping", name)
                continue
            generators.append(
                StorylineGenerator(
                    get_provider(name),
                    api_key,
                    # AI_MODEL only applies to the first (primary) provider
                    model=settings.AI_MODEL if not generators else "",
                    max_tokens=settings.AI_MAX_TOKENS,
                    temperature=settings.AI_TEMPERATURE,
                )
            )
        return cls(generators)

    @property
    def provider_names(self) -> list[str]:
        return [g.name for g in self.generators]

    async def generate(self, context: StoryContext) -> GeneratedStory:
        prompt = build_prompt(context)
        errors: list[StoryGenerationError] = []
        for generator in self.generators:
            try:
                return await generator.generate_story(generator.make_request(prompt), context)
            except StoryGenerationError as exc:
                errors.append(exc)
                logger.warning(
                    "Provider %s failed for '%s' (%s: %s)",
                    generator.name, context.event_title, type(exc).__name__, exc,
                )
        logger.error(
            "All AI providers failed for '%s': %s",
            context.event_title, ", ".join(self.provider_names),
        )
        raise AllProvidersFailed(errors)
