"""Bounded retry with ordered model fallback for remote calls.

WHY: The remote model fails transiently (network drops, rate limits,
overloaded models). Each logical request (one chunk or one stage) should
survive a few failures and fall back to other models before the engine has
to pause or mark an error.

HOW: call_with_fallback() walks the deduplicated candidate list, giving each
candidate up to three attempts with exponential backoff between attempts.
RemoteCallAdapter binds that policy to a GeminiClient, the user's chosen
primary model and the configured fallback chain.

RULES:
- Candidates are [primary, *fallbacks], deduplicated, order preserved
- 3 attempts per candidate; sleep 1s, 2s, 4s after failed attempts
- No sleep after the very last attempt
- Any exception from the operation counts as a failed attempt
- Exhaustion raises RemoteFailure chained to the last error
- The adapter never mutates item state; retries are safe to repeat
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Iterable, List, Optional, Sequence

import httpx

from chunkscribe.api.client import GeminiClient
from chunkscribe.config import (
    ATTEMPTS_PER_MODEL,
    CHUNK_MIME_TYPE,
    DEFAULT_MODEL,
    FALLBACK_MODELS,
    RETRY_BASE_DELAY_S,
)
from chunkscribe.core.models import StageKind
from chunkscribe.errors import RemoteFailure

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def unique_candidates(primary: str, fallbacks: Iterable[str]) -> List[str]:
    """Return [primary, *fallbacks] without duplicates, keeping first occurrences."""
    seen = set()
    ordered: List[str] = []
    for candidate in [primary, *fallbacks]:
        if candidate and candidate not in seen:
            seen.add(candidate)
            ordered.append(candidate)
    return ordered


async def call_with_fallback(
    operation: Callable[[str], Awaitable[str]],
    primary: str,
    fallbacks: Sequence[str] = (),
    attempts_per_candidate: int = ATTEMPTS_PER_MODEL,
    base_delay_s: float = RETRY_BASE_DELAY_S,
    sleep: Sleep = asyncio.sleep,
) -> str:
    """Run operation(candidate) until one attempt succeeds.

    Args:
        operation: Async callable receiving the candidate (model id).
        primary: Preferred candidate, tried first.
        fallbacks: Alternatives tried in order after the primary is spent.
        attempts_per_candidate: Attempts before moving to the next candidate.
        base_delay_s: Backoff base; delays are base * 2 ** (attempt - 1).
        sleep: Awaitable sleep, injectable for tests.

    Returns:
        The first successful result.

    Raises:
        RemoteFailure: After every candidate has used every attempt.
    """
    candidates = unique_candidates(primary, fallbacks)
    total_attempts = attempts_per_candidate * len(candidates)
    last_error: Optional[BaseException] = None
    made = 0

    for candidate in candidates:
        for attempt in range(1, attempts_per_candidate + 1):
            made += 1
            try:
                return await operation(candidate)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Remote call failed on %s (attempt %d/%d): %s",
                    candidate,
                    attempt,
                    attempts_per_candidate,
                    exc,
                )
            if made < total_attempts:
                await sleep(base_delay_s * 2 ** (attempt - 1))
        logger.warning(
            "%s failed %d times, switching to next candidate", candidate, attempts_per_candidate
        )

    message = "All {} candidates failed after {} attempts: {}".format(
        len(candidates), made, last_error
    )
    raise RemoteFailure(message, last_error=last_error, attempts=made) from last_error


class RemoteCallAdapter:
    """Transcribe and transform requests under the retry/fallback policy.

    HOW: Holds an entered GeminiClient plus the model choice. Each public
    method is one logical request; the policy decides which model actually
    serves it.
    """

    def __init__(
        self,
        client: GeminiClient,
        primary_model: str = DEFAULT_MODEL,
        fallback_models: Optional[Sequence[str]] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.client = client
        self.primary_model = primary_model
        self.fallback_models = list(FALLBACK_MODELS if fallback_models is None else fallback_models)
        self._sleep = sleep

    async def transcribe(self, audio: bytes, mime_type: str = CHUNK_MIME_TYPE) -> str:
        async def _op(model: str) -> str:
            return await self.client.transcribe_chunk(model, audio, mime_type)

        return await call_with_fallback(
            _op, self.primary_model, self.fallback_models, sleep=self._sleep
        )

    async def transform(
        self,
        text: str,
        stage: StageKind,
        custom_prompt: Optional[str] = None,
    ) -> str:
        async def _op(model: str) -> str:
            return await self.client.transform_text(model, text, stage, custom_prompt)

        return await call_with_fallback(
            _op, self.primary_model, self.fallback_models, sleep=self._sleep
        )


@dataclass
class RemoteSettings:
    """Credential and model choice shared by the transcription and stage engines.

    RULES:
    - api_key None means "needs credential"; engines refuse to start
    - model is the user's selected primary model
    """

    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    fallback_models: List[str] = field(default_factory=lambda: list(FALLBACK_MODELS))

    @property
    def has_credential(self) -> bool:
        return bool(self.api_key)


@asynccontextmanager
async def open_adapter(
    settings: RemoteSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Sleep = asyncio.sleep,
) -> AsyncIterator[RemoteCallAdapter]:
    """Open a GeminiClient for the current credential and wrap it in the policy."""
    async with GeminiClient(settings.api_key, transport=transport) as client:
        yield RemoteCallAdapter(
            client,
            primary_model=settings.model,
            fallback_models=settings.fallback_models,
            sleep=sleep,
        )
