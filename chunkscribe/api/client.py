"""Async HTTP client for the Gemini generateContent API.

WHY: Both transcription chunks and text stages are single generateContent
calls. This module hides the request/response shape so the engines only
deal with "bytes in, text out" and "text in, text out".

HOW: Uses httpx.AsyncClient for non-blocking HTTP. GeminiClient is an async
context manager: enter it to get an authenticated client, exit to close
the connection pool. generate() is the one raw call; transcribe_chunk() and
transform_text() build the parts for their use case.

RULES:
- Always use the async context manager (async with GeminiClient(...) as c:)
- The API key is sent in the x-goog-api-key header, never in the URL
- Non-2xx responses raise GeminiAPIError with status and body
- An empty text result is valid (silence) and returns ""
- Returned text is stripped of surrounding code fences
- No retries here; retry/fallback policy lives in api/retry.py
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Dict, List, Optional

import httpx

from chunkscribe.api.prompts import TRANSCRIBE_PROMPT, build_stage_prompt, strip_code_fences
from chunkscribe.config import ARABIC_THINKING_BUDGET, CHUNK_MIME_TYPE, GEMINI_BASE_URL
from chunkscribe.core.models import StageKind
from chunkscribe.errors import CredentialMissingError

logger = logging.getLogger(__name__)


class GeminiAPIError(Exception):
    """Raised when the Gemini API returns an error response.

    RULES:
    - Always include status_code and message
    - message is the response body text or a summary
    """

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Gemini API error {status_code}: {message}")


class GeminiClient:
    """Async client for Gemini generateContent.

    RULES:
    - Use as: async with GeminiClient(api_key) as client: ...
    - api_key is required; a missing key raises CredentialMissingError
    - transport is injectable for tests (httpx.MockTransport)
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_s: float = 300.0,
    ) -> None:
        if not api_key:
            raise CredentialMissingError()
        self._api_key = api_key
        self._base_url = (base_url or GEMINI_BASE_URL).rstrip("/")
        self._transport = transport
        self._timeout_s = timeout_s
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> GeminiClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"x-goog-api-key": self._api_key},
            timeout=httpx.Timeout(self._timeout_s, connect=30.0),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._client:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(
                "GeminiClient must be used as an async context manager: "
                "async with GeminiClient(api_key) as client: ..."
            )
        return self._client

    async def generate(
        self,
        model: str,
        parts: List[Dict[str, Any]],
        system_instruction: Optional[str] = None,
        thinking_budget: Optional[int] = None,
    ) -> str:
        """Send one generateContent request and return the concatenated text.

        Args:
            model: Model identifier, e.g. "gemini-2.5-pro-preview".
            parts: Content parts (text and/or inlineData dicts).
            system_instruction: Optional system instruction text.
            thinking_budget: Optional thinking token budget.

        Returns:
            The response text with code fences stripped ("" when empty).
        """
        client = self._ensure_client()

        body: Dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
        if system_instruction:
            body["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        if thinking_budget is not None:
            body["generationConfig"] = {
                "thinkingConfig": {"thinkingBudget": thinking_budget}
            }

        resp = await client.post(f"/models/{model}:generateContent", json=body)
        if resp.status_code != 200:
            raise GeminiAPIError(resp.status_code, resp.text)

        return strip_code_fences(_extract_text(resp.json()))

    async def transcribe_chunk(
        self,
        model: str,
        audio: bytes,
        mime_type: str = CHUNK_MIME_TYPE,
    ) -> str:
        """Transcribe one encoded audio window verbatim."""
        parts = [
            {
                "inlineData": {
                    "mimeType": mime_type,
                    "data": base64.b64encode(audio).decode("ascii"),
                }
            },
            {"text": TRANSCRIBE_PROMPT},
        ]
        return await self.generate(model, parts)

    async def transform_text(
        self,
        model: str,
        text: str,
        stage: StageKind,
        custom_prompt: Optional[str] = None,
    ) -> str:
        """Apply a text stage to a whole source text."""
        system_instruction, prompt = build_stage_prompt(stage, text, custom_prompt)
        return await self.generate(
            model,
            [{"text": prompt}],
            system_instruction=system_instruction,
            thinking_budget=_thinking_budget(stage, model),
        )


def _thinking_budget(stage: StageKind, model: str) -> Optional[int]:
    """Thinking budget for diacritization on the larger model families."""
    if stage != StageKind.ARABIC_DIACRITICS:
        return None
    if any(tag in model for tag in ("pro", "thinking", "2.5", "gemini-3")):
        return ARABIC_THINKING_BUDGET
    return None


def _extract_text(data: Dict[str, Any]) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    content = candidates[0].get("content") or {}
    texts = [part.get("text", "") for part in content.get("parts") or []]
    return "".join(texts)
