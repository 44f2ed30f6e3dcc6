"""Gemini API client package with the retry/fallback call policy.

WHY: Both the chunk loop and the stage runs make remote model calls that
fail transiently. The HTTP details and the retry policy live here so the
engines only see "transcribe these bytes" and "transform this text".

HOW: client.py wraps generateContent with httpx.AsyncClient, prompts.py
holds stage instructions, retry.py applies the attempts/fallback policy.

RULES:
- All model HTTP calls go through GeminiClient
- Authentication is the x-goog-api-key header
"""

from chunkscribe.api.client import GeminiAPIError, GeminiClient
from chunkscribe.api.retry import RemoteCallAdapter, RemoteSettings, call_with_fallback

__all__ = [
    "GeminiAPIError",
    "GeminiClient",
    "RemoteCallAdapter",
    "RemoteSettings",
    "call_with_fallback",
]
