"""Configuration constants, model catalog, display labels and .env loading.

WHY: Chunk length, retry policy, autosave cadence, remote endpoints and the
user-visible version names are all tunables. Keeping them as plain module
data makes them easy to find and override without touching the engines.

HOW: python-dotenv loads the .env file on import. Constants are defined as
module-level values; anything environment-specific reads os.getenv with a
default. load_api_key() returns None instead of raising because a missing
credential is a normal runtime state (the user may supply one later).

RULES:
- CHUNK_DURATION_S is shared by ChunkSource and the engine (240 s)
- Retry policy: 3 attempts per model, 1s/2s/4s backoff
- Autosave: check every 10 s, save when >= 30 s since last successful save
- The credential is never hardcoded; it comes from GEMINI_API_KEY or the API
"""

from __future__ import annotations

import os
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------

CHUNK_DURATION_S = 240
"""Fixed window length in seconds. Changing it invalidates stored totals."""

TARGET_SAMPLE_RATE = 16000
MP3_BITRATE_KBPS = 64
CHUNK_MIME_TYPE = "audio/mp3"

# ---------------------------------------------------------------------------
# Remote model configuration
# ---------------------------------------------------------------------------

GEMINI_BASE_URL = os.getenv(
    "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
)
DEFAULT_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-pro-preview")

AVAILABLE_MODELS: Dict[str, str] = {
    "gemini-3-pro-preview": "Gemini 3.0 Pro",
    "gemini-3-flash-preview": "Gemini 3.0 Flash",
    "gemini-2.5-pro-preview": "Gemini 2.5 Pro",
    "gemini-2.5-flash-preview": "Gemini 2.5 Flash",
    "gemini-2.0-flash-exp": "Gemini 2.0 Flash",
    "gemini-1.5-pro": "Gemini 1.5 Pro",
    "gemini-1.5-flash": "Gemini 1.5 Flash",
    "gemini-1.5-flash-8b": "Gemini 1.5 Flash-8B",
}

FALLBACK_MODELS: List[str] = [
    "gemini-3-flash-preview",
    "gemini-2.5-pro-preview",
    "gemini-2.5-flash-preview",
    "gemini-2.0-flash-exp",
    "gemini-1.5-flash",
]
"""Tried in order after the selected model exhausts its attempts."""

ATTEMPTS_PER_MODEL = 3
RETRY_BASE_DELAY_S = 1.0
ARABIC_THINKING_BUDGET = 2048

# ---------------------------------------------------------------------------
# Durable storage (Supabase / PostgREST)
# ---------------------------------------------------------------------------

SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_KEY", "")
SUPABASE_TABLE = os.getenv("SUPABASE_TABLE", "transcriptions")

AUTOSAVE_CHECK_INTERVAL_S = 10.0
AUTOSAVE_MIN_AGE_S = 30.0

# ---------------------------------------------------------------------------
# Connectivity probing and cosmetic progress
# ---------------------------------------------------------------------------

CONNECTIVITY_PROBE_URL = os.getenv("CONNECTIVITY_PROBE_URL", "")
CONNECTIVITY_PROBE_INTERVAL_S = 5.0

STAGE_PROGRESS_STEP = 5
STAGE_PROGRESS_INTERVAL_S = 0.8
STAGE_PROGRESS_CEILING = 95

ERROR_DISPLAY_LIMIT = 200

LOG_LEVEL = os.getenv("CHUNKSCRIBE_LOG_LEVEL", "INFO")

# ---------------------------------------------------------------------------
# Display labels
# ---------------------------------------------------------------------------

RAW_LABELS: Dict[str, str] = {
    "started": "Raw transcript (generating...)",
    "streaming": "Raw transcript (in progress)",
    "complete": "Raw transcript (complete)",
}

STAGE_LABELS: Dict[str, str] = {
    "ARABIC_DIACRITICS": "Diacritized",
    "TITLES": "Titled",
    "FORMAL": "Formalized",
    "CUSTOM": "Custom edit",
}

IN_PROGRESS_SUFFIX = " (processing...)"
FAILED_SUFFIX = " (failed)"
STAGE_PLACEHOLDER = "Please wait..."
STAGE_FAILURE_MARKER = "Processing failed. Please try again."
UNTITLED_FILE_NAME = "Untitled"


def load_api_key() -> Optional[str]:
    """Return the Gemini API key from the environment, or None when unset.

    RULES:
    - Whitespace-only values count as unset
    - Never returns a placeholder value
    """
    key = os.getenv("GEMINI_API_KEY", "").strip()
    return key or None
