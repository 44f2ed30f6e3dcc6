"""chunkscribe: resumable chunked transcription with a versioned text history.

WHY: Long recordings sent to a remote speech model in one piece fail as a
whole when the network drops. Splitting them into fixed windows with a
per-window checkpoint means an interruption costs at most one window, and
derived texts (diacritics, headings, formal register) live next to the raw
transcript instead of replacing it.

HOW: Four layers: api (Gemini client plus retry/fallback policy), core
(data model, version store, transcription and stage engines), storage
(snapshot persistence and autosave), and the server/CLI entry points.

RULES:
- Engines re-fetch items from the repository after every await
- Versions are append-only; nothing is ever removed from an item
- Raw audio never leaves the machine
"""

__version__ = "0.1.0"
