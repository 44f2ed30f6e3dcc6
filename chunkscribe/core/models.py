"""Media item, version and status types with the item transition table.

WHY: Every engine reads and mutates the same few structures: the media item
being processed, its append-only list of text versions, and a single status
field. Typed dataclasses and enums make the shape explicit and let the
status machine reject illegal changes instead of silently overwriting them.

HOW: Four building blocks:
  ItemStatus  : str enum of item states plus ALLOWED_TRANSITIONS
  StageKind   : str enum of version kinds (RAW root and four derived stages)
  Version     : one node of the per-item lineage forest
  MediaItem   : one audio source under processing with its versions
SourceHandle points at the raw audio on disk; it is never serialized.

RULES:
- processed_chunks <= total_chunks at all times
- current_version_id is None or the id of a version in versions
- MediaItem.transition() is the only way engines change status
- Enums inherit from str so values serialize cleanly to JSON
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

from chunkscribe.config import UNTITLED_FILE_NAME
from chunkscribe.errors import StateTransitionError


class ItemStatus(str, enum.Enum):
    """Valid states of a media item.

    RULES:
    - idle: created, nothing processed yet
    - uploading: source bytes still arriving
    - processing: a transcription loop or a stage run is active
    - paused: transcription stopped by the user or by a remote failure
    - completed: last run finished successfully
    - error: last stage run failed
    """

    IDLE = "idle"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


ALLOWED_TRANSITIONS: Dict[ItemStatus, FrozenSet[ItemStatus]] = {
    ItemStatus.IDLE: frozenset({ItemStatus.UPLOADING, ItemStatus.PROCESSING}),
    ItemStatus.UPLOADING: frozenset(
        {ItemStatus.IDLE, ItemStatus.PROCESSING, ItemStatus.ERROR}
    ),
    ItemStatus.PROCESSING: frozenset(
        {ItemStatus.PAUSED, ItemStatus.COMPLETED, ItemStatus.ERROR}
    ),
    ItemStatus.PAUSED: frozenset({ItemStatus.PROCESSING}),
    ItemStatus.ERROR: frozenset({ItemStatus.PROCESSING}),
    ItemStatus.COMPLETED: frozenset({ItemStatus.PROCESSING}),
}


class StageKind(str, enum.Enum):
    """Kinds of text artifacts in a lineage.

    RULES:
    - RAW is the root produced by chunked transcription (parent_id None)
    - All other kinds are produced once by a single remote transform call
    """

    RAW = "RAW"
    ARABIC_DIACRITICS = "ARABIC_DIACRITICS"
    TITLES = "TITLES"
    FORMAL = "FORMAL"
    CUSTOM = "CUSTOM"


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Version:
    """One text artifact in an item's lineage forest.

    WHY: Each transformation produces new text without destroying the input
    it was derived from, so users can compare or branch from any point.

    RULES:
    - id is unique within the item and never reused
    - parent_id is None only for RAW roots
    - content only grows while streaming; finalized versions never change
    - display_name is updated at the same checkpoints as content
    """

    id: str
    stage: StageKind
    content: str
    display_name: str
    parent_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    prompt_used: Optional[str] = None
    finalized: bool = False


@dataclass
class SourceHandle:
    """Reference to the raw audio bytes of an item on local disk."""

    path: Path
    file_name: str
    file_size: int = 0
    mime_type: str = "audio/mp3"

    @classmethod
    def from_path(cls, path: Path, mime_type: Optional[str] = None) -> SourceHandle:
        path = Path(path)
        size = path.stat().st_size if path.exists() else 0
        return cls(
            path=path,
            file_name=path.name,
            file_size=size,
            mime_type=mime_type or "audio/mp3",
        )

    def is_readable(self) -> bool:
        return self.path.is_file()


@dataclass
class MediaItem:
    """One audio/video source under processing.

    WHY: The engines, the autosave loop, the reconnection handler and the
    HTTP layer all look at the same item. It carries the transcription
    checkpoint (processed_chunks) next to the version history it feeds.

    HOW: Created by ItemRepository.create_item() with an empty version list.
    Engines change status only through transition(), which consults
    ALLOWED_TRANSITIONS.

    RULES:
    - source may be None permanently (restored snapshot, read-only)
    - file_name/file_size/file_type stay resolvable without a source
    - versions is append-only; nothing is ever removed from it
    - last_error is cleared at the start of every run attempt
    """

    id: str
    source: Optional[SourceHandle] = None
    file_name: str = UNTITLED_FILE_NAME
    file_size: int = 0
    file_type: str = "audio/mp3"
    duration_s: float = 0.0
    total_chunks: int = 0
    processed_chunks: int = 0
    status: ItemStatus = ItemStatus.IDLE
    progress: int = 0
    versions: List[Version] = field(default_factory=list)
    current_version_id: Optional[str] = None
    last_error: Optional[str] = None
    restored: bool = False
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def can_transition(self, status: ItemStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def transition(self, status: ItemStatus) -> None:
        """Move to a new status or raise StateTransitionError.

        RULES:
        - Self-transitions are illegal (processing -> processing is how a
          second concurrent run gets rejected)
        - updated_at is bumped on every successful change
        """
        if not self.can_transition(status):
            raise StateTransitionError(self.status.value, status.value)
        self.status = status
        self.touch()

    def set_checkpoint(self, processed_chunks: int, total_chunks: int) -> None:
        """Record transcription progress, enforcing processed <= total."""
        if processed_chunks < 0 or total_chunks < 0:
            raise ValueError("Chunk counters must not be negative")
        if processed_chunks > total_chunks:
            raise ValueError(
                "processed_chunks ({}) exceeds total_chunks ({})".format(
                    processed_chunks, total_chunks
                )
            )
        self.processed_chunks = processed_chunks
        self.total_chunks = total_chunks
        self.touch()

    def touch(self) -> None:
        self.updated_at = time.time()
