"""Explicit-save policy, snapshot (de)serialization and the project library.

WHY: Durable storage only ever sees deliberate snapshots: the end of a
transcription, the end of a stage run, a manual save, or the autosave
safety net. The raw audio never leaves the machine, yet a restored project
must still show a file name. Deletes must tell "not there" apart from
"there, but the storage policy refused".

HOW: serialize_item()/deserialize_item() convert between MediaItem and the
stored JSON document (validated with jsonschema on the way back in).
PersistenceGateway wraps a SnapshotStorage, tracks a per-item sync status
and the time of the last successful save, and implements the delete check.

RULES:
- Snapshots never contain the source path or bytes
- fileName/fileSize/fileType are always present
- Restored items have source=None and restored=True
- Items stored mid-run come back as paused (nothing is running for them)
- save() raises StorageFailure; save_quietly() records it instead
- delete(): missing row -> ProjectNotFound; zero affected rows -> PolicyBlocked
- Storage failures never modify the in-memory item
"""

from __future__ import annotations

import enum
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import jsonschema

from chunkscribe.config import UNTITLED_FILE_NAME
from chunkscribe.core.models import ItemStatus, MediaItem, StageKind, Version
from chunkscribe.errors import PolicyBlocked, ProjectNotFound, StorageFailure
from chunkscribe.storage.supabase import SnapshotStorage

logger = logging.getLogger(__name__)

_SCHEMA_PATH = Path(__file__).resolve().parent / "snapshot_schema.json"
_CACHED_SCHEMA: Optional[Dict[str, Any]] = None

# Older snapshots used a shorter name for the diacritics stage.
_LEGACY_STAGES = {"ARABIC": StageKind.ARABIC_DIACRITICS}


def _get_schema() -> Dict[str, Any]:
    """Load and cache the snapshot JSON schema."""
    global _CACHED_SCHEMA
    if _CACHED_SCHEMA is None:
        with open(_SCHEMA_PATH, encoding="utf-8") as f:
            _CACHED_SCHEMA = json.load(f)
    return _CACHED_SCHEMA


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SyncStatus(str, enum.Enum):
    """Durability indicator for one item, shown next to the item."""

    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


@dataclass
class SavedProject:
    """One row of the project library."""

    id: str
    content: Dict[str, Any]
    updated_at: str

    @property
    def file_name(self) -> str:
        return self.content.get("fileName") or UNTITLED_FILE_NAME

    @property
    def status(self) -> str:
        return self.content.get("status") or ""


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_item(item: MediaItem) -> Dict[str, Any]:
    """Build the stored document for an item (everything except the audio)."""
    source = item.source
    return {
        "id": item.id,
        "status": item.status.value,
        "progress": item.progress,
        "duration": item.duration_s,
        "processedChunks": item.processed_chunks,
        "totalChunks": item.total_chunks,
        "currentVersionId": item.current_version_id,
        "error": item.last_error,
        "versions": [_serialize_version(v) for v in item.versions],
        "fileName": source.file_name if source else (item.file_name or UNTITLED_FILE_NAME),
        "fileSize": source.file_size if source else item.file_size,
        "fileType": source.mime_type if source else item.file_type,
        "savedAt": _utc_now(),
    }


def _serialize_version(version: Version) -> Dict[str, Any]:
    return {
        "id": version.id,
        "stage": version.stage.value,
        "name": version.display_name,
        "content": version.content,
        "parentId": version.parent_id,
        "timestamp": int(version.created_at * 1000),
        "promptUsed": version.prompt_used,
        "finalized": version.finalized,
    }


def deserialize_item(item_id: str, content: Dict[str, Any]) -> MediaItem:
    """Rebuild a read-only MediaItem from a stored document.

    Raises:
        StorageFailure: If the document does not match the snapshot schema.
    """
    try:
        jsonschema.validate(instance=content, schema=_get_schema())
    except jsonschema.ValidationError as exc:
        raise StorageFailure(
            "Stored project {} is malformed: {}".format(item_id, exc.message)
        ) from exc

    status = ItemStatus(content["status"])
    if status in (ItemStatus.PROCESSING, ItemStatus.UPLOADING):
        status = ItemStatus.PAUSED

    versions = [_deserialize_version(v) for v in content.get("versions", [])]
    current = content.get("currentVersionId")
    if current is not None and current not in {v.id for v in versions}:
        current = versions[-1].id if versions else None

    total = int(content.get("totalChunks") or 0)
    processed = min(int(content.get("processedChunks") or 0), total)

    return MediaItem(
        id=item_id,
        source=None,
        file_name=content.get("fileName") or UNTITLED_FILE_NAME,
        file_size=int(content.get("fileSize") or 0),
        file_type=content.get("fileType") or "audio/mp3",
        duration_s=float(content.get("duration") or 0.0),
        total_chunks=total,
        processed_chunks=processed,
        status=status,
        progress=int(content.get("progress") or 0),
        versions=versions,
        current_version_id=current,
        last_error=content.get("error"),
        restored=True,
    )


def _deserialize_version(data: Dict[str, Any]) -> Version:
    stage_value = data["stage"]
    stage = _LEGACY_STAGES.get(stage_value) or StageKind(stage_value)
    timestamp = data.get("timestamp")
    return Version(
        id=data["id"],
        stage=stage,
        content=data.get("content", ""),
        display_name=data.get("name", ""),
        parent_id=data.get("parentId"),
        created_at=(timestamp / 1000.0) if timestamp else time.time(),
        prompt_used=data.get("promptUsed"),
        finalized=data.get("finalized", True),
    )


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class PersistenceGateway:
    """Save, list, load and delete snapshots with sync status tracking.

    RULES:
    - last_saved_at starts at construction time and moves on every success
    - sync_status() is IDLE for items never saved in this process
    """

    def __init__(
        self,
        storage: SnapshotStorage,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._sync: Dict[str, SyncStatus] = {}
        self.last_saved_at = clock()

    def sync_status(self, item_id: str) -> SyncStatus:
        return self._sync.get(item_id, SyncStatus.IDLE)

    def mark_dirty(self, item_id: str) -> None:
        """Flag that the in-memory item changed since its last save."""
        if self._sync.get(item_id) != SyncStatus.SAVING:
            self._sync[item_id] = SyncStatus.IDLE

    def is_saving(self, item_id: str) -> bool:
        return self._sync.get(item_id) == SyncStatus.SAVING

    def seconds_since_save(self) -> float:
        return self._clock() - self.last_saved_at

    async def save(self, item: MediaItem) -> None:
        """Upsert a snapshot of the item.

        Raises:
            StorageFailure: On any storage error (the item is untouched).
        """
        self._sync[item.id] = SyncStatus.SAVING
        try:
            await self._storage.upsert(item.id, serialize_item(item), _utc_now())
        except StorageFailure:
            self._sync[item.id] = SyncStatus.ERROR
            raise
        self._sync[item.id] = SyncStatus.SAVED
        self.last_saved_at = self._clock()
        logger.info("Saved item %s (%s)", item.id, item.status.value)

    async def save_quietly(self, item: MediaItem) -> bool:
        """save() that reports failure through sync status instead of raising."""
        try:
            await self.save(item)
        except StorageFailure as exc:
            logger.error("Saving item %s failed: %s", item.id, exc)
            return False
        return True

    async def list_projects(self) -> List[SavedProject]:
        rows = await self._storage.list_rows()
        return [
            SavedProject(
                id=row["id"],
                content=row.get("content") or {},
                updated_at=row.get("updated_at") or "",
            )
            for row in rows
        ]

    async def load(self, item_id: str) -> MediaItem:
        row = await self._storage.fetch_row(item_id)
        if row is None:
            raise ProjectNotFound("Project not found: {}".format(item_id), status_code=404)
        item = deserialize_item(item_id, row.get("content") or {})
        self._sync[item.id] = SyncStatus.SAVED
        return item

    async def delete(self, item_id: str) -> None:
        """Delete a stored project.

        Raises:
            ProjectNotFound: No row is visible for item_id.
            PolicyBlocked: The row exists but the delete affected nothing.
            StorageFailure: Any other storage error.
        """
        row = await self._storage.fetch_row(item_id)
        if row is None:
            raise ProjectNotFound(
                "Project not found or not readable: {}".format(item_id), status_code=404
            )

        affected = await self._storage.delete_rows(item_id)
        if affected == 0:
            logger.warning("Delete of %s affected no rows despite existing", item_id)
            raise PolicyBlocked(
                "Storage refused to delete project {}. Check the table's "
                "row-level security policy.".format(item_id),
                status_code=403,
            )
        self._sync.pop(item_id, None)
        logger.info("Deleted stored project %s", item_id)


def filter_projects(
    projects: List[SavedProject],
    search: str = "",
    sort_key: str = "updated_at",
    descending: bool = True,
) -> List[SavedProject]:
    """Library view: case-insensitive file-name search plus sorting.

    Args:
        projects: Rows from list_projects().
        search: Substring matched against the file name.
        sort_key: "fileName", "status" or "updated_at".
        descending: Sort direction.
    """
    if sort_key not in ("fileName", "status", "updated_at"):
        raise ValueError("Unknown sort key: {}".format(sort_key))

    needle = search.strip().lower()
    matches = [p for p in projects if needle in p.file_name.lower()]

    def _key(project: SavedProject) -> Any:
        if sort_key == "fileName":
            return project.file_name.lower()
        if sort_key == "status":
            return project.status
        return project.updated_at

    return sorted(matches, key=_key, reverse=descending)
