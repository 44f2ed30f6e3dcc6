"""Pydantic request/response models for the HTTP API.

WHY: The FastAPI endpoints need typed schemas for request validation,
response serialization and the generated OpenAPI docs. Internal dataclasses
carry more than clients should see (the source path, raw timestamps), so
responses are built explicitly from them.

HOW: One model per request body and per resource shape. Conversion helpers
from MediaItem / Version / SavedProject sit next to the models they build.

RULES:
- All fields use Field(description=...) for OpenAPI documentation
- Responses never expose the local source path
- last_error is truncated for display
- Python 3.9+ compatible (no PEP 604 unions, use Optional from typing)
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from chunkscribe.core.engine import error_excerpt
from chunkscribe.core.models import MediaItem, StageKind, Version
from chunkscribe.storage.gateway import SavedProject, SyncStatus


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class OnExisting(str, Enum):
    """What to do when a fresh transcription start finds prior progress."""

    cont = "continue"
    restart = "restart"


class LibrarySort(str, Enum):
    file_name = "fileName"
    updated_at = "updated_at"
    status = "status"


class SortDirection(str, Enum):
    asc = "asc"
    desc = "desc"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CredentialRequest(BaseModel):
    """Runtime credential (and optionally model) selection."""

    api_key: str = Field(min_length=1, description="Gemini API key used for every remote call.")
    model: Optional[str] = Field(
        default=None,
        description="Primary model id. Must be one of GET /models. Unchanged if omitted.",
    )


class StageRequest(BaseModel):
    """Start a transformation stage from an existing version.

    RULES:
    - stage must not be RAW
    - custom_prompt is required for CUSTOM and ignored otherwise
    """

    stage: StageKind = Field(description="Stage to run (ARABIC_DIACRITICS, TITLES, FORMAL, CUSTOM).")
    parent_version_id: str = Field(description="Version whose content is transformed.")
    custom_prompt: Optional[str] = Field(
        default=None,
        description="Free-form instruction for the CUSTOM stage.",
    )


class CurrentVersionRequest(BaseModel):
    version_id: str = Field(description="Version to mark as the item's active output.")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class VersionResponse(BaseModel):
    """One node of an item's version lineage."""

    id: str = Field(description="Version identifier.")
    stage: StageKind = Field(description="Kind of text artifact.")
    display_name: str = Field(description="Human label, reflects in-progress/complete/failed.")
    content: str = Field(description="Text payload.")
    parent_id: Optional[str] = Field(default=None, description="Source version, None for RAW.")
    created_at: float = Field(description="Creation time (Unix epoch seconds).")
    prompt_used: Optional[str] = Field(default=None, description="Instruction of a CUSTOM stage.")
    finalized: bool = Field(description="True once the producing run has ended.")

    @classmethod
    def from_version(cls, version: Version) -> VersionResponse:
        return cls(
            id=version.id,
            stage=version.stage,
            display_name=version.display_name,
            content=version.content,
            parent_id=version.parent_id,
            created_at=version.created_at,
            prompt_used=version.prompt_used,
            finalized=version.finalized,
        )


class ItemResponse(BaseModel):
    """Media item state as seen by clients.

    RULES:
    - restored items have has_source False and cannot be transcribed
    - sync_status is the durability indicator (idle/saving/saved/error)
    """

    id: str = Field(description="Item identifier (stable across save/restore).")
    file_name: str = Field(description="Original file name.")
    file_size: int = Field(description="Original file size in bytes.")
    file_type: str = Field(description="Original MIME type.")
    status: str = Field(description="idle, uploading, processing, paused, completed or error.")
    progress: int = Field(description="Progress percentage 0-100.")
    duration_s: float = Field(description="Audio duration in seconds, 0 if not yet probed.")
    total_chunks: int = Field(description="Number of 240 s windows.")
    processed_chunks: int = Field(description="Windows committed to the RAW transcript.")
    current_version_id: Optional[str] = Field(default=None, description="Active output version.")
    last_error: Optional[str] = Field(default=None, description="Last failure, truncated.")
    has_source: bool = Field(description="Whether the audio is available locally.")
    restored: bool = Field(description="Loaded from the library without audio.")
    active: bool = Field(description="Whether this is the active item.")
    sync_status: SyncStatus = Field(description="Durable storage indicator.")
    versions: List[VersionResponse] = Field(description="Version history in creation order.")

    @classmethod
    def from_item(cls, item: MediaItem, active: bool, sync_status: SyncStatus) -> ItemResponse:
        return cls(
            id=item.id,
            file_name=item.file_name,
            file_size=item.file_size,
            file_type=item.file_type,
            status=item.status.value,
            progress=item.progress,
            duration_s=item.duration_s,
            total_chunks=item.total_chunks,
            processed_chunks=item.processed_chunks,
            current_version_id=item.current_version_id,
            last_error=error_excerpt(item.last_error),
            has_source=item.source is not None,
            restored=item.restored,
            active=active,
            sync_status=sync_status,
            versions=[VersionResponse.from_version(v) for v in item.versions],
        )


class ProjectResponse(BaseModel):
    """One saved project in the library."""

    id: str = Field(description="Project (item) identifier.")
    file_name: str = Field(description="Original file name.")
    status: str = Field(description="Item status at save time.")
    updated_at: str = Field(description="Last save timestamp (ISO 8601).")

    @classmethod
    def from_project(cls, project: SavedProject) -> ProjectResponse:
        return cls(
            id=project.id,
            file_name=project.file_name,
            status=project.status,
            updated_at=project.updated_at,
        )


class ModelInfo(BaseModel):
    id: str = Field(description="Model identifier sent to the API.")
    name: str = Field(description="Human-readable model name.")
    selected: bool = Field(description="Whether this is the current primary model.")


class ConnectivityResponse(BaseModel):
    resumed: List[str] = Field(description="Item ids scheduled for automatic resume.")


class ErrorResponse(BaseModel):
    """Standard error response body."""

    detail: str = Field(description="Human-readable error description.")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service health status.", json_schema_extra={"example": "ok"})
    version: str = Field(description="API version string.", json_schema_extra={"example": "0.1.0"})
    credential_configured: bool = Field(description="Whether an API key is set.")
