"""FastAPI application exposing items, stages and the project library.

WHY: The transcription and stage engines are long-running and stateful;
clients (a browser UI, curl, scripts) need to upload audio, start and pause
work, poll progress, branch new versions and manage saved projects over
HTTP. FastAPI gives request validation and OpenAPI docs for free.

HOW: One module-level Services bundle holds the repository, engines and
gateway. Starting work is split: the handler claims the run synchronously
(so precondition failures become HTTP errors) and hands execution to
BackgroundTasks on the same event loop. The lifespan runs the autosave loop
and the connectivity watcher.

RULES:
- Error mapping: 401 credential, 404 unknown, 409 busy/source/transition,
  403 delete blocked by storage policy, 502 other storage errors, 422 bad input
- Fresh transcription of an item with progress requires on_existing
- Uploaded audio stays on local disk; only snapshots go to storage
- Upload dirs are removed with their item or at shutdown
- Python 3.9+ compatible (no match/case, no PEP 604 unions)
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, List, Optional

from fastapi import BackgroundTasks, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import Response

from chunkscribe import __version__
from chunkscribe.config import AVAILABLE_MODELS
from chunkscribe.core.engine import always_continue, always_restart
from chunkscribe.core.models import MediaItem, SourceHandle
from chunkscribe.core.versions import VersionStore
from chunkscribe.errors import (
    CredentialMissingError,
    ItemBusyError,
    PolicyBlocked,
    ProjectNotFound,
    SourceUnavailableError,
    StateTransitionError,
    StorageFailure,
)
from chunkscribe.server.models import (
    ConnectivityResponse,
    CredentialRequest,
    CurrentVersionRequest,
    ErrorResponse,
    HealthResponse,
    ItemResponse,
    LibrarySort,
    ModelInfo,
    OnExisting,
    ProjectResponse,
    SortDirection,
    StageRequest,
)
from chunkscribe.services import build_services
from chunkscribe.storage.gateway import filter_projects

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App and services setup
# ---------------------------------------------------------------------------

services = build_services()


async def _cancel(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start autosave and connectivity watching on startup.

    On shutdown the tasks are cancelled and upload directories removed.
    """
    tasks = [
        asyncio.create_task(services.autosaver.run()),
        asyncio.create_task(services.watcher.run()),
    ]
    yield
    for task in tasks:
        await _cancel(task)
    services.repository.cleanup_uploads()


app = FastAPI(
    lifespan=lifespan,
    title="chunkscribe API",
    description=(
        "Resumable chunked transcription with Gemini and a versioned text "
        "history. Upload audio, start or pause transcription, run refinement "
        "stages, and save or restore projects."
    ),
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _item_response(item: MediaItem) -> ItemResponse:
    return ItemResponse.from_item(
        item,
        active=services.repository.active_id == item.id,
        sync_status=services.gateway.sync_status(item.id),
    )


def _require_item(item_id: str) -> MediaItem:
    item = services.repository.get_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found: {}".format(item_id))
    return item


def _http_error(exc: Exception) -> HTTPException:
    """Translate a domain exception into an HTTPException."""
    if isinstance(exc, CredentialMissingError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, (ItemBusyError, SourceUnavailableError, StateTransitionError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (KeyError, ProjectNotFound)):
        return HTTPException(status_code=404, detail=str(exc).strip("'\""))
    if isinstance(exc, PolicyBlocked):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, StorageFailure):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


_DOMAIN_ERRORS = (
    CredentialMissingError,
    ItemBusyError,
    SourceUnavailableError,
    StateTransitionError,
    StorageFailure,
    KeyError,
    ValueError,
)


# ---------------------------------------------------------------------------
# Endpoints: Settings
# ---------------------------------------------------------------------------


@app.put(
    "/credential",
    response_model=HealthResponse,
    tags=["settings"],
    summary="Set the API key (and optionally the primary model)",
    responses={422: {"model": ErrorResponse, "description": "Unknown model"}},
)
async def set_credential(body: CredentialRequest) -> HealthResponse:
    if body.model is not None:
        if body.model not in AVAILABLE_MODELS:
            raise HTTPException(status_code=422, detail="Unknown model: {}".format(body.model))
        services.settings.model = body.model
    services.settings.api_key = body.api_key.strip()
    logger.info("Credential updated (model %s)", services.settings.model)
    return await health_check()


@app.get(
    "/models",
    response_model=List[ModelInfo],
    tags=["settings"],
    summary="List selectable primary models",
)
async def list_models() -> List[ModelInfo]:
    return [
        ModelInfo(id=model_id, name=name, selected=model_id == services.settings.model)
        for model_id, name in AVAILABLE_MODELS.items()
    ]


# ---------------------------------------------------------------------------
# Endpoints: Items
# ---------------------------------------------------------------------------


@app.post(
    "/items",
    response_model=ItemResponse,
    status_code=201,
    tags=["items"],
    summary="Upload an audio or video file as a new item",
)
async def create_item(
    file: Annotated[UploadFile, File(description="Audio or video file to transcribe.")],
) -> ItemResponse:
    # Sanitize filename to prevent path traversal
    filename = Path(file.filename or "upload").name
    upload_dir = Path(tempfile.mkdtemp(prefix="chunkscribe-"))
    path = upload_dir / filename
    path.write_bytes(await file.read())

    source = SourceHandle.from_path(path, mime_type=file.content_type or None)
    item = services.repository.create_item(source, upload_dir=upload_dir)
    return _item_response(item)


@app.get("/items", response_model=List[ItemResponse], tags=["items"], summary="List items")
async def list_items() -> List[ItemResponse]:
    return [_item_response(item) for item in services.repository.list_items()]


@app.get(
    "/items/{item_id}",
    response_model=ItemResponse,
    tags=["items"],
    summary="Get one item with its versions",
    responses={404: {"model": ErrorResponse, "description": "Item not found"}},
)
async def get_item(item_id: str) -> ItemResponse:
    return _item_response(_require_item(item_id))


@app.post(
    "/items/{item_id}/activate",
    response_model=ItemResponse,
    tags=["items"],
    summary="Make an item the active one (the one autosave watches)",
)
async def activate_item(item_id: str) -> ItemResponse:
    _require_item(item_id)
    return _item_response(services.repository.set_active(item_id))


@app.post(
    "/items/{item_id}/transcribe",
    response_model=ItemResponse,
    status_code=202,
    tags=["items"],
    summary="Start or resume chunked transcription",
    description=(
        "Starts transcription in the background. resume=true continues from "
        "the last committed chunk. A fresh start on an item with progress "
        "needs on_existing=continue or on_existing=restart, otherwise 409."
    ),
    responses={
        401: {"model": ErrorResponse, "description": "No API key configured"},
        404: {"model": ErrorResponse, "description": "Item not found"},
        409: {"model": ErrorResponse, "description": "Busy, no source, or choice needed"},
    },
)
async def transcribe_item(
    item_id: str,
    background_tasks: BackgroundTasks,
    resume: Annotated[bool, Query(description="Continue from the checkpoint.")] = False,
    on_existing: Annotated[
        Optional[OnExisting],
        Query(description="continue or restart when prior progress exists."),
    ] = None,
) -> ItemResponse:
    try:
        item = services.engine.ensure_startable(item_id)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc)

    decide = None
    if not resume and item.processed_chunks > 0:
        if on_existing is None:
            raise HTTPException(
                status_code=409,
                detail="Item has {}/{} chunks done; pass on_existing=continue or restart.".format(
                    item.processed_chunks, item.total_chunks
                ),
            )
        decide = always_continue if on_existing == OnExisting.cont else always_restart

    try:
        run = await services.engine.claim(item_id, resume=resume, decide_continue=decide)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc)

    background_tasks.add_task(services.engine.execute, run)
    return _item_response(services.repository.require_item(item_id))


@app.post(
    "/items/{item_id}/pause",
    response_model=ItemResponse,
    tags=["items"],
    summary="Pause transcription before the next chunk",
    responses={409: {"model": ErrorResponse, "description": "Not transcribing"}},
)
async def pause_item(item_id: str) -> ItemResponse:
    try:
        item = services.engine.pause(item_id)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc)
    return _item_response(item)


@app.post(
    "/items/{item_id}/stages",
    response_model=ItemResponse,
    status_code=202,
    tags=["items"],
    summary="Run a refinement stage from a version",
    responses={
        401: {"model": ErrorResponse, "description": "No API key configured"},
        404: {"model": ErrorResponse, "description": "Item or parent version not found"},
        409: {"model": ErrorResponse, "description": "Item busy"},
        422: {"model": ErrorResponse, "description": "Invalid stage request"},
    },
)
async def run_stage(
    item_id: str, body: StageRequest, background_tasks: BackgroundTasks
) -> ItemResponse:
    try:
        stage_run = services.stages.begin(
            item_id, body.stage, body.parent_version_id, body.custom_prompt
        )
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc)
    if stage_run is None:
        raise HTTPException(
            status_code=404,
            detail="Parent version not found: {}".format(body.parent_version_id),
        )
    background_tasks.add_task(services.stages.complete, stage_run)
    return _item_response(services.repository.require_item(item_id))


@app.put(
    "/items/{item_id}/current-version",
    response_model=ItemResponse,
    tags=["items"],
    summary="Select the version considered the item's active output",
)
async def set_current_version(item_id: str, body: CurrentVersionRequest) -> ItemResponse:
    item = _require_item(item_id)
    try:
        VersionStore(item).set_current(body.version_id)
    except KeyError as exc:
        raise _http_error(exc)
    services.gateway.mark_dirty(item_id)
    return _item_response(item)


@app.post(
    "/items/{item_id}/save",
    response_model=ItemResponse,
    tags=["items"],
    summary="Save a snapshot of the item now",
    responses={502: {"model": ErrorResponse, "description": "Storage failed"}},
)
async def save_item(item_id: str) -> ItemResponse:
    item = _require_item(item_id)
    try:
        await services.gateway.save(item)
    except StorageFailure as exc:
        raise _http_error(exc)
    return _item_response(item)


# ---------------------------------------------------------------------------
# Endpoints: Library
# ---------------------------------------------------------------------------


@app.get(
    "/library",
    response_model=List[ProjectResponse],
    tags=["library"],
    summary="List saved projects",
)
async def list_library(
    search: Annotated[str, Query(description="Case-insensitive file name filter.")] = "",
    sort: Annotated[LibrarySort, Query(description="Sort key.")] = LibrarySort.updated_at,
    direction: Annotated[SortDirection, Query(description="asc or desc.")] = SortDirection.desc,
) -> List[ProjectResponse]:
    try:
        projects = await services.gateway.list_projects()
    except StorageFailure as exc:
        raise _http_error(exc)
    projects = filter_projects(
        projects, search=search, sort_key=sort.value, descending=direction == SortDirection.desc
    )
    return [ProjectResponse.from_project(p) for p in projects]


@app.post(
    "/library/{item_id}/load",
    response_model=ItemResponse,
    tags=["library"],
    summary="Open a saved project (read-only, without audio)",
)
async def load_project(item_id: str) -> ItemResponse:
    try:
        item = await services.gateway.load(item_id)
    except StorageFailure as exc:
        raise _http_error(exc)
    item = services.repository.add_item(item)
    services.repository.set_active(item.id)
    return _item_response(item)


@app.delete(
    "/library/{item_id}",
    status_code=204,
    tags=["library"],
    summary="Delete a saved project",
    responses={
        403: {"model": ErrorResponse, "description": "Storage policy blocked the delete"},
        404: {"model": ErrorResponse, "description": "Project not found"},
    },
)
async def delete_project(item_id: str) -> Response:
    try:
        await services.gateway.delete(item_id)
    except StorageFailure as exc:
        raise _http_error(exc)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Endpoints: Connectivity and health
# ---------------------------------------------------------------------------


@app.post(
    "/connectivity/online",
    response_model=ConnectivityResponse,
    tags=["connectivity"],
    summary="Report that the network is back; resumes a failed transcription",
)
async def connectivity_online() -> ConnectivityResponse:
    return ConnectivityResponse(resumed=services.engine.on_connectivity_restored())


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["health"],
    summary="Health check",
)
async def health_check() -> HealthResponse:
    return HealthResponse(
        status="ok",
        version=__version__,
        credential_configured=services.settings.has_credential,
    )


def run_api(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=host, port=port)
