"""Resumable chunked transcription of one media item at a time.

WHY: A long recording takes many remote calls. Any of them can fail after
the retry policy is spent, the user can pause at any time, and the network
can drop and come back. The engine must never lose a committed chunk, never
run two loops for the same item, and pick up exactly where it stopped.

HOW: start() is split in two halves so callers that need synchronous error
reporting (the HTTP layer) can claim a run first and execute it later:

  claim()    -> precondition checks, continue/restart decision, RAW version
                selection, status -> processing (no await between the busy
                check and the transition)
  execute()  -> duration probe, chunk loop, completion or failure handling

Every loop step re-fetches the item from the ItemRepository after each
await. The checkpoint of chunk i is the pair (processed_chunks = i + 1,
RAW content patched) and happens with no await in between.

RULES:
- CredentialMissingError / SourceUnavailableError / ItemBusyError / KeyError
  are raised before any mutation
- A user pause (status paused, last_error None) is observed at the top of
  each iteration and is not a failure
- A failed chunk pauses the item with last_error set; nothing is saved
- Completion finalizes RAW, points current at it and saves via the gateway
- total_chunks is always recomputed from a known duration
- Auto-resume on reconnection: first paused item, one attempt per event
- Progress percentages round half up
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import AsyncContextManager, Awaitable, Callable, Dict, List, Optional, Set

from chunkscribe.api.retry import RemoteCallAdapter, RemoteSettings, open_adapter
from chunkscribe.audio import AudioPipeline
from chunkscribe.config import CHUNK_DURATION_S, ERROR_DISPLAY_LIMIT, RAW_LABELS
from chunkscribe.core.chunks import chunk_count, window_at
from chunkscribe.core.models import ItemStatus, MediaItem, StageKind, Version, new_id
from chunkscribe.core.repository import ItemRepository
from chunkscribe.core.versions import VersionStore
from chunkscribe.errors import (
    ChunkscribeError,
    CredentialMissingError,
    ItemBusyError,
    SourceUnavailableError,
)
from chunkscribe.storage.gateway import PersistenceGateway

logger = logging.getLogger(__name__)

DecideContinue = Callable[[MediaItem], Awaitable[bool]]
AdapterFactory = Callable[[RemoteSettings], AsyncContextManager[RemoteCallAdapter]]


async def always_continue(item: MediaItem) -> bool:
    return True


async def always_restart(item: MediaItem) -> bool:
    return False


def error_excerpt(message: Optional[str], limit: int = ERROR_DISPLAY_LIMIT) -> Optional[str]:
    """Shorten an error message for display next to a paused item."""
    if message is None or len(message) <= limit:
        return message
    return message[: limit - 3] + "..."


def percent(done: int, total: int) -> int:
    """Whole percentage of done/total, ties rounded up."""
    if total <= 0:
        return 0
    return int(math.floor(done / total * 100 + 0.5))


@dataclass
class TranscriptionRun:
    """A claimed run: the item is processing and owns this RAW version."""

    item_id: str
    raw_version_id: str
    start_index: int


class TranscriptionEngine:
    """Drive items through the chunk loop with pause/resume semantics.

    Args:
        repository: Live item collection.
        settings: Shared credential and model choice.
        audio: Duration probe and window encoder.
        gateway: Persistence for the completion save (None disables saving).
        adapter_factory: Opens a RemoteCallAdapter for the settings.
        decide_continue: Default continue/restart policy when a fresh start
            finds prior progress. None means continue.
        window_s: Chunk window length in seconds.
    """

    def __init__(
        self,
        repository: ItemRepository,
        settings: RemoteSettings,
        audio: AudioPipeline,
        gateway: Optional[PersistenceGateway] = None,
        adapter_factory: AdapterFactory = open_adapter,
        decide_continue: Optional[DecideContinue] = None,
        window_s: float = CHUNK_DURATION_S,
    ) -> None:
        self._repository = repository
        self._settings = settings
        self._audio = audio
        self._gateway = gateway
        self._adapter_factory = adapter_factory
        self._decide_continue = decide_continue or always_continue
        self._window_s = window_s
        self._active_runs: Set[str] = set()
        self._resume_tasks: Dict[str, asyncio.Task] = {}

    # ---- public API -------------------------------------------------------

    def is_running(self, item_id: str) -> bool:
        return item_id in self._active_runs

    def ensure_startable(self, item_id: str) -> MediaItem:
        """Raise the error start() would raise up front, without mutating."""
        item = self._repository.require_item(item_id)
        self._check_can_start(item)
        return item

    async def start(
        self,
        item_id: str,
        resume: bool = False,
        decide_continue: Optional[DecideContinue] = None,
    ) -> ItemStatus:
        """Claim and run a transcription; returns the status it ended in."""
        run = await self.claim(item_id, resume=resume, decide_continue=decide_continue)
        return await self.execute(run)

    async def claim(
        self,
        item_id: str,
        resume: bool = False,
        decide_continue: Optional[DecideContinue] = None,
    ) -> TranscriptionRun:
        """Check preconditions and move the item to processing.

        Raises:
            KeyError: Unknown item.
            CredentialMissingError: No API key configured.
            SourceUnavailableError: Item has no readable audio.
            ItemBusyError: A run is already active for the item.
        """
        item = self._repository.require_item(item_id)
        self._check_can_start(item)

        restart = False
        if not resume and item.processed_chunks > 0:
            decide = decide_continue or self._decide_continue
            keep = await decide(item)
            # The decision may take arbitrarily long; re-validate live state.
            item = self._repository.require_item(item_id)
            self._check_can_start(item)
            resume = keep
            restart = not keep

        store = VersionStore(item)
        raw = store.latest(StageKind.RAW) if resume else None
        if raw is not None and raw.finalized and item.processed_chunks < item.total_chunks:
            raw = None

        item.transition(ItemStatus.PROCESSING)
        item.last_error = None
        self._active_runs.add(item_id)

        if raw is None:
            if resume and item.processed_chunks > 0:
                logger.warning(
                    "Item %s has progress but no RAW version; restarting from chunk 0",
                    item_id,
                )
            item.set_checkpoint(0, 0 if restart else item.total_chunks)
            raw = store.append(
                Version(
                    id=new_id(),
                    stage=StageKind.RAW,
                    content="",
                    display_name=RAW_LABELS["started"],
                )
            )
        else:
            store.set_current(raw.id)

        logger.info(
            "Starting transcription of %s at chunk %d (%s)",
            item_id,
            item.processed_chunks,
            "resume" if resume else "fresh",
        )
        return TranscriptionRun(
            item_id=item_id, raw_version_id=raw.id, start_index=item.processed_chunks
        )

    async def execute(self, run: TranscriptionRun) -> ItemStatus:
        """Run the chunk loop for a claimed run until done, paused or failed."""
        try:
            async with self._adapter_factory(self._settings) as adapter:
                finished = await self._loop(run, adapter)
        except Exception as exc:
            self._active_runs.discard(run.item_id)
            return self._pause_on_failure(run.item_id, exc)

        self._active_runs.discard(run.item_id)
        if not finished:
            item = self._repository.get_item(run.item_id)
            return item.status if item is not None else ItemStatus.PAUSED

        item = self._complete(run)
        if item.status == ItemStatus.COMPLETED and self._gateway is not None:
            await self._gateway.save_quietly(item)
        return item.status

    def pause(self, item_id: str) -> MediaItem:
        """User-initiated pause; observed by the loop before its next chunk.

        Raises:
            KeyError: Unknown item.
            ItemBusyError: No transcription loop is running for the item.
        """
        item = self._repository.require_item(item_id)
        if item_id not in self._active_runs or item.status != ItemStatus.PROCESSING:
            raise ItemBusyError("Item {} is not transcribing".format(item_id))
        item.transition(ItemStatus.PAUSED)
        item.last_error = None
        logger.info("Pause requested for %s", item_id)
        return item

    def on_connectivity_restored(self) -> List[str]:
        """Schedule resume of the first paused item, however it was paused.

        Must be called from inside the running event loop. Returns the ids
        for which a resume task was scheduled.
        """
        if not self._settings.has_credential:
            logger.info("Connectivity restored but no credential; not resuming")
            return []

        for item in self._repository.list_items():
            if (
                item.status == ItemStatus.PAUSED
                and item.source is not None
                and item.id not in self._active_runs
                and item.id not in self._resume_tasks
            ):
                logger.info("Connectivity restored; resuming %s", item.id)
                task = asyncio.get_running_loop().create_task(self._auto_resume(item.id))
                self._resume_tasks[item.id] = task
                return [item.id]
        return []

    async def drain(self) -> None:
        """Wait for every scheduled auto-resume task to finish."""
        while self._resume_tasks:
            await asyncio.gather(*list(self._resume_tasks.values()))

    # ---- internals --------------------------------------------------------

    def _check_can_start(self, item: MediaItem) -> None:
        if not self._settings.has_credential:
            raise CredentialMissingError()
        if item.source is None or not item.source.is_readable():
            raise SourceUnavailableError(
                "Item {} has no audio source (restored items are read-only)".format(item.id)
            )
        if item.status == ItemStatus.PROCESSING or item.id in self._active_runs:
            raise ItemBusyError("Item {} is already processing".format(item.id))

    async def _loop(self, run: TranscriptionRun, adapter: RemoteCallAdapter) -> bool:
        """Process chunks from run.start_index; False when stopped early."""
        item_id = run.item_id
        item = self._repository.require_item(item_id)

        if item.duration_s <= 0:
            duration = await self._audio.probe_duration(item.source)
            item = self._repository.require_item(item_id)
            item.duration_s = duration

        total = chunk_count(item.duration_s, self._window_s)
        item.set_checkpoint(min(item.processed_chunks, total), total)
        start_index = min(run.start_index, item.processed_chunks)

        for index in range(start_index, total):
            item = self._repository.get_item(item_id)
            if item is None:
                logger.warning("Item %s disappeared mid-run", item_id)
                return False
            if item.status == ItemStatus.PAUSED and item.last_error is None:
                logger.info("Transcription of %s paused at chunk %d/%d", item_id, index, total)
                return False
            if item.status != ItemStatus.PROCESSING:
                return False

            item.progress = percent(index, total)
            window = window_at(index, item.duration_s, self._window_s)
            payload = await self._audio.encode_window(item.source, window)
            text = await adapter.transcribe(payload)

            item = self._repository.require_item(item_id)
            store = VersionStore(item)
            raw = store.by_id(run.raw_version_id)
            if raw is None:
                raise KeyError("RAW version {} vanished".format(run.raw_version_id))
            item.set_checkpoint(index + 1, total)
            item.progress = percent(index + 1, total)
            store.patch_content(raw.id, raw.content + text + " ", RAW_LABELS["streaming"])
            logger.debug("Committed chunk %d/%d of %s", index + 1, total, item_id)

        item = self._repository.require_item(item_id)
        return item.status == ItemStatus.PROCESSING

    def _complete(self, run: TranscriptionRun) -> MediaItem:
        item = self._repository.require_item(run.item_id)
        store = VersionStore(item)
        raw = store.by_id(run.raw_version_id)
        if raw is None:
            raise KeyError("RAW version {} vanished".format(run.raw_version_id))
        item.set_checkpoint(item.total_chunks, item.total_chunks)
        item.progress = 100
        store.finalize(raw.id, raw.content, RAW_LABELS["complete"])
        store.set_current(raw.id)
        item.transition(ItemStatus.COMPLETED)
        logger.info("Transcription of %s completed (%d chunks)", item.id, item.total_chunks)
        return item

    def _pause_on_failure(self, item_id: str, exc: Exception) -> ItemStatus:
        logger.error("Transcription of %s failed: %s", item_id, exc)
        item = self._repository.get_item(item_id)
        if item is None:
            return ItemStatus.PAUSED
        if item.status == ItemStatus.PROCESSING:
            item.transition(ItemStatus.PAUSED)
        item.last_error = str(exc) or type(exc).__name__
        return item.status

    async def _auto_resume(self, item_id: str) -> None:
        try:
            await self.start(item_id, resume=True)
        except (ChunkscribeError, KeyError) as exc:
            logger.warning("Auto-resume of %s skipped: %s", item_id, exc)
        finally:
            self._resume_tasks.pop(item_id, None)
