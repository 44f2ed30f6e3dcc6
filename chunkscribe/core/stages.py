"""Single-call text transformations that add a derived version.

WHY: After transcription the user refines text in passes (diacritics,
headings, formal register, free-form instruction). Each pass must leave its
input untouched and show up in the history even when it fails, so the user
can retry from the same or another parent.

HOW: begin() validates, appends a placeholder version under the chosen
parent and moves the item to processing. complete() makes the one remote
call (retry/fallback applies inside the adapter), then finalizes the
placeholder with the result or with a failure marker. run() does both.
An optional ticker nudges progress while the call is outstanding; it is
cosmetic only.

RULES:
- Unknown parent version -> None, nothing changes
- Missing credential -> CredentialMissingError before any mutation
- Busy item -> ItemBusyError before any mutation
- RAW is never a target stage; CUSTOM requires an instruction
- Success: version finalized, status completed, progress 100, save
- Failure: version finalized with the failure marker, status error,
  progress 0, last_error set, no save
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from chunkscribe.api.retry import RemoteSettings, open_adapter
from chunkscribe.config import (
    FAILED_SUFFIX,
    IN_PROGRESS_SUFFIX,
    STAGE_FAILURE_MARKER,
    STAGE_LABELS,
    STAGE_PLACEHOLDER,
    STAGE_PROGRESS_CEILING,
    STAGE_PROGRESS_INTERVAL_S,
    STAGE_PROGRESS_STEP,
)
from chunkscribe.core.engine import AdapterFactory
from chunkscribe.core.models import ItemStatus, StageKind, Version, new_id
from chunkscribe.core.repository import ItemRepository
from chunkscribe.core.versions import VersionStore
from chunkscribe.errors import CredentialMissingError, ItemBusyError
from chunkscribe.storage.gateway import PersistenceGateway

logger = logging.getLogger(__name__)


async def simulate_progress(
    repository: ItemRepository,
    item_id: str,
    step: int = STAGE_PROGRESS_STEP,
    interval_s: float = STAGE_PROGRESS_INTERVAL_S,
    ceiling: int = STAGE_PROGRESS_CEILING,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Raise progress by step every interval_s up to ceiling while processing."""
    while True:
        await sleep(interval_s)
        item = repository.get_item(item_id)
        if item is None or item.status != ItemStatus.PROCESSING:
            return
        item.progress = min(ceiling, item.progress + step)


@dataclass
class StageRun:
    item_id: str
    version_id: str
    stage: StageKind
    source_text: str
    custom_prompt: Optional[str] = None


class StageEngine:
    """Run one transformation stage against a chosen parent version.

    Args:
        repository: Live item collection.
        settings: Shared credential and model choice.
        gateway: Persistence for the success save (None disables saving).
        adapter_factory: Opens a RemoteCallAdapter for the settings.
        busy_check: Extra "is this item busy" test, e.g. an active
            transcription loop that was paused but not yet stopped.
        progress_interval_s: Ticker interval; None disables the ticker.
    """

    def __init__(
        self,
        repository: ItemRepository,
        settings: RemoteSettings,
        gateway: Optional[PersistenceGateway] = None,
        adapter_factory: AdapterFactory = open_adapter,
        busy_check: Optional[Callable[[str], bool]] = None,
        progress_interval_s: Optional[float] = STAGE_PROGRESS_INTERVAL_S,
    ) -> None:
        self._repository = repository
        self._settings = settings
        self._gateway = gateway
        self._adapter_factory = adapter_factory
        self._busy_check = busy_check or (lambda item_id: False)
        self._progress_interval_s = progress_interval_s

    async def run(
        self,
        item_id: str,
        stage: StageKind,
        parent_version_id: str,
        custom_prompt: Optional[str] = None,
    ) -> Optional[Version]:
        """Begin and complete a stage; returns the new version or None."""
        stage_run = self.begin(item_id, stage, parent_version_id, custom_prompt)
        if stage_run is None:
            return None
        return await self.complete(stage_run)

    def begin(
        self,
        item_id: str,
        stage: StageKind,
        parent_version_id: str,
        custom_prompt: Optional[str] = None,
    ) -> Optional[StageRun]:
        """Validate and append the placeholder version.

        Raises:
            KeyError: Unknown item.
            CredentialMissingError: No API key configured.
            ItemBusyError: The item is already processing.
            ValueError: RAW stage, or CUSTOM without an instruction.
        """
        item = self._repository.require_item(item_id)
        store = VersionStore(item)
        parent = store.by_id(parent_version_id)
        if parent is None:
            logger.warning(
                "Stage %s on %s ignored: unknown parent %s", stage.value, item_id, parent_version_id
            )
            return None
        if not self._settings.has_credential:
            raise CredentialMissingError()
        if item.status == ItemStatus.PROCESSING or self._busy_check(item_id):
            raise ItemBusyError("Item {} is already processing".format(item_id))
        if stage == StageKind.RAW:
            raise ValueError("RAW versions are produced by transcription only")
        if stage == StageKind.CUSTOM and not (custom_prompt or "").strip():
            raise ValueError("A custom stage needs an instruction")

        label = STAGE_LABELS[stage.value]
        version = store.append(
            Version(
                id=new_id(),
                stage=stage,
                content=STAGE_PLACEHOLDER,
                display_name=label + IN_PROGRESS_SUFFIX,
                parent_id=parent.id,
                prompt_used=custom_prompt if stage == StageKind.CUSTOM else None,
            )
        )
        item.transition(ItemStatus.PROCESSING)
        item.last_error = None
        item.progress = 0
        logger.info("Stage %s started on %s from %s", stage.value, item_id, parent.id)
        return StageRun(
            item_id=item_id,
            version_id=version.id,
            stage=stage,
            source_text=parent.content,
            custom_prompt=custom_prompt,
        )

    async def complete(self, stage_run: StageRun) -> Version:
        """Make the remote call and finalize the placeholder version."""
        ticker = None
        if self._progress_interval_s is not None:
            ticker = asyncio.ensure_future(
                simulate_progress(
                    self._repository, stage_run.item_id, interval_s=self._progress_interval_s
                )
            )

        label = STAGE_LABELS[stage_run.stage.value]
        try:
            async with self._adapter_factory(self._settings) as adapter:
                text = await adapter.transform(
                    stage_run.source_text, stage_run.stage, stage_run.custom_prompt
                )
        except Exception as exc:
            logger.error("Stage %s on %s failed: %s", stage_run.stage.value, stage_run.item_id, exc)
            item = self._repository.require_item(stage_run.item_id)
            version = VersionStore(item).finalize(
                stage_run.version_id, STAGE_FAILURE_MARKER, label + FAILED_SUFFIX
            )
            if item.status == ItemStatus.PROCESSING:
                item.transition(ItemStatus.ERROR)
            item.progress = 0
            item.last_error = str(exc) or type(exc).__name__
            return version
        finally:
            if ticker is not None:
                ticker.cancel()

        item = self._repository.require_item(stage_run.item_id)
        version = VersionStore(item).finalize(stage_run.version_id, text, label)
        if item.status == ItemStatus.PROCESSING:
            item.transition(ItemStatus.COMPLETED)
        item.progress = 100
        logger.info("Stage %s on %s completed", stage_run.stage.value, stage_run.item_id)
        if self._gateway is not None:
            await self._gateway.save_quietly(item)
        return version
