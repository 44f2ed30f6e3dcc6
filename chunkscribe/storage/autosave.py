"""Periodic safety-net save of the active item.

WHY: The primary persistence path is the explicit save at the end of a
transcription or stage run. If that save failed, or the user changed the
current version afterwards, a low-frequency timer catches up.

HOW: check_once() looks at the repository's active item every tick and
saves it when it is completed, not already saving, and the last successful
save is old enough. run() loops check_once() forever; the server starts it
from its lifespan and cancels it on shutdown.

RULES:
- Only completed items are autosaved
- At least AUTOSAVE_MIN_AGE_S since the last successful save (any item)
- Storage failures are logged and never stop the loop
"""

from __future__ import annotations

import asyncio
import logging

from chunkscribe.config import AUTOSAVE_CHECK_INTERVAL_S, AUTOSAVE_MIN_AGE_S
from chunkscribe.core.models import ItemStatus
from chunkscribe.core.repository import ItemRepository
from chunkscribe.storage.gateway import PersistenceGateway

logger = logging.getLogger(__name__)


class AutoSaver:
    def __init__(
        self,
        repository: ItemRepository,
        gateway: PersistenceGateway,
        interval_s: float = AUTOSAVE_CHECK_INTERVAL_S,
        min_age_s: float = AUTOSAVE_MIN_AGE_S,
    ) -> None:
        self._repository = repository
        self._gateway = gateway
        self.interval_s = interval_s
        self.min_age_s = min_age_s

    async def check_once(self) -> bool:
        """Save the active item if it qualifies; True when a save succeeded."""
        item = self._repository.active_item()
        if item is None or item.status != ItemStatus.COMPLETED:
            return False
        if self._gateway.is_saving(item.id):
            return False
        if self._gateway.seconds_since_save() < self.min_age_s:
            return False
        logger.debug("Autosaving %s", item.id)
        return await self._gateway.save_quietly(item)

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            await self.check_once()
