"""Offline/online detection that triggers auto-resume.

WHY: Transcription pauses itself when the remote model is unreachable. When
the network comes back, the paused work should continue without the user
having to press anything.

HOW: ConnectivityWatcher probes a URL with httpx on a fixed interval and
remembers the last result. Every offline -> online edge calls the
on_restored callback (normally TranscriptionEngine.on_connectivity_restored).
The first probe only establishes a baseline.

RULES:
- Any HTTP response counts as online; transport errors count as offline
- The callback fires once per offline -> online transition
- An empty probe URL disables the watcher (run() returns immediately)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

import httpx

from chunkscribe.config import CONNECTIVITY_PROBE_INTERVAL_S, CONNECTIVITY_PROBE_URL

logger = logging.getLogger(__name__)


class ConnectivityWatcher:
    def __init__(
        self,
        on_restored: Callable[[], Any],
        probe_url: Optional[str] = None,
        interval_s: float = CONNECTIVITY_PROBE_INTERVAL_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_s: float = 5.0,
    ) -> None:
        self._on_restored = on_restored
        self.probe_url = CONNECTIVITY_PROBE_URL if probe_url is None else probe_url
        self.interval_s = interval_s
        self._transport = transport
        self._timeout_s = timeout_s
        self.online: Optional[bool] = None

    async def probe(self) -> bool:
        async with httpx.AsyncClient(
            timeout=self._timeout_s, transport=self._transport
        ) as client:
            try:
                await client.head(self.probe_url)
            except httpx.HTTPError as exc:
                logger.debug("Connectivity probe failed: %s", exc)
                return False
        return True

    async def check_once(self) -> bool:
        """Probe once; True when this probe observed an offline -> online edge."""
        online = await self.probe()
        restored = self.online is False and online
        if self.online is not None and online != self.online:
            logger.info("Connectivity %s", "restored" if online else "lost")
        self.online = online
        if restored:
            self._on_restored()
        return restored

    async def run(self) -> None:
        if not self.probe_url:
            logger.info("No connectivity probe URL configured; watcher disabled")
            return
        while True:
            await self.check_once()
            await asyncio.sleep(self.interval_s)
