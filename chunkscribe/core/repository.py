"""Thread-safe in-memory collection of media items keyed by id.

WHY: The transcription loop, stage runs, the autosave loop, the reconnection
handler and the HTTP layer all touch the same items. Engines suspend at
every remote call, so anything they captured before the await may be stale
afterwards. A single repository that always hands out the live instance lets
every step re-fetch current state by id.

HOW: Items are stored in a plain dict under a threading.Lock. The
repository also remembers which item is "active" (the one the user is
looking at), which the autosave loop consults.

RULES:
- get_item() returns the live instance (not a copy) or None
- list_items() returns a new list ordered by creation time
- The first item ever added becomes active when none is active
- Items are never removed from versions; remove_item() drops a whole item
- Upload directories registered with an item are deleted when the item is
  removed or cleanup_uploads() runs (best effort, never raises)
"""

from __future__ import annotations

import logging
import shutil
import threading
from pathlib import Path
from typing import Dict, List, Optional

from chunkscribe.core.models import MediaItem, SourceHandle, new_id

logger = logging.getLogger(__name__)


class ItemRepository:
    """Live item store shared by every engine and reader."""

    def __init__(self) -> None:
        self._items: Dict[str, MediaItem] = {}
        self._lock = threading.Lock()
        self._active_id: Optional[str] = None
        self._upload_dirs: Dict[str, Path] = {}

    def create_item(
        self,
        source: Optional[SourceHandle] = None,
        upload_dir: Optional[Path] = None,
    ) -> MediaItem:
        """Create an idle item for a newly ingested source.

        upload_dir, when given, is a scratch directory owned by the item and
        removed together with it.
        """
        item = MediaItem(id=new_id(), source=source)
        if source is not None:
            item.file_name = source.file_name
            item.file_size = source.file_size
            item.file_type = source.mime_type
        self.add_item(item)
        if upload_dir is not None:
            with self._lock:
                self._upload_dirs[item.id] = upload_dir
        logger.info("Created item %s for %s", item.id, item.file_name)
        return item

    def add_item(self, item: MediaItem) -> MediaItem:
        """Register an item; an existing item with the same id is kept.

        Loading a library project that is already open must not replace the
        live instance an engine may be running against.
        """
        with self._lock:
            existing = self._items.get(item.id)
            if existing is not None:
                item = existing
            else:
                self._items[item.id] = item
            if self._active_id is None:
                self._active_id = item.id
        return item

    def get_item(self, item_id: str) -> Optional[MediaItem]:
        with self._lock:
            return self._items.get(item_id)

    def require_item(self, item_id: str) -> MediaItem:
        item = self.get_item(item_id)
        if item is None:
            raise KeyError("Unknown item: {}".format(item_id))
        return item

    def list_items(self) -> List[MediaItem]:
        with self._lock:
            return sorted(self._items.values(), key=lambda i: i.created_at)

    def remove_item(self, item_id: str) -> bool:
        with self._lock:
            item = self._items.pop(item_id, None)
            upload_dir = self._upload_dirs.pop(item_id, None)
            if self._active_id == item_id:
                self._active_id = None
        if upload_dir is not None:
            _remove_dir(upload_dir)
        return item is not None

    def cleanup_uploads(self) -> int:
        """Delete every registered upload directory; returns how many.

        Items stay in the repository but lose their readable source.
        """
        with self._lock:
            upload_dirs = list(self._upload_dirs.values())
            self._upload_dirs.clear()
        for upload_dir in upload_dirs:
            _remove_dir(upload_dir)
        if upload_dirs:
            logger.info("Removed %d upload dir(s)", len(upload_dirs))
        return len(upload_dirs)

    @property
    def active_id(self) -> Optional[str]:
        with self._lock:
            return self._active_id

    def set_active(self, item_id: str) -> MediaItem:
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise KeyError("Unknown item: {}".format(item_id))
            self._active_id = item_id
            return item

    def active_item(self) -> Optional[MediaItem]:
        with self._lock:
            if self._active_id is None:
                return None
            return self._items.get(self._active_id)


def _remove_dir(path: Path) -> None:
    if path.exists():
        try:
            shutil.rmtree(path)
        except OSError:
            logger.warning("Failed to clean up upload dir: %s", path)
