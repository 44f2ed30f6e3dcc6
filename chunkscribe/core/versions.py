"""Append-only version history for a single media item.

WHY: The raw transcript and every derived text live side by side as a
lineage forest. Streaming transcription rewrites the RAW node in place while
it grows, stage runs add new nodes, and nothing may ever be removed. Keeping
those rules in one place stops engines from editing the list directly.

HOW: VersionStore wraps a MediaItem and operates on its versions list and
current_version_id. It holds no state of its own, so a store can be created
around a freshly re-fetched item at any time.

RULES:
- append() adds at the end and optionally moves the current pointer
- patch_content() only extends the content of a non-finalized version
- finalize() is the terminal write; afterwards content is immutable
- There is no remove operation
- Single writer per item is enforced by the engines, not here
"""

from __future__ import annotations

from typing import List, Optional

from chunkscribe.core.models import MediaItem, StageKind, Version


class VersionStore:
    """Operations on one item's version sequence."""

    def __init__(self, item: MediaItem) -> None:
        self._item = item

    @property
    def item(self) -> MediaItem:
        return self._item

    def append(self, version: Version, make_current: bool = True) -> Version:
        """Add a version to the end of the history.

        RULES:
        - Version ids must be unique within the item
        - A non-root parent_id must already exist in the item
        """
        if self.by_id(version.id) is not None:
            raise ValueError("Duplicate version id: {}".format(version.id))
        if version.parent_id is not None and self.by_id(version.parent_id) is None:
            raise KeyError("Unknown parent version: {}".format(version.parent_id))

        self._item.versions.append(version)
        if make_current:
            self._item.current_version_id = version.id
        self._item.touch()
        return version

    def patch_content(self, version_id: str, content: str, display_name: str) -> Version:
        """Replace a streaming version's content and name in place.

        RULES:
        - Position and id are preserved
        - Finalized versions are rejected
        - The new content must extend the old content (never shrinks)
        """
        version = self._require(version_id)
        if version.finalized:
            raise ValueError("Version {} is finalized".format(version_id))
        if not content.startswith(version.content):
            raise ValueError(
                "Content of version {} may only grow while streaming".format(version_id)
            )
        version.content = content
        version.display_name = display_name
        self._item.touch()
        return version

    def finalize(self, version_id: str, content: str, display_name: str) -> Version:
        """Write the terminal content and name of a version.

        Finalizing an already-final version is allowed only when the content
        is unchanged (a completed run that is re-confirmed).
        """
        version = self._require(version_id)
        if version.finalized and version.content != content:
            raise ValueError("Version {} is finalized".format(version_id))
        version.content = content
        version.display_name = display_name
        version.finalized = True
        self._item.touch()
        return version

    def by_stage(self, stage: StageKind) -> List[Version]:
        return [v for v in self._item.versions if v.stage == stage]

    def by_id(self, version_id: str) -> Optional[Version]:
        for version in self._item.versions:
            if version.id == version_id:
                return version
        return None

    def latest(self, stage: StageKind) -> Optional[Version]:
        matches = self.by_stage(stage)
        return matches[-1] if matches else None

    def current(self) -> Optional[Version]:
        if self._item.current_version_id is None:
            return None
        return self.by_id(self._item.current_version_id)

    def set_current(self, version_id: str) -> Version:
        """Select which version is considered the active output."""
        version = self._require(version_id)
        self._item.current_version_id = version.id
        self._item.touch()
        return version

    def lineage(self, version_id: str) -> List[Version]:
        """Return the ancestor chain of a version, root first."""
        chain: List[Version] = []
        seen = set()
        version = self.by_id(version_id)
        while version is not None:
            if version.id in seen:
                raise ValueError("Cycle in version lineage at {}".format(version.id))
            seen.add(version.id)
            chain.append(version)
            version = self.by_id(version.parent_id) if version.parent_id else None
        chain.reverse()
        return chain

    def validate(self) -> List[str]:
        """Check lineage integrity and return a list of problems (empty if ok)."""
        problems: List[str] = []
        ids = [v.id for v in self._item.versions]
        if len(ids) != len(set(ids)):
            problems.append("duplicate version ids")
        known = set(ids)
        for version in self._item.versions:
            if version.parent_id is None and version.stage != StageKind.RAW:
                problems.append("non-RAW root: {}".format(version.id))
            if version.parent_id is not None and version.parent_id not in known:
                problems.append("dangling parent on {}".format(version.id))
        current = self._item.current_version_id
        if current is not None and current not in known:
            problems.append("current version {} not present".format(current))
        return problems

    def _require(self, version_id: str) -> Version:
        version = self.by_id(version_id)
        if version is None:
            raise KeyError("Unknown version: {}".format(version_id))
        return version
