"""Core data model and engines.

WHY: The core holds the only stateful logic in the package: the item status
machine, the version lineage, and the two engines that mutate them.

HOW: models.py defines the types, chunks.py the window split, versions.py
the append-only history, repository.py the live item collection, and
engine.py / stages.py the transcription loop and single-call stages.

RULES:
- Nothing in core imports the server or CLI
- Status changes go through MediaItem.transition()
"""
