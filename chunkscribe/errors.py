"""Exception taxonomy shared by the engines, storage layer and HTTP surface.

WHY: Callers must tell a missing credential from a missing audio source, a
busy item from an illegal state change, and a missing stored project from a
delete that the storage policy silently refused. Typed exceptions make each
of those distinguishable without parsing messages.

HOW: Every error derives from ChunkscribeError. Storage problems share the
StorageFailure base so "not saved" handling can catch them in one place.

RULES:
- CredentialMissingError and SourceUnavailableError are raised before any
  item state is mutated
- RemoteFailure is raised only after the whole retry/fallback policy is spent
- PolicyBlocked means the row exists but the delete affected nothing
"""

from __future__ import annotations

from typing import Optional


class ChunkscribeError(Exception):
    """Base class for all chunkscribe errors."""


class CredentialMissingError(ChunkscribeError):
    """No API key is configured; the user has to supply one."""

    def __init__(self, message: str = "An API key is required before processing.") -> None:
        super().__init__(message)


class SourceUnavailableError(ChunkscribeError):
    """The item has no readable audio source (e.g. restored from the library)."""


class ItemBusyError(ChunkscribeError):
    """The item is already being processed by another run."""


class StateTransitionError(ChunkscribeError):
    """An item status change is not allowed by the transition table."""

    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(
            "Illegal status transition: {} -> {}".format(current, requested)
        )


class AudioPipelineError(ChunkscribeError):
    """Decoding, probing or encoding the audio source failed."""


class RemoteFailure(ChunkscribeError):
    """A remote call failed on every candidate model and every attempt.

    WHY: The engines turn this into item state (paused or error) and need the
    underlying cause for the user-visible message.

    RULES:
    - last_error is the final exception observed (also chained as __cause__)
    - attempts is the total number of calls made
    """

    def __init__(self, message: str, last_error: Optional[BaseException], attempts: int) -> None:
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(message)


class StorageFailure(ChunkscribeError):
    """Saving, listing, loading or deleting a snapshot failed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ProjectNotFound(StorageFailure):
    """No stored snapshot exists (or is visible) for the requested id."""


class PolicyBlocked(StorageFailure):
    """The snapshot exists but the storage policy refused to delete it."""
