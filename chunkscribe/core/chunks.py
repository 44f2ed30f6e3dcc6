"""Fixed-length time windows over an audio source.

WHY: Long recordings are transcribed one window at a time so a network
interruption loses at most one window of work. Both the engine and the
audio pipeline need the same deterministic split.

HOW: windows() walks the duration in steps of window_s; the last window is
shortened to end exactly at the duration.

RULES:
- count == ceil(duration / window)
- sum of window lengths == duration
- Pure function: same inputs, same output, no side effects
- Non-positive durations produce no windows
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List

from chunkscribe.config import CHUNK_DURATION_S


@dataclass(frozen=True)
class ChunkWindow:
    """One time slice of the source, processed as a single remote call."""

    index: int
    start_s: float
    length_s: float

    @property
    def end_s(self) -> float:
        return self.start_s + self.length_s


def chunk_count(duration_s: float, window_s: float = CHUNK_DURATION_S) -> int:
    """Number of windows needed to cover duration_s."""
    if window_s <= 0:
        raise ValueError("window_s must be positive, got {}".format(window_s))
    if duration_s <= 0:
        return 0
    return math.ceil(duration_s / window_s)


def windows(duration_s: float, window_s: float = CHUNK_DURATION_S) -> List[ChunkWindow]:
    """Split duration_s into ordered windows of at most window_s seconds.

    Args:
        duration_s: Total decoded audio duration in seconds.
        window_s: Window length in seconds.

    Returns:
        Windows ordered by index, e.g. 500 s / 240 s -> lengths 240, 240, 20.
    """
    count = chunk_count(duration_s, window_s)
    result: List[ChunkWindow] = []
    for index in range(count):
        start = index * window_s
        length = min(window_s, duration_s - start)
        result.append(ChunkWindow(index=index, start_s=start, length_s=length))
    return result


def window_at(index: int, duration_s: float, window_s: float = CHUNK_DURATION_S) -> ChunkWindow:
    """Return the single window at index without building the whole list."""
    count = chunk_count(duration_s, window_s)
    if not 0 <= index < count:
        raise IndexError("Window {} out of range (0..{})".format(index, count - 1))
    start = index * window_s
    return ChunkWindow(index=index, start_s=start, length_s=min(window_s, duration_s - start))
