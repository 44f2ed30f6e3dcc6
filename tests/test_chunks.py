"""Tests for the fixed-length window split."""

from __future__ import annotations

import pytest

from chunkscribe.core.chunks import ChunkWindow, chunk_count, window_at, windows


class TestWindows:
    def test_500_seconds_in_240_second_windows(self):
        result = windows(500, 240)
        assert [w.length_s for w in result] == [240, 240, 20]
        assert [w.start_s for w in result] == [0, 240, 480]
        assert [w.index for w in result] == [0, 1, 2]

    @pytest.mark.parametrize("duration", [1, 239.5, 240, 241, 960, 1000.25])
    def test_count_and_length_sum(self, duration):
        result = windows(duration, 240)
        assert len(result) == chunk_count(duration, 240)
        assert sum(w.length_s for w in result) == pytest.approx(duration)

    def test_exact_multiple_has_no_empty_tail(self):
        result = windows(480, 240)
        assert len(result) == 2
        assert result[-1].length_s == 240

    def test_zero_duration_yields_nothing(self):
        assert windows(0) == []
        assert chunk_count(-5) == 0

    def test_non_positive_window_rejected(self):
        with pytest.raises(ValueError):
            windows(100, 0)

    def test_deterministic(self):
        assert windows(777, 240) == windows(777, 240)

    def test_end_property(self):
        assert ChunkWindow(index=1, start_s=240, length_s=20).end_s == 260


class TestWindowAt:
    def test_matches_full_list(self):
        full = windows(1000, 240)
        assert [window_at(i, 1000, 240) for i in range(len(full))] == full

    def test_out_of_range(self):
        with pytest.raises(IndexError):
            window_at(3, 500, 240)
