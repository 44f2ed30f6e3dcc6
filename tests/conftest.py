"""Shared fixtures for the chunkscribe test suite.

WHY: The API and CLI tests share the remote adapter and storage fakes;
fixtures give each test a fresh pair.

RULES:
- No test touches the network, ffmpeg or a real storage project
- Async code is driven with asyncio.run() inside plain test functions
"""

from __future__ import annotations

import pytest

from fakes import FakeAdapter, FakeStorage


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def storage():
    return FakeStorage()
