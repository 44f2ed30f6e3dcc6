"""Tests for the autosave safety net."""

from __future__ import annotations

import asyncio

from chunkscribe.core.models import ItemStatus
from chunkscribe.core.repository import ItemRepository
from chunkscribe.storage.autosave import AutoSaver
from chunkscribe.storage.gateway import PersistenceGateway, SyncStatus

from fakes import FakeStorage, make_source


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _make_saver(tmp_path):
    clock = _Clock()
    storage = FakeStorage()
    gateway = PersistenceGateway(storage, clock=clock)
    repository = ItemRepository()
    item = repository.create_item(make_source(tmp_path))
    item.status = ItemStatus.COMPLETED
    saver = AutoSaver(repository, gateway, interval_s=10, min_age_s=30)
    return saver, clock, storage, gateway, repository, item


class TestAutoSaver:
    def test_saves_completed_active_item_after_min_age(self, tmp_path):
        saver, clock, storage, gateway, _, item = _make_saver(tmp_path)
        clock.now += 31
        assert asyncio.run(saver.check_once()) is True
        assert storage.upserts == 1
        assert gateway.sync_status(item.id) == SyncStatus.SAVED

    def test_too_soon(self, tmp_path):
        saver, clock, storage, _, _, _ = _make_saver(tmp_path)
        clock.now += 29
        assert asyncio.run(saver.check_once()) is False
        assert storage.upserts == 0

    def test_recent_save_resets_the_timer(self, tmp_path):
        saver, clock, storage, _, _, _ = _make_saver(tmp_path)
        clock.now += 31
        asyncio.run(saver.check_once())
        clock.now += 10
        assert asyncio.run(saver.check_once()) is False
        assert storage.upserts == 1

    def test_only_completed(self, tmp_path):
        saver, clock, storage, _, _, item = _make_saver(tmp_path)
        clock.now += 60
        for status in (ItemStatus.PROCESSING, ItemStatus.PAUSED, ItemStatus.ERROR):
            item.status = status
            assert asyncio.run(saver.check_once()) is False
        assert storage.upserts == 0

    def test_only_active_item(self, tmp_path):
        saver, clock, storage, _, repository, first = _make_saver(tmp_path)
        second = repository.create_item(make_source(tmp_path, "b.mp3"))
        repository.set_active(second.id)
        clock.now += 60
        assert asyncio.run(saver.check_once()) is False
        assert first.id not in storage.rows

    def test_failure_does_not_raise(self, tmp_path):
        saver, clock, storage, gateway, _, item = _make_saver(tmp_path)
        storage.fail_writes = True
        clock.now += 60
        assert asyncio.run(saver.check_once()) is False
        assert gateway.sync_status(item.id) == SyncStatus.ERROR

        storage.fail_writes = False
        assert asyncio.run(saver.check_once()) is True

    def test_no_active_item(self):
        gateway = PersistenceGateway(FakeStorage())
        saver = AutoSaver(ItemRepository(), gateway, min_age_s=0)
        assert asyncio.run(saver.check_once()) is False
