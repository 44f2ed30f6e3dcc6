"""Tests for the resumable transcription engine.

WHY: This is the only component that can lose work. The tests pin down the
checkpoint semantics (a failed chunk is retried on resume, never skipped),
the single-run guarantee, the pause/error distinction and when a snapshot
is written.

HOW: Each test builds its own rig: a repository with one item backed by a
real file on disk, FakeAudio (500 s -> 3 windows), a scripted FakeAdapter
and a FakeStorage behind a real PersistenceGateway.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional

import pytest

from chunkscribe.api.retry import RemoteSettings
from chunkscribe.config import RAW_LABELS
from chunkscribe.core.engine import TranscriptionEngine, always_restart, error_excerpt, percent
from chunkscribe.core.models import ItemStatus, MediaItem, StageKind, Version
from chunkscribe.core.repository import ItemRepository
from chunkscribe.core.versions import VersionStore
from chunkscribe.errors import CredentialMissingError, ItemBusyError, SourceUnavailableError
from chunkscribe.storage.gateway import PersistenceGateway, SyncStatus

from fakes import FakeAdapter, FakeAudio, FakeStorage, adapter_factory_for, make_source

FULL_TRANSCRIPT = "text-0 text-1 text-2 "


@dataclass
class _Rig:
    engine: TranscriptionEngine
    repository: ItemRepository
    settings: RemoteSettings
    adapter: FakeAdapter
    audio: FakeAudio
    storage: FakeStorage
    gateway: PersistenceGateway
    item: MediaItem


def _make_rig(
    tmp_path,
    adapter: Optional[FakeAdapter] = None,
    duration_s: float = 500.0,
    api_key: Optional[str] = "test-key",
    persist: bool = True,
    **engine_kwargs,
) -> _Rig:
    repository = ItemRepository()
    settings = RemoteSettings(api_key=api_key, model="m1", fallback_models=[])
    adapter = adapter or FakeAdapter()
    audio = FakeAudio(duration_s)
    storage = FakeStorage()
    gateway = PersistenceGateway(storage)
    engine = TranscriptionEngine(
        repository,
        settings,
        audio,
        gateway=gateway if persist else None,
        adapter_factory=adapter_factory_for(adapter),
        **engine_kwargs,
    )
    item = repository.create_item(make_source(tmp_path))
    return _Rig(engine, repository, settings, adapter, audio, storage, gateway, item)


def _raw_versions(item: MediaItem) -> List[Version]:
    return VersionStore(item).by_stage(StageKind.RAW)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestFullRun:
    def test_completes_and_finalizes_raw(self, tmp_path):
        rig = _make_rig(tmp_path)
        status = asyncio.run(rig.engine.start(rig.item.id))

        item = rig.repository.require_item(rig.item.id)
        assert status == ItemStatus.COMPLETED
        assert item.status == ItemStatus.COMPLETED
        assert (item.processed_chunks, item.total_chunks) == (3, 3)
        assert item.progress == 100
        assert item.duration_s == 500.0

        raws = _raw_versions(item)
        assert len(raws) == 1
        assert raws[0].content == FULL_TRANSCRIPT
        assert raws[0].finalized
        assert raws[0].display_name == RAW_LABELS["complete"]
        assert raws[0].parent_id is None
        assert item.current_version_id == raws[0].id

    def test_chunks_sent_in_order(self, tmp_path):
        rig = _make_rig(tmp_path)
        asyncio.run(rig.engine.start(rig.item.id))
        assert rig.audio.encoded == [0, 1, 2]
        assert rig.adapter.transcribed == [0, 1, 2]

    def test_saves_once_on_completion(self, tmp_path):
        rig = _make_rig(tmp_path)
        asyncio.run(rig.engine.start(rig.item.id))
        assert rig.storage.upserts == 1
        stored = rig.storage.rows[rig.item.id]["content"]
        assert stored["processedChunks"] == 3
        assert stored["status"] == "completed"
        assert rig.gateway.sync_status(rig.item.id) == SyncStatus.SAVED

    def test_probes_duration_once(self, tmp_path):
        rig = _make_rig(tmp_path)
        asyncio.run(rig.engine.start(rig.item.id))
        assert rig.audio.probe_calls == 1

    def test_known_duration_not_probed(self, tmp_path):
        rig = _make_rig(tmp_path)
        rig.item.duration_s = 241.0
        asyncio.run(rig.engine.start(rig.item.id))
        assert rig.audio.probe_calls == 0
        assert rig.adapter.transcribed == [0, 1]

    def test_progress_published_per_chunk(self, tmp_path):
        seen = []
        rig = _make_rig(tmp_path)
        rig.adapter.on_transcribe = lambda index: seen.append(
            (index, rig.item.progress, rig.item.processed_chunks)
        )
        asyncio.run(rig.engine.start(rig.item.id))
        assert seen == [(0, 0, 0), (1, 33, 1), (2, 67, 2)]

    def test_storage_failure_keeps_completion(self, tmp_path):
        rig = _make_rig(tmp_path)
        rig.storage.fail_writes = True
        status = asyncio.run(rig.engine.start(rig.item.id))
        assert status == ItemStatus.COMPLETED
        assert _raw_versions(rig.item)[0].content == FULL_TRANSCRIPT
        assert rig.gateway.sync_status(rig.item.id) == SyncStatus.ERROR

    def test_runs_without_gateway(self, tmp_path):
        rig = _make_rig(tmp_path, persist=False)
        assert asyncio.run(rig.engine.start(rig.item.id)) == ItemStatus.COMPLETED
        assert rig.storage.upserts == 0


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


class TestPreconditions:
    def test_missing_credential(self, tmp_path):
        rig = _make_rig(tmp_path, api_key=None)
        with pytest.raises(CredentialMissingError):
            asyncio.run(rig.engine.start(rig.item.id))
        assert rig.item.status == ItemStatus.IDLE
        assert rig.item.versions == []

    def test_missing_source(self, tmp_path):
        rig = _make_rig(tmp_path)
        rig.item.source = None
        with pytest.raises(SourceUnavailableError):
            asyncio.run(rig.engine.start(rig.item.id))
        assert rig.item.status == ItemStatus.IDLE
        assert rig.item.versions == []

    def test_deleted_source_file(self, tmp_path):
        rig = _make_rig(tmp_path)
        rig.item.source.path.unlink()
        with pytest.raises(SourceUnavailableError):
            asyncio.run(rig.engine.start(rig.item.id))

    def test_unknown_item(self, tmp_path):
        rig = _make_rig(tmp_path)
        with pytest.raises(KeyError):
            asyncio.run(rig.engine.start("nope"))

    def test_already_processing(self, tmp_path):
        rig = _make_rig(tmp_path)
        rig.item.status = ItemStatus.PROCESSING
        with pytest.raises(ItemBusyError):
            asyncio.run(rig.engine.start(rig.item.id))
        assert rig.item.versions == []
        assert rig.adapter.transcribed == []

    def test_ensure_startable_does_not_mutate(self, tmp_path):
        rig = _make_rig(tmp_path)
        rig.engine.ensure_startable(rig.item.id)
        assert rig.item.status == ItemStatus.IDLE
        assert rig.item.versions == []


class TestSingleActiveRun:
    def test_concurrent_start_rejected(self, tmp_path):
        rig = _make_rig(tmp_path)

        async def _both():
            return await asyncio.gather(
                rig.engine.start(rig.item.id),
                rig.engine.start(rig.item.id),
                return_exceptions=True,
            )

        first, second = asyncio.run(_both())
        assert first == ItemStatus.COMPLETED
        assert isinstance(second, ItemBusyError)
        assert rig.adapter.transcribed == [0, 1, 2]
        assert len(_raw_versions(rig.item)) == 1
        assert _raw_versions(rig.item)[0].content == FULL_TRANSCRIPT

    def test_busy_while_paused_but_loop_still_running(self, tmp_path):
        errors = []
        rig = _make_rig(tmp_path)

        def _hook(index):
            if index == 0:
                rig.engine.pause(rig.item.id)
                try:
                    rig.engine.ensure_startable(rig.item.id)
                except ItemBusyError as exc:
                    errors.append(exc)

        rig.adapter.on_transcribe = _hook
        asyncio.run(rig.engine.start(rig.item.id))
        assert len(errors) == 1
        assert not rig.engine.is_running(rig.item.id)


# ---------------------------------------------------------------------------
# Failure, pause and resume
# ---------------------------------------------------------------------------


class TestRemoteFailure:
    def test_failure_pauses_with_error_and_keeps_checkpoint(self, tmp_path):
        rig = _make_rig(tmp_path, adapter=FakeAdapter(fail_chunks={1}))
        status = asyncio.run(rig.engine.start(rig.item.id))

        item = rig.item
        assert status == ItemStatus.PAUSED
        assert item.status == ItemStatus.PAUSED
        assert "chunk 1" in item.last_error
        assert item.processed_chunks == 1
        assert item.progress == 33
        raw = _raw_versions(item)[0]
        assert raw.content == "text-0 "
        assert raw.display_name == RAW_LABELS["streaming"]
        assert not raw.finalized

    def test_failure_does_not_save(self, tmp_path):
        rig = _make_rig(tmp_path, adapter=FakeAdapter(fail_chunks={0}))
        asyncio.run(rig.engine.start(rig.item.id))
        assert rig.storage.upserts == 0

    def test_resume_sends_only_remaining_chunks(self, tmp_path):
        rig = _make_rig(tmp_path, adapter=FakeAdapter(fail_chunks={1}))
        asyncio.run(rig.engine.start(rig.item.id))
        raw_id = _raw_versions(rig.item)[0].id

        rig.adapter.fail_chunks.clear()
        rig.adapter.transcribed.clear()
        status = asyncio.run(rig.engine.start(rig.item.id, resume=True))

        assert status == ItemStatus.COMPLETED
        assert rig.adapter.transcribed == [1, 2]
        raws = _raw_versions(rig.item)
        assert [r.id for r in raws] == [raw_id]
        assert raws[0].content == FULL_TRANSCRIPT
        assert rig.item.last_error is None

    def test_audio_failure_also_pauses(self, tmp_path):
        rig = _make_rig(tmp_path)

        async def _broken(source):
            raise OSError("cannot decode")

        rig.audio.probe_duration = _broken
        status = asyncio.run(rig.engine.start(rig.item.id))
        assert status == ItemStatus.PAUSED
        assert rig.item.last_error == "cannot decode"
        assert not rig.engine.is_running(rig.item.id)


class TestUserPause:
    def test_pause_stops_before_next_chunk_without_error(self, tmp_path):
        rig = _make_rig(tmp_path)
        rig.adapter.on_transcribe = (
            lambda index: rig.engine.pause(rig.item.id) if index == 0 else None
        )
        status = asyncio.run(rig.engine.start(rig.item.id))

        assert status == ItemStatus.PAUSED
        assert rig.item.last_error is None
        assert rig.item.processed_chunks == 1
        assert rig.adapter.transcribed == [0]

    def test_resume_after_pause(self, tmp_path):
        rig = _make_rig(tmp_path)
        rig.adapter.on_transcribe = (
            lambda index: rig.engine.pause(rig.item.id) if index == 0 else None
        )
        asyncio.run(rig.engine.start(rig.item.id))
        rig.adapter.on_transcribe = None

        assert asyncio.run(rig.engine.start(rig.item.id, resume=True)) == ItemStatus.COMPLETED
        assert rig.adapter.transcribed == [0, 1, 2]
        assert _raw_versions(rig.item)[0].content == FULL_TRANSCRIPT

    def test_pause_on_last_chunk_leaves_item_paused(self, tmp_path):
        rig = _make_rig(tmp_path)
        rig.adapter.on_transcribe = (
            lambda index: rig.engine.pause(rig.item.id) if index == 2 else None
        )
        assert asyncio.run(rig.engine.start(rig.item.id)) == ItemStatus.PAUSED
        assert rig.item.processed_chunks == 3
        assert rig.storage.upserts == 0

        rig.adapter.on_transcribe = None
        assert asyncio.run(rig.engine.start(rig.item.id, resume=True)) == ItemStatus.COMPLETED

    def test_pause_requires_active_loop(self, tmp_path):
        rig = _make_rig(tmp_path)
        with pytest.raises(ItemBusyError):
            rig.engine.pause(rig.item.id)


# ---------------------------------------------------------------------------
# Continue / restart decision
# ---------------------------------------------------------------------------


class TestContinueOrRestart:
    def _interrupted(self, tmp_path, **kwargs) -> _Rig:
        rig = _make_rig(tmp_path, adapter=FakeAdapter(fail_chunks={2}), **kwargs)
        asyncio.run(rig.engine.start(rig.item.id))
        rig.adapter.fail_chunks.clear()
        rig.adapter.transcribed.clear()
        return rig

    def test_default_policy_continues(self, tmp_path):
        rig = self._interrupted(tmp_path)
        asyncio.run(rig.engine.start(rig.item.id))
        assert rig.adapter.transcribed == [2]
        assert len(_raw_versions(rig.item)) == 1

    def test_decision_callback_receives_item(self, tmp_path):
        asked = []

        async def _decide(item):
            asked.append((item.id, item.processed_chunks))
            return True

        rig = self._interrupted(tmp_path, decide_continue=_decide)
        asyncio.run(rig.engine.start(rig.item.id))
        assert asked == [(rig.item.id, 2)]
        assert rig.adapter.transcribed == [2]

    def test_restart_creates_new_raw_lineage(self, tmp_path):
        rig = self._interrupted(tmp_path)
        old_raw = _raw_versions(rig.item)[0]

        status = asyncio.run(rig.engine.start(rig.item.id, decide_continue=always_restart))

        assert status == ItemStatus.COMPLETED
        assert rig.adapter.transcribed == [0, 1, 2]
        raws = _raw_versions(rig.item)
        assert [r.id for r in raws][0] == old_raw.id
        assert len(raws) == 2
        assert raws[0].content == "text-0 text-1 "
        assert raws[1].content == FULL_TRANSCRIPT
        assert rig.item.current_version_id == raws[1].id

    def test_resume_flag_skips_decision(self, tmp_path):
        async def _never(item):
            raise AssertionError("must not ask")

        rig = self._interrupted(tmp_path, decide_continue=_never)
        asyncio.run(rig.engine.start(rig.item.id, resume=True))
        assert rig.adapter.transcribed == [2]


class TestStaleState:
    def test_resume_without_raw_restarts_cleanly(self, tmp_path):
        rig = _make_rig(tmp_path)
        rig.item.set_checkpoint(2, 3)
        rig.item.status = ItemStatus.PAUSED

        asyncio.run(rig.engine.start(rig.item.id, resume=True))

        assert rig.adapter.transcribed == [0, 1, 2]
        raws = _raw_versions(rig.item)
        assert len(raws) == 1
        assert raws[0].content == FULL_TRANSCRIPT

    def test_stale_total_recomputed_from_duration(self, tmp_path):
        rig = _make_rig(tmp_path)
        item = rig.item
        item.duration_s = 500.0
        item.set_checkpoint(2, 10)
        item.status = ItemStatus.PAUSED
        VersionStore(item).append(
            Version(id="raw", stage=StageKind.RAW, content="text-0 text-1 ", display_name="Raw")
        )

        asyncio.run(rig.engine.start(item.id, resume=True))

        assert item.total_chunks == 3
        assert rig.adapter.transcribed == [2]
        assert VersionStore(item).by_id("raw").content == FULL_TRANSCRIPT

    def test_rerun_of_completed_item_keeps_raw(self, tmp_path):
        rig = _make_rig(tmp_path)
        asyncio.run(rig.engine.start(rig.item.id))
        rig.adapter.transcribed.clear()

        status = asyncio.run(rig.engine.start(rig.item.id, resume=True))

        assert status == ItemStatus.COMPLETED
        assert rig.adapter.transcribed == []
        assert len(_raw_versions(rig.item)) == 1
        assert _raw_versions(rig.item)[0].content == FULL_TRANSCRIPT


# ---------------------------------------------------------------------------
# Reconnection
# ---------------------------------------------------------------------------


class TestConnectivityRestored:
    def _two_failed_items(self, tmp_path) -> _Rig:
        rig = _make_rig(tmp_path, adapter=FakeAdapter(fail_chunks={1}))
        second = rig.repository.create_item(make_source(tmp_path, "second.mp3"))
        asyncio.run(rig.engine.start(rig.item.id))
        asyncio.run(rig.engine.start(second.id))
        rig.adapter.fail_chunks.clear()
        return rig

    def test_resumes_first_failed_item_only(self, tmp_path):
        rig = self._two_failed_items(tmp_path)
        others = [i for i in rig.repository.list_items() if i.id != rig.item.id]

        async def _reconnect():
            scheduled = rig.engine.on_connectivity_restored()
            await rig.engine.drain()
            return scheduled

        scheduled = asyncio.run(_reconnect())
        assert scheduled == [rig.item.id]
        assert rig.item.status == ItemStatus.COMPLETED
        assert others[0].status == ItemStatus.PAUSED

    def test_user_paused_item_resumed(self, tmp_path):
        rig = _make_rig(tmp_path)
        rig.adapter.on_transcribe = (
            lambda index: rig.engine.pause(rig.item.id) if index == 0 else None
        )
        asyncio.run(rig.engine.start(rig.item.id))
        assert rig.item.status == ItemStatus.PAUSED
        assert rig.item.last_error is None
        rig.adapter.on_transcribe = None
        rig.adapter.transcribed.clear()

        async def _reconnect():
            scheduled = rig.engine.on_connectivity_restored()
            await rig.engine.drain()
            return scheduled

        assert asyncio.run(_reconnect()) == [rig.item.id]
        assert rig.item.status == ItemStatus.COMPLETED
        assert rig.adapter.transcribed == [1, 2]
        assert _raw_versions(rig.item)[0].content == FULL_TRANSCRIPT

    def test_item_without_source_skipped(self, tmp_path):
        rig = self._two_failed_items(tmp_path)
        rig.item.source = None
        second = [i for i in rig.repository.list_items() if i.id != rig.item.id][0]

        async def _reconnect():
            scheduled = rig.engine.on_connectivity_restored()
            await rig.engine.drain()
            return scheduled

        assert asyncio.run(_reconnect()) == [second.id]
        assert rig.item.status == ItemStatus.PAUSED

    def test_no_credential_no_resume(self, tmp_path):
        rig = self._two_failed_items(tmp_path)
        rig.settings.api_key = None

        async def _reconnect():
            return rig.engine.on_connectivity_restored()

        assert asyncio.run(_reconnect()) == []

    def test_one_attempt_per_item_per_event(self, tmp_path):
        rig = self._two_failed_items(tmp_path)
        rig.adapter.fail_chunks = {1}

        async def _reconnect():
            first = rig.engine.on_connectivity_restored()
            again = rig.engine.on_connectivity_restored()
            await rig.engine.drain()
            return first, again

        second = [i for i in rig.repository.list_items() if i.id != rig.item.id][0]
        first, again = asyncio.run(_reconnect())
        assert first == [rig.item.id]
        assert again == [second.id]
        assert rig.item.status == ItemStatus.PAUSED
        assert rig.item.last_error is not None


def test_error_excerpt_truncates():
    assert error_excerpt(None) is None
    assert error_excerpt("short") == "short"
    long = "x" * 500
    assert len(error_excerpt(long)) == 200
    assert error_excerpt(long).endswith("...")


def test_percent_rounds_ties_up():
    assert [percent(i, 8) for i in range(9)] == [0, 13, 25, 38, 50, 63, 75, 88, 100]
    assert percent(1, 3) == 33
    assert percent(2, 3) == 67
    assert percent(0, 0) == 0


def test_progress_ties_round_up_during_run(tmp_path):
    seen = []
    rig = _make_rig(tmp_path, duration_s=8 * 240.0)
    rig.adapter.on_transcribe = lambda index: seen.append(rig.item.progress)
    asyncio.run(rig.engine.start(rig.item.id))
    assert seen == [0, 13, 25, 38, 50, 63, 75, 88]
    assert rig.item.progress == 100
