"""Wiring of the repository, engines and storage into one bundle.

The server keeps one Services instance at module level; the CLI builds its
own. Every collaborator can be replaced, which is how tests run the whole
stack against fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from chunkscribe.api.retry import RemoteSettings, open_adapter
from chunkscribe.audio import AudioPipeline, FfmpegAudioPipeline
from chunkscribe.config import DEFAULT_MODEL, STAGE_PROGRESS_INTERVAL_S, load_api_key
from chunkscribe.core.connectivity import ConnectivityWatcher
from chunkscribe.core.engine import AdapterFactory, TranscriptionEngine
from chunkscribe.core.repository import ItemRepository
from chunkscribe.core.stages import StageEngine
from chunkscribe.storage.autosave import AutoSaver
from chunkscribe.storage.gateway import PersistenceGateway
from chunkscribe.storage.supabase import SnapshotStorage, SupabaseStorage


@dataclass
class Services:
    repository: ItemRepository
    settings: RemoteSettings
    gateway: PersistenceGateway
    engine: TranscriptionEngine
    stages: StageEngine
    autosaver: AutoSaver
    watcher: ConnectivityWatcher


def build_services(
    storage: Optional[SnapshotStorage] = None,
    audio: Optional[AudioPipeline] = None,
    adapter_factory: AdapterFactory = open_adapter,
    api_key: Optional[str] = None,
    model: str = DEFAULT_MODEL,
    stage_progress_interval_s: Optional[float] = STAGE_PROGRESS_INTERVAL_S,
    probe_url: Optional[str] = None,
    persist: bool = True,
) -> Services:
    """Create a fully wired Services bundle.

    Args:
        storage: Snapshot storage; defaults to Supabase from config.
        audio: Audio pipeline; defaults to ffmpeg/ffprobe.
        adapter_factory: Opens the remote call adapter.
        api_key: Credential; defaults to GEMINI_API_KEY (may be None).
        model: Primary model id.
        stage_progress_interval_s: Cosmetic stage ticker interval, None to disable.
        probe_url: Connectivity probe URL; defaults to config.
        persist: When False the engines never save snapshots.
    """
    repository = ItemRepository()
    settings = RemoteSettings(api_key=api_key or load_api_key(), model=model)
    gateway = PersistenceGateway(storage if storage is not None else SupabaseStorage())
    engine = TranscriptionEngine(
        repository,
        settings,
        audio if audio is not None else FfmpegAudioPipeline(),
        gateway=gateway if persist else None,
        adapter_factory=adapter_factory,
    )
    stages = StageEngine(
        repository,
        settings,
        gateway=gateway if persist else None,
        adapter_factory=adapter_factory,
        busy_check=engine.is_running,
        progress_interval_s=stage_progress_interval_s,
    )
    return Services(
        repository=repository,
        settings=settings,
        gateway=gateway,
        engine=engine,
        stages=stages,
        autosaver=AutoSaver(repository, gateway),
        watcher=ConnectivityWatcher(engine.on_connectivity_restored, probe_url=probe_url),
    )
