"""In-memory stand-ins for the audio pipeline, remote adapter and storage.

WHY: Engine and API tests must run without ffmpeg, network access or a
Supabase project, and must be able to script failures at exact chunks.

HOW: FakeAudio encodes window i as b"chunk-i". FakeAdapter turns that
payload into "text-i" (or raises for scripted indices) and records every
call. FakeStorage keeps rows in a dict and can refuse writes or deletes.
adapter_factory_for() wraps a FakeAdapter in the async context manager
shape the engines expect.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from chunkscribe.core.chunks import ChunkWindow
from chunkscribe.core.models import SourceHandle, StageKind
from chunkscribe.errors import RemoteFailure, StorageFailure


class FakeAudio:
    def __init__(self, duration_s: float = 500.0) -> None:
        self.duration_s = duration_s
        self.probe_calls = 0
        self.encoded: List[int] = []

    async def probe_duration(self, source: SourceHandle) -> float:
        self.probe_calls += 1
        return self.duration_s

    async def encode_window(self, source: SourceHandle, window: ChunkWindow) -> bytes:
        self.encoded.append(window.index)
        return "chunk-{}".format(window.index).encode()


class FakeAdapter:
    """Scripted RemoteCallAdapter.

    Args:
        fail_chunks: Chunk indices whose transcription raises RemoteFailure.
        fail_transform: When True every transform raises RemoteFailure.
        on_transcribe: Called with the chunk index before answering.
    """

    def __init__(
        self,
        fail_chunks: Optional[Set[int]] = None,
        fail_transform: bool = False,
        on_transcribe: Optional[Callable[[int], Any]] = None,
    ) -> None:
        self.fail_chunks = set(fail_chunks or ())
        self.fail_transform = fail_transform
        self.on_transcribe = on_transcribe
        self.transcribed: List[int] = []
        self.transforms: List[Dict[str, Any]] = []

    async def transcribe(self, audio: bytes, mime_type: str = "audio/mp3") -> str:
        await asyncio.sleep(0)
        index = int(audio.decode().split("-")[1])
        if self.on_transcribe is not None:
            self.on_transcribe(index)
        if index in self.fail_chunks:
            raise RemoteFailure("network down at chunk {}".format(index), None, 3)
        self.transcribed.append(index)
        return "text-{}".format(index)

    async def transform(
        self, text: str, stage: StageKind, custom_prompt: Optional[str] = None
    ) -> str:
        self.transforms.append({"text": text, "stage": stage, "custom_prompt": custom_prompt})
        if self.fail_transform:
            raise RemoteFailure("model overloaded", None, 15)
        return "{}({})".format(stage.value, text.strip())


def adapter_factory_for(adapter: FakeAdapter):
    @asynccontextmanager
    async def _factory(settings):
        yield adapter

    return _factory


class FakeStorage:
    def __init__(self) -> None:
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.fail_writes = False
        self.block_deletes = False
        self.upserts = 0

    async def upsert(self, item_id: str, content: Dict[str, Any], updated_at: str) -> None:
        if self.fail_writes:
            raise StorageFailure("storage unavailable", status_code=503)
        self.upserts += 1
        self.rows[item_id] = {"id": item_id, "content": content, "updated_at": updated_at}

    async def list_rows(self) -> List[Dict[str, Any]]:
        return sorted(self.rows.values(), key=lambda r: r["updated_at"], reverse=True)

    async def fetch_row(self, item_id: str) -> Optional[Dict[str, Any]]:
        return self.rows.get(item_id)

    async def delete_rows(self, item_id: str) -> int:
        if self.block_deletes:
            return 0
        return 1 if self.rows.pop(item_id, None) is not None else 0


def make_source(directory: Path, name: str = "talk.mp3") -> SourceHandle:
    path = directory / name
    path.write_bytes(b"fake audio bytes")
    return SourceHandle.from_path(path)
