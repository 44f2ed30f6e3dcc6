"""Audio probing and per-window MP3 encoding via ffprobe/ffmpeg.

WHY: The engine needs two things from the raw source: its duration (once)
and, for each window, a small speech-friendly payload to send to the model.
Decoding formats, resampling and encoding are delegated to ffmpeg.

HOW: AudioPipeline is the protocol the engine depends on. FfmpegAudioPipeline
implements it with asyncio subprocesses so the event loop stays free while
ffmpeg runs. Each window is cut with -ss/-t, downmixed to mono, resampled to
16 kHz and encoded as 64 kbps MP3 on stdout.

RULES:
- probe_duration() returns seconds as a float (> 0) or raises
- encode_window() returns the MP3 bytes for exactly one window
- A window starting at or past the end of the source encodes to b""
- Failures raise AudioPipelineError with a trimmed stderr excerpt
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import List, Protocol, Tuple

from chunkscribe.config import MP3_BITRATE_KBPS, TARGET_SAMPLE_RATE
from chunkscribe.core.chunks import ChunkWindow
from chunkscribe.core.models import SourceHandle
from chunkscribe.errors import AudioPipelineError

logger = logging.getLogger(__name__)


class AudioPipeline(Protocol):
    """What the transcription engine needs from the audio side."""

    async def probe_duration(self, source: SourceHandle) -> float:
        ...

    async def encode_window(self, source: SourceHandle, window: ChunkWindow) -> bytes:
        ...


class FfmpegAudioPipeline:
    """AudioPipeline backed by the ffmpeg and ffprobe executables."""

    def __init__(
        self,
        ffmpeg: str = "ffmpeg",
        ffprobe: str = "ffprobe",
        sample_rate: int = TARGET_SAMPLE_RATE,
        bitrate_kbps: int = MP3_BITRATE_KBPS,
    ) -> None:
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.sample_rate = sample_rate
        self.bitrate_kbps = bitrate_kbps

    async def probe_duration(self, source: SourceHandle) -> float:
        args = [
            self.ffprobe,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            str(source.path),
        ]
        stdout, _ = await _run(args, "ffprobe")
        try:
            duration = float(json.loads(stdout or b"{}").get("format", {}).get("duration", 0))
        except (ValueError, TypeError) as exc:
            raise AudioPipelineError(
                "Could not read duration of {}: {}".format(source.file_name, exc)
            ) from exc
        if duration <= 0:
            raise AudioPipelineError("Source has no audio: {}".format(source.file_name))
        logger.info("Probed %s: %.1fs", source.file_name, duration)
        return duration

    async def encode_window(self, source: SourceHandle, window: ChunkWindow) -> bytes:
        if window.length_s <= 0:
            return b""
        args = [
            self.ffmpeg,
            "-v", "error",
            "-ss", "{:.3f}".format(window.start_s),
            "-t", "{:.3f}".format(window.length_s),
            "-i", str(source.path),
            "-vn",
            "-ac", "1",
            "-ar", str(self.sample_rate),
            "-b:a", "{}k".format(self.bitrate_kbps),
            "-codec:a", "libmp3lame",
            "-f", "mp3",
            "pipe:1",
        ]
        stdout, _ = await _run(args, "ffmpeg")
        logger.debug(
            "Encoded window %d of %s (%d bytes)", window.index, source.file_name, len(stdout)
        )
        return stdout


async def _run(args: List[str], tool: str) -> Tuple[bytes, bytes]:
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise AudioPipelineError("{} not found on PATH".format(tool)) from exc

    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        excerpt = stderr.decode("utf-8", errors="replace")[:300]
        raise AudioPipelineError(
            "{} failed (rc={}): {}".format(tool, proc.returncode, excerpt)
        )
    return stdout, stderr
