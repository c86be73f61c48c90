"""Audio sources that feed recordings on disk to a transcription session."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import wave
from pathlib import Path
from typing import AsyncIterator, Optional, Union

from .asr.deepgram_backend import AudioPayload

PathLike = Union[str, Path]

_EXTRA_MIMETYPES = {
    ".webm": "audio/webm",
    ".ogg": "audio/ogg",
    ".opus": "audio/ogg",
    ".m4a": "audio/mp4",
    ".flac": "audio/flac",
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
}


class AudioSourceError(Exception):
    """Raised when an audio file cannot be used as a transcription source."""


def guess_mimetype(path: PathLike) -> Optional[str]:
    suffix = Path(path).suffix.lower()
    if suffix in _EXTRA_MIMETYPES:
        return _EXTRA_MIMETYPES[suffix]
    guessed, _ = mimetypes.guess_type(str(path))
    return guessed


def load_audio_payload(path: PathLike, mimetype: Optional[str] = None) -> AudioPayload:
    """Read a whole encoded recording for the batch endpoint."""

    file_path = Path(path).expanduser()
    try:
        data = file_path.read_bytes()
    except OSError as exc:
        raise AudioSourceError(f"Cannot read audio file {file_path}: {exc}") from exc
    if not data:
        raise AudioSourceError(f"Audio file {file_path} is empty.")
    return AudioPayload(data=data, mimetype=mimetype or guess_mimetype(file_path))


class WavChunkSource:
    """Async iterator producing raw 16-bit PCM chunks from a WAV file.

    With ``realtime`` enabled each chunk is released after its own duration
    so the stream behaves like live capture.
    """

    def __init__(
        self,
        path: PathLike,
        expected_sample_rate: int,
        chunk_duration_seconds: float = 0.1,
        realtime: bool = True,
    ) -> None:
        self.path = Path(path).expanduser()
        self.expected_sample_rate = expected_sample_rate
        self.chunk_duration_seconds = chunk_duration_seconds
        self.realtime = realtime
        self.chunks_sent = 0

    def _open(self) -> wave.Wave_read:
        try:
            reader = wave.open(str(self.path), "rb")
        except (OSError, wave.Error, EOFError) as exc:
            raise AudioSourceError(f"Cannot open WAV file {self.path}: {exc}") from exc
        width = reader.getsampwidth()
        if width != 2:
            reader.close()
            raise AudioSourceError(
                f"{self.path} uses {width * 8}-bit samples; linear16 requires 16-bit PCM."
            )
        channels = reader.getnchannels()
        if channels != 1:
            reader.close()
            raise AudioSourceError(
                f"{self.path} has {channels} channels; the stream is sent as mono linear16."
            )
        if reader.getframerate() != self.expected_sample_rate:
            rate = reader.getframerate()
            reader.close()
            raise AudioSourceError(
                f"{self.path} is sampled at {rate} Hz; the session expects {self.expected_sample_rate} Hz."
            )
        return reader

    async def __aiter__(self) -> AsyncIterator[bytes]:
        reader = self._open()
        frames_per_chunk = max(1, int(round(self.expected_sample_rate * self.chunk_duration_seconds)))
        logging.info(
            "Streaming %s (%d channel(s), %d Hz) in %.2f s chunks.",
            self.path,
            reader.getnchannels(),
            reader.getframerate(),
            self.chunk_duration_seconds,
        )
        try:
            while True:
                chunk = reader.readframes(frames_per_chunk)
                if not chunk:
                    break
                self.chunks_sent += 1
                yield chunk
                if self.realtime:
                    await asyncio.sleep(self.chunk_duration_seconds)
                else:
                    await asyncio.sleep(0)
        finally:
            reader.close()
