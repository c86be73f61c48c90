"""Abstractions shared by realtime transcription backends."""

from __future__ import annotations

import abc
from typing import Callable

from ..events import ErrorEvent, StateChangeEvent, TranscriptEvent


class StreamingTranscriptionBackend(abc.ABC):
    """Interface for realtime speech-to-text streaming backends.

    Results are pushed to registered observers rather than pulled, so a
    backend owns its own receive loop once connected.
    """

    async def __aenter__(self) -> "StreamingTranscriptionBackend":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.close()

    @abc.abstractmethod
    async def connect(self) -> None:
        """Open the streaming channel."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Close the channel and forget per-session state."""

    @abc.abstractmethod
    async def send_audio(self, chunk: bytes) -> None:
        """Stream raw PCM audio to the backend."""

    @abc.abstractmethod
    def on_transcript(self, callback: Callable[[TranscriptEvent], None]) -> Callable[[], None]:
        """Register a final-transcript observer."""

    @abc.abstractmethod
    def on_error(self, callback: Callable[[ErrorEvent], None]) -> Callable[[], None]:
        """Register a connection-error observer."""

    @abc.abstractmethod
    def on_state_change(self, callback: Callable[[StateChangeEvent], None]) -> Callable[[], None]:
        """Register a lifecycle observer."""
