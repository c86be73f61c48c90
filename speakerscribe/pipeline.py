"""High-level orchestration of a streaming transcription run."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import AsyncIterable, Callable, List, Optional

from .asr import StreamingTranscriptionBackend
from .events import ErrorEvent, TranscriptEvent


def _normalize_text(text: str) -> str:
    if not text:
        return ""
    stripped = text.strip()
    if not stripped:
        return ""
    normalized = re.sub(r"\s+", " ", stripped)
    normalized = re.sub(r"\s+([,.;:?!])", r"\1", normalized)
    return normalized


@dataclass
class DialogueLine:
    speaker: str
    text: str

    def render(self) -> str:
        return f"{self.speaker}: {self.text}"


@dataclass
class DialogueState:
    """Collects final transcripts into speaker-attributed lines."""

    lines: List[DialogueLine] = field(default_factory=list)
    errors: List[BaseException] = field(default_factory=list)

    def add_event(self, event: TranscriptEvent) -> Optional[DialogueLine]:
        text = _normalize_text(event.text)
        if not text:
            return None
        if self.lines and self.lines[-1].speaker == event.speaker:
            self.lines[-1].text = f"{self.lines[-1].text} {text}"
            return self.lines[-1]
        line = DialogueLine(speaker=event.speaker, text=text)
        self.lines.append(line)
        return line

    def render(self) -> str:
        return "\n".join(line.render() for line in self.lines)


class StreamingTranscriptionPipeline:
    """Pump audio into a streaming backend and collect its transcripts."""

    def __init__(
        self,
        backend: StreamingTranscriptionBackend,
        source: AsyncIterable[bytes],
        drain_seconds: float = 3.0,
        on_transcript: Optional[Callable[[TranscriptEvent], None]] = None,
    ) -> None:
        self._backend = backend
        self._source = source
        self._drain_seconds = drain_seconds
        self._on_transcript = on_transcript
        self.state = DialogueState()
        self._running = False

    def _handle_transcript(self, event: TranscriptEvent) -> None:
        self.state.add_event(event)
        logging.info("Final: %s: %s", event.speaker, event.text)
        if self._on_transcript:
            self._on_transcript(event)

    def _handle_error(self, event: ErrorEvent) -> None:
        self.state.errors.append(event.error)

    async def run(self) -> DialogueState:
        """Run until the source is exhausted or the task is cancelled."""

        if self._running:
            raise RuntimeError("Pipeline already running.")
        self._running = True
        unsubscribers = [
            self._backend.on_transcript(self._handle_transcript),
            self._backend.on_error(self._handle_error),
        ]
        try:
            try:
                await self._backend.connect()
                await self._pump_audio()
                if self._drain_seconds > 0:
                    logging.debug("Waiting %.1f s for trailing transcripts.", self._drain_seconds)
                    await asyncio.sleep(self._drain_seconds)
            finally:
                # Also stops a retry scheduled by a failed connect.
                await self._backend.close()
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()
            self._running = False
            logging.info("Transcription pipeline stopped.")
        return self.state

    async def _pump_audio(self) -> None:
        async for chunk in self._source:
            await self._backend.send_audio(chunk)
