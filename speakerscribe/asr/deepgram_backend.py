"""Deepgram realtime WebSocket session with a batch REST fallback."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from urllib.parse import urlencode

import aiohttp

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from ..config import DeepgramConfig
from ..events import (
    ErrorEvent,
    EventDispatcher,
    SessionState,
    StateChangeEvent,
    TranscriptEvent,
)
from ..speakers import SpeakerLabels
from .base import StreamingTranscriptionBackend
from .messages import (
    MetadataMessage,
    TranscriptResult,
    classify_message,
    first_alternative,
    parse_words,
)
from .segmentation import SpeakerSegment, render_transcript, segment_words

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006
CLOSE_REASON = "Session ended"

Connector = Callable[..., Awaitable[Any]]


class DeepgramError(Exception):
    """Raised when communication with Deepgram fails."""


class DeepgramConnectionError(DeepgramError):
    """Raised when the streaming channel cannot be opened."""


class DeepgramRequestError(DeepgramError):
    """Raised when the batch endpoint answers with a non-success status."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Deepgram: {status} {body}")
        self.status = status
        self.body = body


@dataclass
class AudioPayload:
    """A complete encoded recording submitted to the batch endpoint."""

    data: bytes
    mimetype: Optional[str] = None


class DeepgramSession(StreamingTranscriptionBackend):
    """Manage a Deepgram transcription session.

    The streaming side keeps one WebSocket open, reconnects after abnormal
    closures with a linear backoff, and turns final results into
    :class:`TranscriptEvent` notifications. The batch side posts a whole
    recording and rebuilds a speaker-attributed transcript from the word
    list. Both sides share the credential and the speaker labels.
    """

    def __init__(
        self,
        api_key: str,
        config: Optional[DeepgramConfig] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self.api_key = api_key
        self.config = config or DeepgramConfig()
        self.speakers = SpeakerLabels()
        self.is_connected = False
        self.reconnect_attempts = 0
        self._connector: Connector = connector or websockets.connect
        self._websocket: Optional[Any] = None
        self._listen_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._state = SessionState.IDLE
        self._events = EventDispatcher()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def max_reconnect_attempts(self) -> int:
        return self.config.max_reconnect_attempts

    def on_transcript(self, callback: Callable[[TranscriptEvent], None]) -> Callable[[], None]:
        return self._events.subscribe(TranscriptEvent, callback)

    def on_error(self, callback: Callable[[ErrorEvent], None]) -> Callable[[], None]:
        return self._events.subscribe(ErrorEvent, callback)

    def on_state_change(self, callback: Callable[[StateChangeEvent], None]) -> Callable[[], None]:
        return self._events.subscribe(StateChangeEvent, callback)

    def streaming_url(self) -> str:
        params = {
            "model": self.config.model,
            "language": self.config.language,
            "punctuate": "true",
            "diarize": "true",
            "diarize_version": self.config.diarize_version,
            "smart_format": "true",
            "interim_results": "false",
            "encoding": self.config.encoding,
            "sample_rate": str(self.config.sample_rate),
        }
        return f"{self.config.streaming_url}?{urlencode(params)}"

    def batch_params(self) -> Dict[str, str]:
        return {
            "model": self.config.model,
            "language": self.config.language,
            "punctuate": "true",
            "smart_format": "true",
            "diarize": "true",
        }

    # ------------------------------------------------------------------
    # Streaming lifecycle

    async def connect(self) -> None:
        """Open the WebSocket; returns once the channel reports open."""

        if self._websocket is not None and self._state is SessionState.OPEN:
            logging.debug("Deepgram session already open; connect() ignored.")
            return

        current = asyncio.current_task()
        if self._reconnect_task and self._reconnect_task is not current and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            self._reconnect_task = None

        self._set_state(SessionState.CONNECTING)
        try:
            websocket = await self._connector(
                self.streaming_url(),
                subprotocols=["token", self.api_key],
            )
        except Exception as exc:  # pylint: disable=broad-except
            error = DeepgramConnectionError(f"Failed to connect to Deepgram: {exc}")
            logging.error("Deepgram WebSocket error: %s", exc)
            self._events.emit(ErrorEvent(error=error, context="connect"))
            # A channel that never opened closes abnormally.
            self._handle_closure(ABNORMAL_CLOSURE, str(exc))
            raise error from exc

        self._websocket = websocket
        self.is_connected = True
        self.reconnect_attempts = 0
        self._set_state(SessionState.OPEN)
        logging.info("Deepgram WebSocket connected.")
        self._listen_task = asyncio.create_task(
            self._listen_loop(websocket), name="deepgram-listener"
        )

    async def close(self) -> None:
        """Close the channel with a normal closure and forget speaker labels."""

        reconnect_task, self._reconnect_task = self._reconnect_task, None
        if reconnect_task and reconnect_task is not asyncio.current_task() and not reconnect_task.done():
            reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reconnect_task

        websocket, self._websocket = self._websocket, None
        listen_task, self._listen_task = self._listen_task, None
        if websocket is not None:
            try:
                await websocket.close(code=NORMAL_CLOSURE, reason=CLOSE_REASON)
            except Exception as exc:  # pylint: disable=broad-except
                logging.warning("Error while closing Deepgram WebSocket: %s", exc)
        if listen_task and listen_task is not asyncio.current_task() and not listen_task.done():
            listen_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await listen_task

        self.is_connected = False
        self.speakers.reset()
        self._set_state(SessionState.CLOSED)

    async def send_audio(self, chunk: bytes) -> None:
        """Send raw audio bytes; a no-op with a warning when not connected."""

        websocket = self._websocket
        if websocket is None or not self.is_connected or getattr(websocket, "state", State.OPEN) is not State.OPEN:
            logging.warning("Cannot send audio: WebSocket not connected.")
            return
        try:
            await websocket.send(chunk)
        except ConnectionClosed as exc:
            logging.warning("Cannot send audio: WebSocket closed (%s).", exc)
        except Exception as exc:  # pylint: disable=broad-except
            logging.warning("Failed to stream audio to Deepgram: %s", exc)

    async def _listen_loop(self, websocket: Any) -> None:
        """Feed incoming messages to :meth:`handle_message` until the channel closes."""

        try:
            async for message in websocket:
                self.handle_message(message)
        except ConnectionClosed as exc:
            logging.debug("Deepgram stream ended: %s", exc)
        except asyncio.CancelledError:
            logging.debug("Deepgram listener cancelled.")
            raise
        except Exception as exc:  # pylint: disable=broad-except
            logging.exception("Error while listening to Deepgram stream: %s", exc)
            self._events.emit(ErrorEvent(error=exc, context="listen"))
            with contextlib.suppress(Exception):
                await websocket.close(code=1011, reason="Listener failed")

        if websocket is not self._websocket:
            # Closed through close(); nothing left to decide.
            return
        code = getattr(websocket, "close_code", None)
        reason = getattr(websocket, "close_reason", None) or ""
        self._handle_closure(code if code is not None else ABNORMAL_CLOSURE, reason)

    def _handle_closure(self, code: int, reason: str) -> None:
        logging.info("Deepgram WebSocket closed: %s %s", code, reason)
        self._websocket = None
        self._listen_task = None
        self.is_connected = False
        if code != NORMAL_CLOSURE and self.reconnect_attempts < self.max_reconnect_attempts:
            self._schedule_reconnect()
        else:
            self._set_state(SessionState.CLOSED)

    def _schedule_reconnect(self) -> None:
        self.reconnect_attempts += 1
        # Linear: attempt n waits n * backoff.
        delay = self.reconnect_attempts * self.config.reconnect_backoff_seconds
        logging.info(
            "Attempting to reconnect... (%d/%d) in %.1f seconds.",
            self.reconnect_attempts,
            self.max_reconnect_attempts,
            delay,
        )
        self._set_state(SessionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay), name="deepgram-reconnect"
        )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.connect()
        except DeepgramConnectionError as exc:
            logging.error("Reconnection failed: %s", exc)

    def _set_state(self, state: SessionState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        logging.debug("Deepgram session %s -> %s.", previous.value, state.value)
        self._events.emit(StateChangeEvent(previous=previous, current=state))

    # ------------------------------------------------------------------
    # Message classification

    def handle_message(self, raw: Union[str, bytes]) -> Optional[TranscriptEvent]:
        """Classify one streaming message and emit a transcript event when final.

        Returns the emitted event, or ``None`` when the message produced none.
        Malformed payloads are logged and dropped.
        """

        logging.debug("Deepgram message received: %s", raw)
        try:
            payload = json.loads(raw)
            message = classify_message(payload)
        except (TypeError, ValueError) as exc:
            logging.error("Error parsing Deepgram message: %s", exc)
            return None

        if isinstance(message, MetadataMessage):
            logging.info(
                "Deepgram metadata: request_id=%s created=%s duration=%s channels=%s",
                message.request_id,
                message.created,
                message.duration,
                message.channels,
            )
            return None

        if not isinstance(message, TranscriptResult):
            logging.debug("Deepgram message ignored: %s", payload)
            return None

        if message.metadata:
            logging.debug("Deepgram metadata: %s", message.metadata)
        if not message.transcript or not message.is_final:
            return None

        speaker_id = message.speaker_id
        event = TranscriptEvent(
            text=message.transcript,
            speaker=self.speakers.label_for(speaker_id),
            speaker_id=speaker_id,
            confidence=message.confidence,
        )
        logging.debug(
            "Deepgram transcript: %s (speaker=%s, confidence=%.2f)",
            event.text,
            event.speaker,
            event.confidence,
        )
        self._events.emit(event)
        return event

    # ------------------------------------------------------------------
    # Batch transcription

    async def transcribe(self, payload: AudioPayload) -> str:
        """Transcribe a complete recording and return ``Speaker X: ...`` lines."""

        return render_transcript(await self.transcribe_segments(payload))

    async def transcribe_segments(self, payload: AudioPayload) -> List[SpeakerSegment]:
        data = await self._post_batch(payload)
        results = data.get("results") if isinstance(data, dict) else None
        channels = results.get("channels") if isinstance(results, dict) else None
        channel = channels[0] if isinstance(channels, list) and channels else None
        alternative = first_alternative(channel)
        if alternative is None:
            return []

        try:
            words = parse_words(alternative.get("words"))
        except (TypeError, ValueError) as exc:
            raise DeepgramError(f"Deepgram returned malformed word data: {exc}") from exc
        if not words:
            transcript = alternative.get("transcript") or ""
            return [SpeakerSegment(label=None, text=transcript)] if transcript else []

        self.speakers.reset()
        return segment_words(words, self.speakers)

    async def _post_batch(self, payload: AudioPayload) -> Any:
        headers = {
            "Authorization": f"Token {self.api_key}",
            "Content-Type": payload.mimetype or self.config.default_mimetype,
        }
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
        logging.info(
            "Submitting %d bytes (%s) for batch transcription.",
            len(payload.data),
            headers["Content-Type"],
        )
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    self.config.batch_url,
                    params=self.batch_params(),
                    data=payload.data,
                    headers=headers,
                ) as resp:
                    if not 200 <= resp.status < 300:
                        body = await resp.text()
                        logging.error("Deepgram batch request failed (%s): %s", resp.status, body)
                        raise DeepgramRequestError(resp.status, body)
                    return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as exc:
            raise DeepgramError(f"Deepgram batch request failed: {exc}") from exc
