"""Unit tests for the Deepgram streaming session."""

from __future__ import annotations

import asyncio
import json
import unittest
from urllib.parse import parse_qs, urlparse

from fakes import FakeConnector, FakeWebSocket, wait_until

from speakerscribe.asr import DeepgramConnectionError, DeepgramSession
from speakerscribe.config import DeepgramConfig
from speakerscribe.events import ErrorEvent, SessionState, TranscriptEvent


def _result_message(transcript: str, is_final: bool = True, words=None, confidence: float = 0.9) -> str:
    return json.dumps(
        {
            "type": "Results",
            "is_final": is_final,
            "channel": {
                "alternatives": [
                    {
                        "transcript": transcript,
                        "confidence": confidence,
                        "words": words if words is not None else [],
                    }
                ]
            },
        }
    )


class CrashingWebSocket(FakeWebSocket):
    """Connection whose receive loop fails with an unexpected error."""

    async def __anext__(self):
        raise RuntimeError("decoder exploded")


class MessageHandlingTests(unittest.TestCase):
    """Classification of incoming messages into transcript events."""

    def setUp(self) -> None:
        self.session = DeepgramSession("dg_test_key_123")
        self.events: list[TranscriptEvent] = []
        self.session.on_transcript(self.events.append)

    def test_final_message_emits_labelled_event(self) -> None:
        event = self.session.handle_message(
            _result_message("hello", words=[{"word": "hello", "speaker": 1}])
        )
        self.assertEqual(self.events, [event])
        self.assertEqual(event.text, "hello")
        self.assertEqual(event.speaker, "Speaker A")
        self.assertEqual(event.speaker_id, 1)
        self.assertEqual(event.confidence, 0.9)
        self.assertTrue(event.is_final)

    def test_metadata_message_never_emits(self) -> None:
        payload = json.loads(_result_message("hello", words=[{"word": "hello", "speaker": 0}]))
        payload.update({"type": "Metadata", "request_id": "req-1", "duration": 1.5, "channels": 1})
        with self.assertLogs(level="INFO") as logs:
            result = self.session.handle_message(json.dumps(payload))
        self.assertIsNone(result)
        self.assertEqual(self.events, [])
        self.assertTrue(any("req-1" in line for line in logs.output))

    def test_interim_result_is_ignored(self) -> None:
        self.assertIsNone(self.session.handle_message(_result_message("partial words", is_final=False)))
        self.assertEqual(self.events, [])

    def test_empty_final_transcript_is_ignored(self) -> None:
        self.assertIsNone(self.session.handle_message(_result_message("")))
        self.assertEqual(self.events, [])

    def test_missing_words_default_to_speaker_zero(self) -> None:
        event = self.session.handle_message(_result_message("no words here"))
        self.assertEqual(event.speaker_id, 0)
        self.assertEqual(event.speaker, "Speaker A")

    def test_speaker_taken_from_first_word(self) -> None:
        self.session.handle_message(_result_message("first", words=[{"word": "first", "speaker": 4}]))
        event = self.session.handle_message(
            _result_message(
                "second third",
                words=[{"word": "second", "speaker": 2}, {"word": "third", "speaker": 4}],
            )
        )
        self.assertEqual(event.speaker, "Speaker B")
        self.assertEqual(event.speaker_id, 2)

    def test_malformed_payload_is_logged_not_raised(self) -> None:
        with self.assertLogs(level="ERROR"):
            self.assertIsNone(self.session.handle_message("{not json"))
        self.assertIsNone(self.session.handle_message(json.dumps([1, 2, 3])))
        self.assertIsNone(self.session.handle_message(json.dumps({"type": "UtteranceEnd"})))
        self.assertEqual(self.events, [])

    def test_bytes_payload_is_accepted(self) -> None:
        event = self.session.handle_message(_result_message("bytes").encode("utf-8"))
        self.assertEqual(event.text, "bytes")

    def test_failing_listener_does_not_block_others(self) -> None:
        received: list[str] = []

        def broken(_event: TranscriptEvent) -> None:
            raise RuntimeError("listener bug")

        session = DeepgramSession("dg_test_key_123")
        session.on_transcript(broken)
        session.on_transcript(lambda event: received.append(event.text))
        with self.assertLogs(level="ERROR"):
            session.handle_message(_result_message("still delivered"))
        self.assertEqual(received, ["still delivered"])

    def test_streaming_url_carries_protocol_parameters(self) -> None:
        url = urlparse(self.session.streaming_url())
        query = {key: values[0] for key, values in parse_qs(url.query).items()}
        self.assertEqual(f"{url.scheme}://{url.netloc}{url.path}", "wss://api.deepgram.com/v1/listen")
        self.assertEqual(
            query,
            {
                "model": "nova-2",
                "language": "en",
                "punctuate": "true",
                "diarize": "true",
                "diarize_version": "2023-09-19",
                "smart_format": "true",
                "interim_results": "false",
                "encoding": "linear16",
                "sample_rate": "48000",
            },
        )


class ConnectionLifecycleTests(unittest.IsolatedAsyncioTestCase):
    """Connect, send, close and reconnection behaviour."""

    def _session(self, connector: FakeConnector, **overrides) -> DeepgramSession:
        config = DeepgramConfig(reconnect_backoff_seconds=0.0, **overrides)
        return DeepgramSession("dg_test_key_123", config, connector=connector)

    async def test_connect_opens_channel_with_token_subprotocol(self) -> None:
        websocket = FakeWebSocket()
        connector = FakeConnector(websocket)
        session = self._session(connector)
        states = []
        session.on_state_change(lambda event: states.append(event.current))

        await session.connect()

        self.assertTrue(session.is_connected)
        self.assertIs(session.state, SessionState.OPEN)
        self.assertEqual(session.reconnect_attempts, 0)
        _url, kwargs = connector.calls[0]
        self.assertEqual(kwargs["subprotocols"], ["token", "dg_test_key_123"])
        self.assertEqual(states, [SessionState.CONNECTING, SessionState.OPEN])
        await session.close()

    async def test_connect_failure_raises_and_emits_error(self) -> None:
        session = DeepgramSession(
            "dg_test_key_123",
            DeepgramConfig(max_reconnect_attempts=0),
            connector=FakeConnector(OSError("refused")),
        )
        errors: list[ErrorEvent] = []
        session.on_error(errors.append)

        with self.assertLogs(level="ERROR"):
            with self.assertRaises(DeepgramConnectionError):
                await session.connect()

        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0].error, DeepgramConnectionError)
        self.assertFalse(session.is_connected)
        self.assertIs(session.state, SessionState.CLOSED)
        self.assertIsNone(session._reconnect_task)

    async def test_failed_connect_retries_through_abnormal_closure(self) -> None:
        websocket = FakeWebSocket()
        connector = FakeConnector(OSError("refused"), websocket)
        session = self._session(connector)

        with self.assertLogs(level="ERROR"):
            with self.assertRaises(DeepgramConnectionError):
                await session.connect()
        self.assertEqual(session.reconnect_attempts, 1)
        self.assertIs(session.state, SessionState.RECONNECTING)
        await wait_until(lambda: session.state is SessionState.OPEN)

        self.assertEqual(len(connector.calls), 2)
        self.assertTrue(session.is_connected)
        self.assertEqual(session.reconnect_attempts, 0)
        await session.close()

    async def test_listener_crash_closes_socket_and_reconnects(self) -> None:
        crashing, replacement = CrashingWebSocket(), FakeWebSocket()
        connector = FakeConnector(crashing, replacement)
        session = self._session(connector)
        errors: list[ErrorEvent] = []
        session.on_error(errors.append)

        with self.assertLogs(level="ERROR"):
            await session.connect()
            await wait_until(lambda: len(connector.calls) == 2 and session.state is SessionState.OPEN)

        self.assertEqual(crashing.closed_with, (1011, "Listener failed"))
        self.assertEqual([event.context for event in errors], ["listen"])
        self.assertIsInstance(errors[0].error, RuntimeError)
        await session.send_audio(b"resumed")
        self.assertEqual(replacement.sent, [b"resumed"])
        await session.close()

    async def test_messages_from_channel_are_dispatched(self) -> None:
        websocket = FakeWebSocket()
        session = self._session(FakeConnector(websocket))
        events: list[TranscriptEvent] = []
        session.on_transcript(events.append)

        await session.connect()
        websocket.feed(_result_message("over the wire", words=[{"word": "over", "speaker": 3}]))
        await wait_until(lambda: bool(events))

        self.assertEqual(events[0].speaker, "Speaker A")
        self.assertEqual(events[0].speaker_id, 3)
        await session.close()

    async def test_send_audio_without_connection_only_warns(self) -> None:
        session = self._session(FakeConnector())
        with self.assertLogs(level="WARNING") as logs:
            await session.send_audio(b"\x00\x01")
        self.assertTrue(any("not connected" in line for line in logs.output))

    async def test_send_audio_on_open_channel(self) -> None:
        websocket = FakeWebSocket()
        session = self._session(FakeConnector(websocket))
        await session.connect()
        await session.send_audio(b"\x00\x01")
        self.assertEqual(websocket.sent, [b"\x00\x01"])
        await session.close()

    async def test_close_resets_labels_and_is_idempotent(self) -> None:
        websocket = FakeWebSocket()
        session = self._session(FakeConnector(websocket))
        await session.connect()
        session.speakers.label_for(5)
        session.speakers.label_for(0)

        await session.close()
        await session.close()

        self.assertEqual(websocket.closed_with, (1000, "Session ended"))
        self.assertEqual(len(session.speakers), 0)
        self.assertEqual(session.speakers.label_for(0), "Speaker A")
        self.assertFalse(session.is_connected)
        self.assertIs(session.state, SessionState.CLOSED)

    async def test_close_without_connection_is_safe(self) -> None:
        session = self._session(FakeConnector())
        await session.close()
        self.assertIs(session.state, SessionState.CLOSED)

    async def test_normal_closure_does_not_reconnect(self) -> None:
        websocket = FakeWebSocket()
        connector = FakeConnector(websocket)
        session = self._session(connector)
        await session.connect()

        websocket.drop(code=1000, reason="bye")
        await wait_until(lambda: session.state is SessionState.CLOSED)

        self.assertEqual(len(connector.calls), 1)
        self.assertFalse(session.is_connected)
        self.assertIsNone(session._reconnect_task)

    async def test_abnormal_closure_reconnects(self) -> None:
        first, second = FakeWebSocket(), FakeWebSocket()
        connector = FakeConnector(first, second)
        session = self._session(connector)
        await session.connect()

        first.drop(code=1006)
        await wait_until(lambda: len(connector.calls) == 2 and session.state is SessionState.OPEN)

        self.assertTrue(session.is_connected)
        self.assertEqual(session.reconnect_attempts, 0)
        await session.send_audio(b"after")
        self.assertEqual(second.sent, [b"after"])
        await session.close()

    async def test_failed_reconnections_stop_at_ceiling(self) -> None:
        websocket = FakeWebSocket()
        connector = FakeConnector(websocket, OSError("down"), OSError("down"), OSError("down"))
        session = self._session(connector)
        await session.connect()

        with self.assertLogs(level="ERROR"):
            websocket.drop(code=1011)
            await wait_until(lambda: session.state is SessionState.CLOSED)
        await asyncio.sleep(0.05)

        self.assertEqual(len(connector.calls), 4)
        self.assertEqual(session.reconnect_attempts, 3)
        self.assertFalse(session.is_connected)
        self.assertIs(session.state, SessionState.CLOSED)

    async def test_backoff_is_linear_and_capped(self) -> None:
        session = DeepgramSession("dg_test_key_123", connector=FakeConnector())
        delays: list[float] = []

        async def record(delay: float) -> None:
            delays.append(delay)

        session._reconnect_after = record
        for _ in range(4):
            session._handle_closure(1006, "")
            await asyncio.sleep(0)

        self.assertEqual(delays, [2.0, 4.0, 6.0])
        self.assertEqual(session.reconnect_attempts, 3)
        self.assertIs(session.state, SessionState.CLOSED)
        self.assertFalse(session.is_connected)

    async def test_close_cancels_pending_reconnection(self) -> None:
        websocket = FakeWebSocket()
        connector = FakeConnector(websocket, FakeWebSocket())
        session = DeepgramSession(
            "dg_test_key_123",
            DeepgramConfig(reconnect_backoff_seconds=10.0),
            connector=connector,
        )
        await session.connect()

        websocket.drop(code=1006)
        await wait_until(lambda: session.state is SessionState.RECONNECTING)
        pending = session._reconnect_task
        await session.close()
        await asyncio.sleep(0.01)

        self.assertTrue(pending.cancelled())
        self.assertEqual(len(connector.calls), 1)
        self.assertIs(session.state, SessionState.CLOSED)

    async def test_async_context_manager_connects_and_closes(self) -> None:
        websocket = FakeWebSocket()
        session = self._session(FakeConnector(websocket))
        async with session:
            self.assertTrue(session.is_connected)
        self.assertEqual(websocket.closed_with, (1000, "Session ended"))


if __name__ == "__main__":
    unittest.main()
