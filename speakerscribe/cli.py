"""Command line interface for Deepgram batch and streaming transcription."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from .asr import DeepgramError, DeepgramSession
from .audio import AudioSourceError, WavChunkSource, load_audio_payload
from .config import Settings, load_settings
from .events import TranscriptEvent
from .pipeline import StreamingTranscriptionPipeline


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def print_settings(settings: Settings) -> None:
    filtered: Dict[str, Any] = {
        "api_key": "***redacted***",
        "deepgram": settings.deepgram.model_dump(),
        "audio": settings.audio.model_dump(),
    }
    print(json.dumps(filtered, indent=2, ensure_ascii=False))


async def run_batch(settings: Settings, path: str, mimetype: Optional[str] = None) -> str:
    payload = load_audio_payload(path, mimetype=mimetype)
    session = DeepgramSession(settings.api_key, settings.deepgram)
    return await session.transcribe(payload)


async def run_stream(settings: Settings, path: str) -> str:
    session = DeepgramSession(settings.api_key, settings.deepgram)
    source = WavChunkSource(
        path,
        expected_sample_rate=settings.deepgram.sample_rate,
        chunk_duration_seconds=settings.audio.chunk_duration_seconds,
        realtime=settings.audio.realtime_pacing,
    )

    def print_event(event: TranscriptEvent) -> None:
        print(f"{event.speaker}: {event.text}", flush=True)

    pipeline = StreamingTranscriptionPipeline(
        session,
        source,
        drain_seconds=settings.audio.drain_seconds,
        on_transcript=print_event,
    )

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def handle_stop(*_args) -> None:
        logging.info("Received stop signal, shutting down.")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle_stop)
        except (NotImplementedError, RuntimeError, ValueError):
            logging.debug("Signal %s not supported on this platform.", sig)

    run_task = asyncio.create_task(pipeline.run(), name="stream-pipeline")
    stop_task = asyncio.create_task(stop_event.wait(), name="stream-stop")
    try:
        await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_task.cancel()
        if not run_task.done():
            run_task.cancel()
            try:
                await run_task
            except asyncio.CancelledError:
                logging.info("Streaming task cancelled.")
    if run_task.done() and not run_task.cancelled():
        run_task.result()
    return pipeline.state.render()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Speaker-attributed transcription using Deepgram streaming and batch APIs."
    )
    parser.add_argument(
        "--show-config", action="store_true", help="Print loaded configuration and exit."
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (DEBUG, INFO, WARNING, ERROR).",
    )
    commands = parser.add_subparsers(dest="command")

    batch = commands.add_parser("transcribe", help="Transcribe a complete recording via REST.")
    batch.add_argument("file", help="Encoded audio file (webm, wav, mp3, ...).")
    batch.add_argument("--mimetype", help="Override the Content-Type sent with the audio.")

    stream = commands.add_parser("stream", help="Stream a 16-bit PCM WAV file over WebSocket.")
    stream.add_argument("file", help="WAV file sampled at the configured rate.")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    try:
        settings = load_settings()
    except RuntimeError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    if args.show_config:
        print_settings(settings)
        return 0

    try:
        if args.command == "transcribe":
            print(asyncio.run(run_batch(settings, args.file, args.mimetype)))
        elif args.command == "stream":
            dialogue = asyncio.run(run_stream(settings, args.file))
            if dialogue:
                print("\n" + dialogue)
        else:
            parser.print_help()
            return 1
    except (DeepgramError, AudioSourceError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
