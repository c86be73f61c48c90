"""Configuration loading utilities for Deepgram transcription sessions."""

from __future__ import annotations

import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError


class DeepgramConfig(BaseModel):
    """Deepgram protocol parameters shared by the streaming and batch paths."""

    model: str = Field(default="nova-2", min_length=1)
    language: str = Field(default="en", min_length=2)
    diarize_version: str = Field(default="2023-09-19", min_length=1)
    encoding: str = Field(default="linear16", min_length=1)
    sample_rate: int = Field(default=48_000, ge=8_000, le=96_000)
    streaming_url: str = Field(default="wss://api.deepgram.com/v1/listen", min_length=10)
    batch_url: str = Field(default="https://api.deepgram.com/v1/listen", min_length=10)
    default_mimetype: str = Field(default="audio/webm", min_length=3)
    max_reconnect_attempts: int = Field(default=3, ge=0, le=10)
    reconnect_backoff_seconds: float = Field(default=2.0, ge=0.0, le=30.0)
    request_timeout_seconds: float = Field(default=120.0, gt=0, le=600.0)


class StreamAudioConfig(BaseModel):
    """How audio files are fed to the streaming path."""

    chunk_duration_seconds: float = Field(default=0.1, gt=0, le=5.0)
    realtime_pacing: bool = True
    drain_seconds: float = Field(
        default=3.0,
        ge=0.0,
        le=60.0,
        description="Time to wait for trailing results after the last chunk.",
    )


class Settings(BaseModel):
    """Aggregated settings for the command line tools."""

    api_key: str = Field(..., min_length=10)
    deepgram: DeepgramConfig = DeepgramConfig()
    audio: StreamAudioConfig = StreamAudioConfig()


def _env_flag(value: str) -> bool:
    return value.lower() in {"1", "true", "yes"}


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Load settings from environment variables and .env files."""

    load_dotenv()

    env = os.environ
    try:
        deepgram_cfg = DeepgramConfig(
            model=env.get("DEEPGRAM_MODEL", "nova-2"),
            language=env.get("DEEPGRAM_LANGUAGE", "en"),
            diarize_version=env.get("DEEPGRAM_DIARIZE_VERSION", "2023-09-19"),
            sample_rate=int(env.get("DEEPGRAM_SAMPLE_RATE", "48000")),
            streaming_url=env.get("DEEPGRAM_STREAMING_URL", "wss://api.deepgram.com/v1/listen"),
            batch_url=env.get("DEEPGRAM_BATCH_URL", "https://api.deepgram.com/v1/listen"),
            max_reconnect_attempts=int(env.get("DEEPGRAM_MAX_RECONNECT_ATTEMPTS", "3")),
            reconnect_backoff_seconds=float(env.get("DEEPGRAM_RECONNECT_BACKOFF_SECONDS", "2.0")),
            request_timeout_seconds=float(env.get("DEEPGRAM_REQUEST_TIMEOUT_SECONDS", "120")),
        )
        audio_cfg = StreamAudioConfig(
            chunk_duration_seconds=float(env.get("AUDIO_CHUNK_DURATION_SECONDS", "0.1")),
            realtime_pacing=_env_flag(env.get("AUDIO_REALTIME_PACING", "true")),
            drain_seconds=float(env.get("AUDIO_DRAIN_SECONDS", "3.0")),
        )
        return Settings(
            api_key=env["DEEPGRAM_API_KEY"],
            deepgram=deepgram_cfg,
            audio=audio_cfg,
        )
    except KeyError as exc:
        missing = exc.args[0]
        raise RuntimeError(f"Missing required environment variable: {missing}") from exc
    except ValidationError as exc:
        raise RuntimeError(f"Configuration invalid: {exc}") from exc
    except ValueError as exc:
        raise RuntimeError(f"Configuration invalid: {exc}") from exc
