"""Deepgram transcription session, message classification and segmentation."""

from .base import StreamingTranscriptionBackend
from .deepgram_backend import (
    AudioPayload,
    DeepgramConnectionError,
    DeepgramError,
    DeepgramRequestError,
    DeepgramSession,
)
from .messages import MetadataMessage, OtherMessage, TranscriptResult, Word, classify_message
from .segmentation import SpeakerSegment, render_transcript, segment_words

__all__ = [
    "StreamingTranscriptionBackend",
    "AudioPayload",
    "DeepgramSession",
    "DeepgramError",
    "DeepgramConnectionError",
    "DeepgramRequestError",
    "MetadataMessage",
    "OtherMessage",
    "TranscriptResult",
    "Word",
    "classify_message",
    "SpeakerSegment",
    "render_transcript",
    "segment_words",
]
