"""Classification of Deepgram streaming messages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass
class Word:
    word: str
    speaker: int = 0
    punctuated_word: Optional[str] = None
    start: Optional[float] = None
    end: Optional[float] = None
    confidence: Optional[float] = None

    @property
    def display(self) -> str:
        """Punctuated form when the backend supplied one, raw word otherwise."""
        return self.punctuated_word or self.word

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Word":
        speaker = payload.get("speaker")
        return cls(
            word=payload.get("word") or "",
            speaker=int(speaker) if speaker is not None else 0,
            punctuated_word=payload.get("punctuated_word") or None,
            start=payload.get("start"),
            end=payload.get("end"),
            confidence=payload.get("confidence"),
        )


@dataclass
class MetadataMessage:
    """Session metadata; never carries transcript text."""

    request_id: Optional[str] = None
    created: Optional[str] = None
    duration: Optional[float] = None
    channels: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TranscriptResult:
    transcript: str
    words: List[Word]
    is_final: bool
    confidence: float = 0.0
    metadata: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def speaker_id(self) -> int:
        return self.words[0].speaker if self.words else 0


@dataclass
class OtherMessage:
    raw: Any = None


IncomingMessage = Union[MetadataMessage, TranscriptResult, OtherMessage]


def parse_words(entries: Any) -> List[Word]:
    if not isinstance(entries, list):
        return []
    return [Word.from_payload(entry) for entry in entries if isinstance(entry, dict)]


def first_alternative(channel: Any) -> Optional[Dict[str, Any]]:
    """Return ``channel["alternatives"][0]`` when the shape allows it."""

    if not isinstance(channel, dict):
        return None
    alternatives = channel.get("alternatives")
    if not isinstance(alternatives, list) or not alternatives:
        return None
    alternative = alternatives[0]
    return alternative if isinstance(alternative, dict) else None


def classify_message(payload: Any) -> IncomingMessage:
    """Sort a decoded streaming payload into metadata, transcript or other.

    The metadata check wins over everything else in the payload.
    """

    if not isinstance(payload, dict):
        return OtherMessage(raw=payload)

    if payload.get("type") == "Metadata":
        return MetadataMessage(
            request_id=payload.get("request_id"),
            created=payload.get("created"),
            duration=payload.get("duration"),
            channels=payload.get("channels"),
            raw=payload,
        )

    alternative = first_alternative(payload.get("channel"))
    if alternative is None:
        return OtherMessage(raw=payload)

    metadata = payload.get("metadata")
    return TranscriptResult(
        transcript=alternative.get("transcript") or "",
        words=parse_words(alternative.get("words")),
        is_final=bool(payload.get("is_final")),
        confidence=float(alternative.get("confidence") or 0.0),
        metadata=metadata if isinstance(metadata, dict) else None,
        raw=payload,
    )
