"""Rebuild speaker-attributed dialogue from diarized word lists."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from ..speakers import SpeakerLabels
from .messages import Word


@dataclass
class SpeakerSegment:
    """A maximal run of consecutive words spoken by one speaker."""

    label: Optional[str]
    text: str

    def render(self) -> str:
        if self.label is None:
            return self.text
        return f"{self.label}: {self.text}"


def segment_words(words: Iterable[Word], labels: SpeakerLabels) -> List[SpeakerSegment]:
    """Group consecutive words by speaker id.

    A new segment opens whenever the speaker id differs from the previous
    word's. The trailing segment is flushed after the loop.
    """

    segments: List[SpeakerSegment] = []
    current_speaker: Optional[int] = None
    current_words: List[str] = []

    def flush() -> None:
        if current_words and current_speaker is not None:
            segments.append(
                SpeakerSegment(label=labels.label_for(current_speaker), text=" ".join(current_words))
            )

    for word in words:
        if word.speaker != current_speaker:
            flush()
            current_speaker = word.speaker
            current_words = []
        current_words.append(word.display)
    flush()
    return segments


def render_transcript(segments: Iterable[SpeakerSegment]) -> str:
    return "\n".join(segment.render() for segment in segments)
