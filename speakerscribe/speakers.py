"""Human-readable labels for diarized speaker ids."""

from __future__ import annotations

from typing import Dict

SPEAKER_LETTERS = ("A", "B", "C", "D", "E", "F", "G", "H", "I", "J")


class SpeakerLabels:
    """Assign stable labels to speaker ids in first-seen order.

    The first ten distinct ids become ``Speaker A`` .. ``Speaker J``; later
    ids fall back to their allocation index (the eleventh is ``Speaker 10``).
    """

    def __init__(self) -> None:
        self._labels: Dict[int, str] = {}

    def label_for(self, speaker_id: int) -> str:
        label = self._labels.get(speaker_id)
        if label is None:
            index = len(self._labels)
            suffix = SPEAKER_LETTERS[index] if index < len(SPEAKER_LETTERS) else str(index)
            label = f"Speaker {suffix}"
            self._labels[speaker_id] = label
        return label

    def reset(self) -> None:
        self._labels.clear()

    def snapshot(self) -> Dict[int, str]:
        return dict(self._labels)

    def __len__(self) -> int:
        return len(self._labels)

    def __contains__(self, speaker_id: object) -> bool:
        return speaker_id in self._labels
