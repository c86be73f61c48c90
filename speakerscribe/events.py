"""Typed session events and the synchronous observer registry."""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, DefaultDict, List, Type, TypeVar, Union


class SessionState(str, Enum):
    """Lifecycle states of a streaming session."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass
class TranscriptEvent:
    """A final transcript attributed to one speaker."""

    text: str
    speaker: str
    speaker_id: int
    confidence: float
    timestamp: float = field(default_factory=time.time)
    is_final: bool = True


@dataclass
class ErrorEvent:
    """A transport failure surfaced to observers instead of raised."""

    error: BaseException
    context: str = ""


@dataclass
class StateChangeEvent:
    previous: SessionState
    current: SessionState


SessionEvent = Union[TranscriptEvent, ErrorEvent, StateChangeEvent]
E = TypeVar("E")
Listener = Callable[[Any], None]


class EventDispatcher:
    """Deliver events to subscribers of their exact type, in registration order.

    Delivery is synchronous. A listener that raises is logged and skipped so
    the remaining listeners still see the event.
    """

    def __init__(self) -> None:
        self._listeners: DefaultDict[type, List[Listener]] = defaultdict(list)

    def subscribe(self, event_type: Type[E], callback: Callable[[E], None]) -> Callable[[], None]:
        """Register ``callback`` for ``event_type`` and return an unsubscribe function."""

        self._listeners[event_type].append(callback)

        def unsubscribe() -> None:
            listeners = self._listeners.get(event_type, [])
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def listener_count(self, event_type: type) -> int:
        return len(self._listeners.get(event_type, []))

    def emit(self, event: SessionEvent) -> None:
        listeners = self._listeners.get(type(event))
        if not listeners:
            return
        for callback in list(listeners):
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                logging.exception(
                    "Listener %r failed while handling %s.", callback, type(event).__name__
                )
