from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, TypeAlias


@dataclass(frozen=True, slots=True)
class ChunkEvent:
    text: str


@dataclass(frozen=True, slots=True)
class DoneEvent:
    text: str


@dataclass(frozen=True, slots=True)
class StreamErrorEvent:
    error: BaseException
    status_code: int | None = None
    cancelled: bool = False


StreamEvent: TypeAlias = ChunkEvent | DoneEvent | StreamErrorEvent


@dataclass(frozen=True, slots=True)
class MessageUpdatedEvent:
    session_id: str
    message_id: int
    content: str
    streaming: bool
    errored: bool = False


@dataclass(frozen=True, slots=True)
class TopicChangedEvent:
    session_id: str
    topic: str


@dataclass(frozen=True, slots=True)
class MemoryUpdatedEvent:
    session_id: str
    summary: str
    done: bool = False


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    message: str
    source: str | None = None


Event: TypeAlias = (
    MessageUpdatedEvent
    | TopicChangedEvent
    | MemoryUpdatedEvent
    | ErrorEvent
)
EventCallback: TypeAlias = Callable[[Event], None] | None


class EventEmitter:
    def __init__(self, callback: EventCallback = None):
        self._callback = callback

    def emit(self, event: Event) -> None:
        if self._callback is not None:
            self._callback(event)
