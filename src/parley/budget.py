"""Length-based size proxy used for context budgeting and compression triggers."""
from typing import Iterable

from parley.sessions.schema import Message


def estimate(text: str | None) -> int:
    if not text:
        return 0
    return len(text)


def estimate_message(message: Message) -> int:
    return estimate(message.content)


def estimate_all(messages: Iterable[Message]) -> int:
    return sum(estimate(m.content) for m in messages)
