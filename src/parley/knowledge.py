from typing import Iterable, Sequence

from parley.retrieval import Snippet
from parley.sessions.schema import Message


def is_redundant(recent_messages: Iterable[Message], snippet: str) -> bool:
    if not snippet:
        return True
    return any(snippet in message.content for message in recent_messages)


def filter_snippets(recent_messages: Sequence[Message], snippets: Iterable[Snippet]) -> list[Snippet]:
    fresh: list[Snippet] = []
    seen: set[str] = set()
    for snippet in snippets:
        if snippet.text in seen or is_redundant(recent_messages, snippet.text):
            continue
        seen.add(snippet.text)
        fresh.append(snippet)
    return fresh


def fence(text: str) -> str:
    return f"```{text}```"
