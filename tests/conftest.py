import pytest

from common.events import DoneEvent, StreamErrorEvent
from parley.config import ChatConfig
from parley.errors import RetrievalError, StreamCancelled
from parley.retrieval import Snippet
from parley.sessions.store import SessionStore


class ScriptedStream:
    def __init__(self, events, on_event=None):
        self._events = list(events)
        self._on_event = on_event
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

    async def events(self):
        for event in self._events:
            if self.cancelled:
                yield StreamErrorEvent(error=StreamCancelled(), cancelled=True)
                return
            if self._on_event is not None:
                self._on_event(event)
            yield event


class FakeClient:
    def __init__(self, replies=None, streams=None):
        self.replies = list(replies or [])
        self.streams = list(streams or [])
        self.sent: list[list] = []
        self.streamed: list[list] = []

    async def send_chat(self, messages, config):
        self.sent.append(list(messages))
        reply = self.replies.pop(0) if self.replies else "ok"
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def stream_chat(self, messages, config):
        self.streamed.append(list(messages))
        item = self.streams.pop(0) if self.streams else [DoneEvent(text="ok")]
        if hasattr(item, "events"):
            return item
        return ScriptedStream(item)


class FakeRetriever:
    def __init__(self, snippets=None, error: str | None = None):
        self.snippets = [s if isinstance(s, Snippet) else Snippet(text=s) for s in snippets or []]
        self.error = error
        self.queries: list[str] = []

    async def lookup(self, query):
        self.queries.append(query)
        if self.error:
            raise RetrievalError(self.error)
        return list(self.snippets)


@pytest.fixture
def config():
    return ChatConfig(history_message_count=4, compress_message_length_threshold=1000)


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def session(store):
    return store.current_session()


def add_turns(store, session, count, content="message {i}"):
    roles = ("user", "assistant")
    return [
        store.append_message(session, roles[i % 2], content.format(i=i))
        for i in range(count)
    ]
