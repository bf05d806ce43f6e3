import logging
import re
from contextlib import aclosing

from common.events import (
    ChunkEvent,
    DoneEvent,
    EventEmitter,
    MemoryUpdatedEvent,
    StreamErrorEvent,
    TopicChangedEvent,
)
from parley.budget import estimate_all
from parley.client import CompletionClient
from parley.config import ChatConfig
from parley.prompts import DEFAULT_TOPIC, Prompts
from parley.sessions.schema import Message, Session, synthetic
from parley.sessions.store import SessionStore

logger = logging.getLogger(__name__)

_QUOTES = "\"'“”‘’「」『』`"
_TRAILING_PUNCT = re.compile(r"[，。！？、,.!?;:；：\s]+$")


def trim_topic(topic: str) -> str:
    text, previous = topic.strip(), None
    while text != previous:
        previous = text
        text = _TRAILING_PUNCT.sub("", text.strip(_QUOTES).strip())
    return text


class MemoryCompressor:
    """Maintains a session's topic and rolling summary of older turns."""

    def __init__(
        self,
        store: SessionStore,
        client: CompletionClient,
        config: ChatConfig,
        *,
        emitter: EventEmitter | None = None,
        prompts: Prompts | None = None,
    ):
        self.store = store
        self.client = client
        self.config = config
        self.emitter = emitter or EventEmitter()
        self.prompts = prompts or Prompts()
        self._in_flight: set[str] = set()

    def memory_prompt(self, session: Session) -> Message:
        return synthetic("system", self.prompts.recap_for(session.memory_summary))

    async def summarize_session(self, session: Session) -> None:
        await self.assign_topic(session)
        await self.compress(session)

    async def assign_topic(self, session: Session) -> bool:
        if session.topic != DEFAULT_TOPIC:
            return False
        if estimate_all(session.messages) < self.config.topic_min_len:
            return False

        request = list(session.messages) + [synthetic("user", self.prompts.topic)]
        try:
            result = await self.client.send_chat(request, self.config.summary_llm())
        except Exception as e:
            logger.warning(f"Topic generation failed for session {session.id}: {e}")
            return False

        topic = trim_topic(result or "")
        if not topic:
            logger.debug(f"Topic generation for session {session.id} returned nothing usable")
            return False
        self.store.set_topic(session, topic)
        self.emitter.emit(TopicChangedEvent(session_id=session.id, topic=topic))
        return True

    def pending_history(self, session: Session) -> tuple[list[Message], int]:
        tail = session.messages[session.last_summarized_index:]
        length = estimate_all(tail)
        if length > self.config.llm.max_tokens:
            keep = self.config.history_message_count
            tail = tail[max(0, len(tail) - keep):] if keep else []
        return [self.memory_prompt(session)] + list(tail), length

    async def compress(self, session: Session) -> bool:
        if session.id in self._in_flight:
            logger.debug(f"Compression already running for session {session.id}")
            return False

        history, length = self.pending_history(session)
        if length <= self.config.compress_message_length_threshold or not session.send_memory:
            return False

        snapshot = len(session.messages)
        request = history + [synthetic("system", self.prompts.summarize)]
        stream = self.client.stream_chat(request, self.config.summary_llm())

        self._in_flight.add(session.id)
        try:
            async with aclosing(stream.events()) as events:
                async for event in events:
                    if isinstance(event, ChunkEvent):
                        self.store.set_memory_summary(session, event.text)
                        self.emitter.emit(
                            MemoryUpdatedEvent(session_id=session.id, summary=event.text)
                        )
                    elif isinstance(event, DoneEvent):
                        self.store.set_memory_summary(session, event.text)
                        self.store.mark_summarized(session, snapshot)
                        self.emitter.emit(
                            MemoryUpdatedEvent(session_id=session.id, summary=event.text, done=True)
                        )
                        logger.info(
                            f"Compressed session {session.id} history up to message index {snapshot}"
                        )
                        return True
                    elif isinstance(event, StreamErrorEvent):
                        logger.warning(
                            f"Summarization failed for session {session.id}: {event.error}"
                        )
                        return False
        finally:
            self._in_flight.discard(session.id)
        return False
