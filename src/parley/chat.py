import asyncio
import logging
from dataclasses import dataclass, field

from common.events import ErrorEvent, EventEmitter, MessageUpdatedEvent
from parley.cancellation import CancellationRegistry
from parley.client import CompletionClient
from parley.config import ChatConfig
from parley.context import ContextAssembler
from parley.errors import RetrievalError
from parley.hooks import ChatHooks
from parley.memory import MemoryCompressor
from parley.prompts import ERROR_TEXT, Prompts
from parley.retrieval import Retriever
from parley.sessions.schema import Message, Session
from parley.sessions.store import SessionStore
from parley.streaming import StreamingCoordinator

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _Turn:
    superseded: bool = False
    settled: asyncio.Event = field(default_factory=asyncio.Event)


class ChatService:
    def __init__(
        self,
        store: SessionStore,
        client: CompletionClient,
        config: ChatConfig | None = None,
        *,
        retriever: Retriever | None = None,
        emitter: EventEmitter | None = None,
        hooks: ChatHooks | None = None,
        prompts: Prompts | None = None,
    ):
        self.store = store
        self.client = client
        self.config = config or ChatConfig()
        self.emitter = emitter or EventEmitter()
        self.hooks = hooks or ChatHooks()
        self.registry = CancellationRegistry()
        self.assembler = ContextAssembler(
            self.config, client, retriever=retriever, prompts=prompts
        )
        self.compressor = MemoryCompressor(
            store, client, self.config, emitter=self.emitter, prompts=prompts
        )
        self.coordinator = StreamingCoordinator(
            store, self.registry, hooks=self.hooks, emitter=self.emitter
        )
        self.hooks.on_message_complete.append(self.on_new_message)
        self._background: set[asyncio.Task] = set()
        self._turns: dict[str, set[_Turn]] = {}

    async def send(self, session: Session, content: str) -> Message:
        pending = list(self._turns.get(session.id, ()))
        for earlier in pending:
            earlier.superseded = True
        superseded = self.registry.cancel_session(session.id)
        if superseded:
            logger.info(f"Cancelled {superseded} superseded request(s) in session {session.id}")
        turn = _Turn()
        turns = self._turns.setdefault(session.id, set())
        turns.add(turn)
        try:
            if pending:
                # superseded turns must be flagged errored before the next window is built
                await asyncio.gather(*(earlier.settled.wait() for earlier in pending))
            recent = self.assembler.recent_messages(session)
            user_message = self.store.append_message(session, "user", content)
            return await self._respond(session, user_message, recent, turn)
        finally:
            turn.settled.set()
            turns.discard(turn)

    async def _respond(
        self, session: Session, user_message: Message, recent: list[Message], turn: _Turn
    ) -> Message:
        try:
            outgoing = await self.assembler.assemble(self.store, session, user_message, recent)
        except RetrievalError as e:
            logger.warning(f"Knowledge lookup failed for session {session.id}: {e}")
            bot_message = self.store.append_message(
                session, "assistant", ERROR_TEXT, errored=True, model=self.config.llm.model
            )
            self.store.update_message(session, user_message, errored=True)
            self.emitter.emit(
                MessageUpdatedEvent(
                    session_id=session.id,
                    message_id=bot_message.id,
                    content=bot_message.content,
                    streaming=False,
                    errored=True,
                )
            )
            return bot_message

        bot_message = self.store.append_message(
            session, "assistant", "", streaming=True, model=self.config.llm.model
        )
        logger.debug(
            f"Session {session.id}: sending {len(outgoing)} messages for reply {bot_message.id}"
        )
        stream = self.client.stream_chat(outgoing, self.config.llm)
        if turn.superseded:
            stream.cancel()
        await self.coordinator.run(session, user_message, bot_message, stream)
        return bot_message

    async def retry(self, session: Session, message_id: int) -> Message | None:
        idx = session.index_of(message_id)
        if idx < 0:
            return None
        user_idx = idx if session.messages[idx].role == "user" else idx - 1
        while user_idx >= 0 and session.messages[user_idx].role != "user":
            user_idx -= 1
        if user_idx < 0:
            return None
        self.registry.cancel(session.id, message_id)
        return await self.send(session, session.messages[user_idx].content)

    def stop(self, session: Session, message_id: int) -> bool:
        return self.registry.cancel(session.id, message_id)

    def stop_all(self) -> int:
        return self.registry.cancel_all()

    def on_new_message(self, session: Session, message: Message) -> None:
        self.store.record_stat(session, message)
        self._spawn(self._summarize(session))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _summarize(self, session: Session) -> None:
        try:
            await self.compressor.summarize_session(session)
        except Exception as e:
            logger.exception(f"Background summarization failed for session {session.id}")
            self.emitter.emit(ErrorEvent(message=f"Memory update failed: {e}", source="memory"))

    async def drain(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background))
