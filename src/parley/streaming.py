import asyncio
import logging
from contextlib import aclosing
from enum import Enum
from typing import Any

from common.events import (
    ChunkEvent,
    DoneEvent,
    EventEmitter,
    MessageUpdatedEvent,
    StreamErrorEvent,
)
from parley.cancellation import CancellationRegistry
from parley.client import ChatStream
from parley.errors import StreamCancelled
from parley.hooks import ChatHooks
from parley.prompts import ERROR_TEXT, UNAUTHORIZED_TEXT
from parley.sessions.schema import Message, Session
from parley.sessions.store import SessionStore

logger = logging.getLogger(__name__)


class RequestState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RequestState.COMPLETED, RequestState.FAILED, RequestState.CANCELLED)


class StreamingCoordinator:
    def __init__(
        self,
        store: SessionStore,
        registry: CancellationRegistry,
        *,
        hooks: ChatHooks | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.store = store
        self.registry = registry
        self.hooks = hooks or ChatHooks()
        self.emitter = emitter or EventEmitter()

    def _update(self, session: Session, message: Message, **changes: Any) -> None:
        self.store.update_message(session, message, **changes)
        self.emitter.emit(
            MessageUpdatedEvent(
                session_id=session.id,
                message_id=message.id,
                content=message.content,
                streaming=message.streaming,
                errored=message.errored,
            )
        )

    def _fail(
        self,
        session: Session,
        user_message: Message | None,
        bot_message: Message,
        event: StreamErrorEvent,
    ) -> RequestState:
        if event.cancelled:
            state = RequestState.CANCELLED
            content = bot_message.content
        elif event.status_code == 401:
            state = RequestState.FAILED
            content = UNAUTHORIZED_TEXT
        else:
            state = RequestState.FAILED
            content = bot_message.content + "\n\n" + ERROR_TEXT

        self._update(session, bot_message, content=content, streaming=False, errored=True)
        if user_message is not None:
            self.store.update_message(session, user_message, errored=True)

        if state is RequestState.CANCELLED:
            logger.info(f"Request for message {bot_message.id} in session {session.id} cancelled")
        else:
            logger.warning(
                f"Request for message {bot_message.id} in session {session.id} failed: "
                f"{event.error} (status {event.status_code})"
            )
        self.hooks.fire_turn_error(session, bot_message, event.error)
        return state

    async def run(
        self,
        session: Session,
        user_message: Message | None,
        bot_message: Message,
        stream: ChatStream,
    ) -> RequestState:
        state = RequestState.SENDING
        self.registry.register(session.id, bot_message.id, stream)
        try:
            async with aclosing(stream.events()) as events:
                async for event in events:
                    if isinstance(event, ChunkEvent):
                        state = RequestState.STREAMING
                        self._update(session, bot_message, content=event.text)
                    elif isinstance(event, DoneEvent):
                        self._update(session, bot_message, content=event.text, streaming=False)
                        state = RequestState.COMPLETED
                        break
                    elif isinstance(event, StreamErrorEvent):
                        state = self._fail(session, user_message, bot_message, event)
                        break
        except asyncio.CancelledError:
            stream.cancel()
            if not state.terminal:
                self._fail(
                    session,
                    user_message,
                    bot_message,
                    StreamErrorEvent(error=StreamCancelled(), cancelled=True),
                )
            raise
        finally:
            self.registry.remove(session.id, bot_message.id, stream)

        if not state.terminal:
            state = self._fail(
                session,
                user_message,
                bot_message,
                StreamErrorEvent(error=RuntimeError("stream ended without a result")),
            )

        if state is RequestState.COMPLETED:
            self.hooks.fire_message_complete(session, bot_message)
        self.hooks.fire_turn_end(session, bot_message)
        return state
