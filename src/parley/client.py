import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Protocol, Sequence

from common import llm
from common.events import ChunkEvent, DoneEvent, StreamErrorEvent, StreamEvent
from parley.config import LLMConfig
from parley.errors import StreamCancelled
from parley.sessions.schema import Message

logger = logging.getLogger(__name__)

_END = object()

DeltaSource = Callable[[], AsyncIterator[str]]


class ChatStream:
    """Handle on one streaming completion.

    Building the handle performs no I/O, so it can be registered for
    cancellation before the first byte is awaited. ``events()`` yields
    ``ChunkEvent`` with the accumulated text, then exactly one terminal
    ``DoneEvent`` or ``StreamErrorEvent``; provider errors never escape.
    """

    def __init__(self, deltas: DeltaSource):
        self._deltas = deltas
        self._cancelled = asyncio.Event()
        self._consumed = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    async def _next(self, chunks: AsyncIterator[str]) -> Any:
        step = asyncio.ensure_future(anext(chunks))
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            done, _ = await asyncio.wait({step, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not step.done():
                step.cancel()
                # the generator must be idle before it can be closed
                await asyncio.gather(step, return_exceptions=True)
        if step not in done:
            raise StreamCancelled()
        try:
            return step.result()
        except StopAsyncIteration:
            return _END

    async def events(self) -> AsyncIterator[StreamEvent]:
        if self._consumed:
            raise RuntimeError("ChatStream can only be consumed once")
        self._consumed = True

        text = ""
        chunks: AsyncIterator[str] | None = None
        try:
            while True:
                if self.cancelled:
                    raise StreamCancelled()
                if chunks is None:
                    chunks = self._deltas()
                delta = await self._next(chunks)
                if delta is _END:
                    break
                if not delta:
                    continue
                text += delta
                yield ChunkEvent(text=text)
        except StreamCancelled as e:
            yield StreamErrorEvent(error=e, cancelled=True)
            return
        except Exception as e:
            logger.warning(f"Completion stream failed: {e}")
            yield StreamErrorEvent(
                error=e, status_code=llm.status_code_of(e), cancelled=self.cancelled
            )
            return
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

        yield DoneEvent(text=text)


class CompletionClient(Protocol):
    async def send_chat(self, messages: Sequence[Message], config: LLMConfig) -> str: ...

    def stream_chat(self, messages: Sequence[Message], config: LLMConfig) -> ChatStream: ...


class LiteLLMClient:
    def __init__(self, completion_fn: Callable[..., Any] | None = None):
        self._acompletion = completion_fn or llm.acompletion

    async def send_chat(self, messages: Sequence[Message], config: LLMConfig) -> str:
        response = await self._acompletion(
            messages=[m.to_wire() for m in messages],
            stream=False,
            **config.request_kwargs(),
        )
        return llm.message_text(response)

    def stream_chat(self, messages: Sequence[Message], config: LLMConfig) -> ChatStream:
        wire = [m.to_wire() for m in messages]
        kwargs = config.request_kwargs()

        async def deltas() -> AsyncIterator[str]:
            response = await self._acompletion(messages=wire, stream=True, **kwargs)
            async for chunk in response:
                text = llm.delta_text(chunk)
                if text:
                    yield text

        return ChatStream(deltas)
