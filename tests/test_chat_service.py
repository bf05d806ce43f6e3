import asyncio
import logging

import httpx

from conftest import FakeClient, FakeRetriever, add_turns
from common.events import (
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    EventEmitter,
    MessageUpdatedEvent,
    StreamErrorEvent,
)
from parley.chat import ChatService
from parley.client import ChatStream
from parley.config import ChatConfig
from parley.hooks import ChatHooks
from parley.prompts import ERROR_TEXT
from parley.retrieval import PluginRetriever


def _run(coro_fn):
    return asyncio.run(coro_fn())


def test_full_turn_streams_reply_and_records_stats(store, session, config):
    client = FakeClient(streams=[[ChunkEvent(text="Hi"), DoneEvent(text="Hi there")]])
    ended = []
    service = ChatService(
        store, client, config, hooks=ChatHooks(on_turn_end=[lambda s, m: ended.append(m.id)])
    )

    async def scenario():
        bot = await service.send(session, "hello")
        await service.drain()
        return bot

    bot = _run(scenario)

    assert [m.role for m in session.messages] == ["user", "assistant"]
    assert bot.content == "Hi there"
    assert bot.streaming is False
    assert bot.model == config.llm.model
    assert client.streamed[0][-1].content == "hello"
    assert session.stat.char_count == len("Hi there")
    assert ended == [bot.id]
    assert len(service.registry) == 0


def test_second_turn_carries_previous_exchange(store, session, config):
    client = FakeClient(streams=[[DoneEvent(text="first answer")], [DoneEvent(text="second answer")]])
    service = ChatService(store, client, config)

    async def scenario():
        await service.send(session, "first question")
        await service.send(session, "second question")
        await service.drain()

    _run(scenario)

    assert [m.content for m in client.streamed[1]] == [
        "first question",
        "first answer",
        "second question",
    ]


def test_errored_turn_is_left_out_of_next_context(store, session, config):
    client = FakeClient(
        streams=[
            [ChunkEvent(text="par"), StreamErrorEvent(error=RuntimeError("boom"), status_code=500)],
            [DoneEvent(text="fine")],
        ]
    )
    service = ChatService(store, client, config)

    async def scenario():
        failed = await service.send(session, "first")
        await service.send(session, "second")
        await service.drain()
        return failed

    failed = _run(scenario)

    assert failed.errored is True
    assert failed.content == "par\n\n" + ERROR_TEXT
    assert [m.content for m in client.streamed[1]] == ["second"]


def test_retrieval_failure_marks_turn_errored(store, session, config):
    session.retrieval = True
    client = FakeClient()
    updates = []
    service = ChatService(
        store,
        client,
        config,
        retriever=FakeRetriever(error="plugin unavailable"),
        emitter=EventEmitter(updates.append),
    )

    bot = _run(lambda: service.send(session, "look this up"))

    assert client.streamed == []
    assert bot.content == ERROR_TEXT
    assert bot.errored is True
    assert session.messages[0].errored is True
    assert isinstance(updates[-1], MessageUpdatedEvent)
    assert updates[-1].errored is True


def test_malformed_retrieval_response_marks_turn_errored(store, session, config):
    session.retrieval = True
    client = FakeClient()
    retriever = PluginRetriever(
        "http://plugin.local",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"results": ["oops"]})),
    )
    service = ChatService(store, client, config, retriever=retriever)

    bot = _run(lambda: service.send(session, "q"))

    assert client.streamed == []
    assert [(m.role, m.errored) for m in session.messages] == [("user", True), ("assistant", True)]
    assert bot.content == ERROR_TEXT


def test_new_message_supersedes_pending_request(store, session, config):
    async def blocking_deltas():
        yield "partial"
        await asyncio.Event().wait()
        yield "never"

    client = FakeClient(streams=[ChatStream(blocking_deltas), [DoneEvent(text="second")]])

    async def scenario():
        first_chunk = asyncio.Event()

        def on_event(event):
            if isinstance(event, MessageUpdatedEvent) and event.content == "partial":
                first_chunk.set()

        service = ChatService(store, client, config, emitter=EventEmitter(on_event))
        first = asyncio.create_task(service.send(session, "one"))
        await first_chunk.wait()
        second = await service.send(session, "two")
        first_bot = await first
        await service.drain()
        return first_bot, second, service

    first_bot, second_bot, service = _run(scenario)

    assert first_bot.content == "partial"
    assert first_bot.errored is True
    assert first_bot.streaming is False
    assert second_bot.content == "second"
    assert second_bot.errored is False
    assert len(service.registry) == 0
    assert [(m.role, m.content) for m in client.streamed[1]] == [("user", "two")]


def test_turn_superseded_during_lookup_is_cancelled(store, session, config):
    session.retrieval = True

    class SlowRetriever:
        def __init__(self):
            self.started = asyncio.Event()
            self.release = asyncio.Event()

        async def lookup(self, query):
            self.started.set()
            await self.release.wait()
            return []

    client = FakeClient(streams=[[DoneEvent(text="stale")], [DoneEvent(text="fresh")]])

    async def scenario():
        retriever = SlowRetriever()
        service = ChatService(store, client, config, retriever=retriever)
        first = asyncio.create_task(service.send(session, "one"))
        await retriever.started.wait()
        second = asyncio.create_task(service.send(session, "two"))
        await asyncio.sleep(0)
        retriever.release.set()
        return await first, await second

    first_bot, second_bot = _run(scenario)

    assert first_bot.content == ""
    assert first_bot.errored is True
    assert second_bot.content == "fresh"
    assert [m.content for m in client.streamed[1] if m.visible] == ["two"]


def test_stop_cancels_only_the_named_request(store, session, config):
    async def blocking_deltas():
        yield "partial"
        await asyncio.Event().wait()
        yield "never"

    client = FakeClient(streams=[ChatStream(blocking_deltas)])

    async def scenario():
        started = asyncio.Event()
        service = ChatService(
            store, client, config, emitter=EventEmitter(lambda e: started.set())
        )
        task = asyncio.create_task(service.send(session, "one"))
        await started.wait()
        bot_id = session.messages[-1].id
        assert service.stop(session, bot_id + 1) is False
        assert service.stop(session, bot_id) is True
        return await task

    bot = _run(scenario)

    assert bot.content == "partial"
    assert bot.errored is True


def test_retry_resends_preceding_user_message(store, session, config):
    client = FakeClient(
        streams=[
            [StreamErrorEvent(error=RuntimeError("boom"), status_code=503)],
            [DoneEvent(text="recovered")],
        ]
    )
    service = ChatService(store, client, config)

    async def scenario():
        failed = await service.send(session, "hello")
        retried = await service.retry(session, failed.id)
        await service.drain()
        return retried

    retried = _run(scenario)

    assert retried.content == "recovered"
    assert client.streamed[1][-1].content == "hello"
    assert [m.role for m in session.messages] == ["user", "assistant", "user", "assistant"]


def test_retry_of_unknown_message_is_a_no_op(store, session, config):
    service = ChatService(store, FakeClient(), config)

    assert _run(lambda: service.retry(session, 42)) is None


def test_completed_turn_triggers_topic_and_compression(store, session):
    config = ChatConfig(history_message_count=4, compress_message_length_threshold=500)
    add_turns(store, session, 3, content="{i}" + "x" * 299)
    client = FakeClient(
        replies=["Trip Plans"],
        streams=[[DoneEvent(text="answer")], [DoneEvent(text="rolling summary")]],
    )
    service = ChatService(store, client, config)

    async def scenario():
        await service.send(session, "question")
        await service.drain()

    _run(scenario)

    assert session.topic == "Trip Plans"
    assert session.memory_summary == "rolling summary"
    assert session.last_summarized_index == 5


def test_background_failure_does_not_affect_turn(store, session, config, caplog):
    client = FakeClient(streams=[[DoneEvent(text="answer")]])
    events = []
    service = ChatService(store, client, config, emitter=EventEmitter(events.append))

    async def broken(session):
        raise RuntimeError("summary exploded")

    service.compressor.summarize_session = broken

    async def scenario():
        bot = await service.send(session, "question")
        await service.drain()
        return bot

    with caplog.at_level(logging.ERROR, logger="parley.chat"):
        bot = _run(scenario)

    assert bot.content == "answer"
    assert bot.errored is False
    assert "Background summarization failed" in caplog.text
    errors = [e for e in events if isinstance(e, ErrorEvent)]
    assert errors[0].source == "memory"
