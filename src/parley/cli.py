from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from common.events import (
    ErrorEvent,
    Event,
    EventEmitter,
    MemoryUpdatedEvent,
    MessageUpdatedEvent,
    TopicChangedEvent,
)
from parley.chat import ChatService
from parley.client import LiteLLMClient
from parley.config import get_optional_env, load_config, resolve_model_alias
from parley.errors import ConfigError, ParleyError
from parley.prompts import Prompts
from parley.retrieval import PluginRetriever
from parley.sessions.store import SessionStore, SessionTemplate


def main() -> int:
    load_dotenv()
    return _main(sys.argv[1:])


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="parley", description="Parley - chat with memory")
    subparsers = parser.add_subparsers(dest="command", required=False)

    chat = subparsers.add_parser("chat", help="Start an interactive chat session")
    chat.add_argument("--model", default=None, help="Model to use (supports aliases: 4o, 3.5, sonnet, haiku)")
    chat.add_argument("--config", default=None, help="YAML config file")
    chat.add_argument("--state", default=".parley/state.json", help="Where sessions are saved")
    chat.add_argument("--retrieval-url", default=None, help="Retrieval plugin base URL")
    chat.add_argument("--no-memory", action="store_true", help="Do not send the memory summary")
    chat.add_argument("--message", "-m", help="Single prompt (non-interactive)")
    chat.add_argument("--verbose", "-v", action="store_true")
    return parser


def _main(argv: list[str]) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args = parser.parse_args(["chat", *argv])
    return _cmd_chat(args)


def _cmd_chat(args) -> int:
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if args.model:
        config.llm.model = resolve_model_alias(args.model)

    retriever = None
    if args.retrieval_url:
        retriever = PluginRetriever(args.retrieval_url, bearer=get_optional_env("RETRIEVAL_BEARER"))

    state_path = Path(args.state)
    store = SessionStore.load(state_path)
    repl = ChatREPL(store, state_path)
    repl.service = ChatService(
        store,
        LiteLLMClient(),
        config,
        retriever=retriever,
        emitter=EventEmitter(repl.on_event),
    )
    if args.no_memory:
        store.current_session().send_memory = False
    repl.template = SessionTemplate(
        greeting=Prompts.greeting,
        retrieval=retriever is not None,
        send_memory=not args.no_memory,
    )

    try:
        asyncio.run(repl.run(args.message))
    except ParleyError as e:
        logger.exception("Chat failed")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.save(state_path)
    return 0


class ChatREPL:
    def __init__(self, store: SessionStore, state_path: Path):
        self.store = store
        self.state_path = state_path
        self.service: ChatService | None = None
        self.template = SessionTemplate()
        self._printed: dict[tuple[str, int], int] = {}

    def on_event(self, event: Event) -> None:
        session = self.store.current_session()
        if isinstance(event, MessageUpdatedEvent) and event.session_id == session.id:
            key = (event.session_id, event.message_id)
            done = self._printed.get(key, 0)
            if len(event.content) > done:
                print(event.content[done:], end="", flush=True)
                self._printed[key] = len(event.content)
            if not event.streaming:
                print()
        elif isinstance(event, TopicChangedEvent):
            print(f"\n📝 Topic: {event.topic}")
        elif isinstance(event, MemoryUpdatedEvent) and event.done:
            print("\n🧠 Conversation memory updated")
        elif isinstance(event, ErrorEvent):
            print(f"\n❌ {event.message}")

    async def run(self, initial_message: str | None = None):
        assert self.service is not None
        if initial_message:
            await self.process_user_message(initial_message)
            await self.service.drain()
            return

        session = self.store.current_session()
        print(f"🤖 Parley started (model: {self.service.config.llm.model}, topic: {session.topic})")
        print("Commands: /help for all commands")

        while True:
            try:
                user_input = (await asyncio.to_thread(input, "\n> ")).strip()
            except (EOFError, KeyboardInterrupt):
                break

            if not user_input:
                continue
            if user_input == "/retry":
                await self.retry_last()
                continue
            if user_input.startswith("/"):
                if self._handle_command(user_input):
                    continue
                break
            await self.process_user_message(user_input)

        self.service.stop_all()
        await self.service.drain()

    async def process_user_message(self, content: str) -> None:
        assert self.service is not None
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.service.stop_all)
            handler_installed = True
        except (NotImplementedError, RuntimeError):
            handler_installed = False

        print("\n🤖 Assistant: ", end="", flush=True)
        try:
            await self.service.send(self.store.current_session(), content)
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)

    async def retry_last(self) -> None:
        assert self.service is not None
        session = self.store.current_session()
        if not session.messages:
            print("Nothing to retry")
            return
        print("\n🤖 Assistant: ", end="", flush=True)
        await self.service.retry(session, session.messages[-1].id)

    def _handle_command(self, command: str) -> bool:
        parts = command.split(maxsplit=1)
        cmd = parts[0].lstrip("/").replace("-", "_")
        args = parts[1] if len(parts) > 1 else ""

        handler = getattr(self, f"cmd_{cmd}", None)
        if handler:
            return handler(args)

        print(f"Unknown command: /{cmd}. Type /help for available commands.")
        return True

    def cmd_quit(self, args: str) -> bool:
        print("👋 Goodbye!")
        return False

    def cmd_exit(self, args: str) -> bool:
        return self.cmd_quit(args)

    def cmd_new(self, args: str) -> bool:
        session = self.store.new_session(self.template)
        print(f"✅ Started session {session.id}")
        for message in session.messages:
            print(f"🤖 {message.content}")
        return True

    def cmd_sessions(self, args: str) -> bool:
        for idx, session in enumerate(self.store.sessions):
            marker = "*" if idx == self.store.current_index else " "
            print(f" {marker} [{idx}] {session.topic} ({len(session.messages)} messages)")
        return True

    def cmd_select(self, args: str) -> bool:
        try:
            session = self.store.select_session(int(args))
        except (ValueError, ParleyError):
            print("Usage: /select <index>")
            return True
        print(f"✅ Switched to: {session.topic}")
        return True

    def cmd_delete(self, args: str) -> bool:
        index = int(args) if args.strip().isdigit() else self.store.current_index
        try:
            removed = self.store.remove_session(index)
        except ParleyError as e:
            print(f"❌ {e}")
            return True
        if self.service is not None:
            self.service.registry.cancel_session(removed.id)
        print(f"✅ Deleted: {removed.topic}")
        return True

    def cmd_topic(self, args: str) -> bool:
        print(self.store.current_session().topic)
        return True

    def cmd_memory(self, args: str) -> bool:
        session = self.store.current_session()
        print(session.memory_summary or "No memory yet")
        print(f"(summarized up to message {session.last_summarized_index} of {len(session.messages)})")
        return True

    def cmd_reset(self, args: str) -> bool:
        self.store.reset_session(self.store.current_session())
        print("✅ Cleared messages and memory")
        return True

    def cmd_save(self, args: str) -> bool:
        path = Path(args) if args else self.state_path
        self.store.save(path)
        print(f"✅ Saved to {path}")
        return True

    def cmd_help(self, args: str) -> bool:
        print(
            """
Commands:
  /new            Start a new session
  /sessions       List sessions
  /select <n>     Switch to session n
  /delete [n]     Delete session n (default: current)
  /topic          Show the session topic
  /memory         Show the memory summary
  /retry          Re-send the last question
  /reset          Clear messages and memory of the current session
  /save [file]    Save all sessions
  /help           Show this help
  /quit           Exit
"""
        )
        return True
