"""Session memory and streaming-response coordination for chat clients."""

from parley.cancellation import CancellationRegistry
from parley.chat import ChatService
from parley.client import ChatStream, LiteLLMClient
from parley.config import ChatConfig, LLMConfig, load_config
from parley.context import ContextAssembler
from parley.memory import MemoryCompressor
from parley.sessions.schema import Message, Session
from parley.sessions.store import SessionStore, SessionTemplate
from parley.streaming import RequestState, StreamingCoordinator

__version__ = "0.1.0"

__all__ = [
    "CancellationRegistry",
    "ChatConfig",
    "ChatService",
    "ChatStream",
    "ContextAssembler",
    "LLMConfig",
    "LiteLLMClient",
    "MemoryCompressor",
    "Message",
    "RequestState",
    "Session",
    "SessionStore",
    "SessionTemplate",
    "StreamingCoordinator",
    "load_config",
]
