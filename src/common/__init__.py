from common import llm
from common.events import EventEmitter
from common.ids import generate_id
from common.jsonio import load_json, atomic_write_json

__all__ = ["llm", "EventEmitter", "generate_id", "load_json", "atomic_write_json"]
