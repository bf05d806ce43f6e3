import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from common.ids import generate_id
from common.jsonio import atomic_write_json, load_json
from parley.errors import MessageLockedError, SessionNotFound
from parley.prompts import DEFAULT_TOPIC
from parley.sessions.schema import Message, Role, Session, now_iso

logger = logging.getLogger(__name__)

STATE_VERSION = 1.2

_MUTABLE_AFTER_STREAM = {"errored", "visible"}


@dataclass
class SessionTemplate:
    topic: str = DEFAULT_TOPIC
    greeting: str | None = None
    bot_name: str = ""
    retrieval: bool = False
    send_memory: bool = True
    context: list[Message] = field(default_factory=list)


class SessionStore:
    """Exclusive owner of all sessions; every mutation goes through its methods."""

    def __init__(self, sessions: list[Session] | None = None, current_index: int = 0):
        self.sessions: list[Session] = sessions or [self._create_session()]
        self.current_index = current_index

    def _create_session(self, template: SessionTemplate | None = None) -> Session:
        session = Session(id=generate_id())
        if template is None:
            return session
        session.topic = template.topic
        session.bot_name = template.bot_name
        session.retrieval = template.retrieval
        session.send_memory = template.send_memory
        session.context = [m.model_copy() for m in template.context]
        if template.greeting:
            self.append_message(session, "assistant", template.greeting)
        return session

    def current_session(self) -> Session:
        if not 0 <= self.current_index < len(self.sessions):
            self.current_index = min(len(self.sessions) - 1, max(0, self.current_index))
        return self.sessions[self.current_index]

    def select_session(self, index: int) -> Session:
        if not 0 <= index < len(self.sessions):
            raise SessionNotFound(f"No session at index {index}")
        self.current_index = index
        return self.sessions[index]

    def get_session(self, session_id: str) -> Session:
        for session in self.sessions:
            if session.id == session_id:
                return session
        raise SessionNotFound(f"Session {session_id} not found")

    def new_session(self, template: SessionTemplate | None = None) -> Session:
        session = self._create_session(template)
        self.sessions.insert(0, session)
        self.current_index = 0
        return session

    def remove_session(self, index: int) -> Session:
        if not 0 <= index < len(self.sessions):
            raise SessionNotFound(f"No session at index {index}")
        removed = self.sessions[index]
        if len(self.sessions) == 1:
            self.sessions = [self._create_session()]
            self.current_index = 0
            return removed

        del self.sessions[index]
        if self.current_index == index:
            self.current_index -= 1
        elif self.current_index > index:
            self.current_index -= 1
        self.current_session()
        return removed

    def move_session(self, from_index: int, to_index: int) -> None:
        session = self.sessions.pop(from_index)
        self.sessions.insert(to_index, session)

        old = self.current_index
        new = to_index if old == from_index else old
        if from_index < old <= to_index:
            new -= 1
        elif to_index <= old < from_index:
            new += 1
        self.current_index = new

    def clear_sessions(self) -> None:
        self.sessions = [self._create_session()]
        self.current_index = 0

    def reset_session(self, session: Session) -> None:
        session.messages = []
        session.memory_summary = ""
        session.last_summarized_index = 0
        session.last_updated_at = now_iso()

    def append_message(self, session: Session, role: Role, content: str, **fields: Any) -> Message:
        now = now_iso()
        message = Message(
            id=session.next_message_id,
            role=role,
            content=content,
            created_at=now,
            updated_at=now,
            **fields,
        )
        session.next_message_id += 1
        session.messages.append(message)
        session.last_updated_at = now
        return message

    def update_message(self, session: Session, message: Message, **changes: Any) -> Message:
        if not message.streaming and set(changes) - _MUTABLE_AFTER_STREAM - {"streaming"}:
            raise MessageLockedError(
                f"Message {message.id} in session {session.id} is no longer streaming"
            )
        for key, value in changes.items():
            setattr(message, key, value)
        message.updated_at = now_iso()
        return message

    def delete_message(self, session: Session, message_id: int) -> bool:
        idx = session.index_of(message_id)
        if idx < 0:
            return False
        if not session.messages[idx].deletable:
            logger.debug(f"Refusing to delete pinned message {message_id} in session {session.id}")
            return False
        del session.messages[idx]
        if idx < session.last_summarized_index:
            session.last_summarized_index -= 1
        session.last_updated_at = now_iso()
        return True

    def set_topic(self, session: Session, topic: str) -> None:
        session.topic = topic
        session.last_updated_at = now_iso()

    def set_memory_summary(self, session: Session, summary: str) -> None:
        session.memory_summary = summary

    def mark_summarized(self, session: Session, index: int) -> None:
        index = min(index, len(session.messages))
        if index > session.last_summarized_index:
            session.last_summarized_index = index

    def record_stat(self, session: Session, message: Message) -> None:
        session.stat.char_count += len(message.content)
        session.stat.word_count += len(message.content.split())
        session.last_updated_at = now_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "current_index": self.current_index,
            "sessions": [s.model_dump() for s in self.sessions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionStore":
        data = migrate_state(dict(data))
        sessions = [Session.model_validate(s) for s in data.get("sessions", [])]
        return cls(sessions=sessions or None, current_index=int(data.get("current_index", 0)))

    def save(self, path: str | Path) -> Path:
        return atomic_write_json(path, self.to_dict())

    @classmethod
    def load(cls, path: str | Path) -> "SessionStore":
        data = load_json(path)
        if not data:
            return cls()
        return cls.from_dict(data)


def migrate_state(data: dict[str, Any]) -> dict[str, Any]:
    version = float(data.get("version", STATE_VERSION))
    sessions = [dict(s) for s in data.get("sessions", [])]
    if version == 1:
        for s in sessions:
            s["context"] = []
    if version < 1.2:
        for s in sessions:
            s["send_memory"] = True
    data["sessions"] = sessions
    data["version"] = STATE_VERSION
    return data
