from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from parley.prompts import DEFAULT_TOPIC

Role = Literal["system", "user", "assistant"]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Message(BaseModel):
    id: int = 0
    role: Role = "user"
    content: str = ""
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    visible: bool = True
    streaming: bool = False
    errored: bool = False
    deletable: bool = True
    model: str | None = None
    source: str | None = None

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


def synthetic(role: Role, content: str) -> Message:
    return Message(role=role, content=content, visible=False)


class ChatStat(BaseModel):
    token_count: int = 0
    word_count: int = 0
    char_count: int = 0


class Session(BaseModel):
    id: str
    topic: str = DEFAULT_TOPIC
    bot_name: str = ""
    send_memory: bool = True
    retrieval: bool = False
    memory_summary: str = ""
    context: list[Message] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)
    last_summarized_index: int = 0
    next_message_id: int = 1
    stat: ChatStat = Field(default_factory=ChatStat)
    created_at: str = Field(default_factory=now_iso)
    last_updated_at: str = Field(default_factory=now_iso)

    @model_validator(mode="after")
    def _check_indices(self) -> "Session":
        self.last_summarized_index = min(max(0, self.last_summarized_index), len(self.messages))
        highest = max((m.id for m in self.messages), default=0)
        if self.next_message_id <= highest:
            self.next_message_id = highest + 1
        return self

    def find_message(self, message_id: int) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def index_of(self, message_id: int) -> int:
        for idx, message in enumerate(self.messages):
            if message.id == message_id:
                return idx
        return -1
