from dataclasses import dataclass, field
from typing import Callable, List

from parley.sessions.schema import Message, Session


@dataclass
class ChatHooks:
    on_message_complete: List[Callable[[Session, Message], None]] = field(default_factory=list)
    on_turn_error: List[Callable[[Session, Message, BaseException], None]] = field(
        default_factory=list
    )
    on_turn_end: List[Callable[[Session, Message], None]] = field(default_factory=list)

    def fire_message_complete(self, session: Session, message: Message) -> None:
        for hook in list(self.on_message_complete):
            hook(session, message)

    def fire_turn_error(self, session: Session, message: Message, error: BaseException) -> None:
        for hook in list(self.on_turn_error):
            hook(session, message, error)

    def fire_turn_end(self, session: Session, message: Message) -> None:
        for hook in list(self.on_turn_end):
            hook(session, message)
