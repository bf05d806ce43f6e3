import logging
from typing import Protocol

logger = logging.getLogger(__name__)

Key = tuple[str, int]


class CancelHandle(Protocol):
    def cancel(self) -> object: ...


class CancellationRegistry:
    """One revocation handle per (session id, message id) in-flight request."""

    def __init__(self):
        self._handles: dict[Key, CancelHandle] = {}

    def register(self, session_id: str, message_id: int, handle: CancelHandle) -> None:
        key = (session_id, message_id)
        previous = self._handles.get(key)
        if previous is not None and previous is not handle:
            logger.debug(f"Replacing pending request handle for {key}")
        self._handles[key] = handle

    def cancel(self, session_id: str, message_id: int) -> bool:
        handle = self._handles.pop((session_id, message_id), None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def remove(
        self, session_id: str, message_id: int, handle: CancelHandle | None = None
    ) -> bool:
        key = (session_id, message_id)
        current = self._handles.get(key)
        if current is None:
            return False
        if handle is not None and current is not handle:
            return False
        del self._handles[key]
        return True

    def cancel_session(self, session_id: str) -> int:
        keys = [key for key in self._handles if key[0] == session_id]
        for key in keys:
            self.cancel(*key)
        return len(keys)

    def cancel_all(self) -> int:
        keys = list(self._handles)
        for key in keys:
            self.cancel(*key)
        return len(keys)

    def has_pending(self, session_id: str, message_id: int | None = None) -> bool:
        if message_id is not None:
            return (session_id, message_id) in self._handles
        return any(key[0] == session_id for key in self._handles)

    def pending(self) -> list[Key]:
        return list(self._handles)

    def __len__(self) -> int:
        return len(self._handles)
