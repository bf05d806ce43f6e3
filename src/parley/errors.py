class ParleyError(Exception):
    pass


class ConfigError(ParleyError):
    pass


class SessionNotFound(ParleyError):
    pass


class MessageLockedError(ParleyError):
    pass


class RetrievalError(ParleyError):
    pass


class StreamCancelled(ParleyError):
    def __init__(self, message: str = "The request was aborted"):
        super().__init__(message)
