from __future__ import annotations


class AlumNodeError(Exception):
    """Base class for every failure raised by the AlumNode core."""


class TransportFailure(AlumNodeError):
    """The store could not be reached or did not answer in time."""


class NotFound(AlumNodeError):
    pass


class Conflict(AlumNodeError):
    pass


class AlreadyExists(Conflict):
    pass


class InvalidTransition(Conflict):
    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"cannot move connection from {current} to {requested}")


class ValidationFailure(AlumNodeError):
    pass


class EmptyMessage(ValidationFailure):
    def __init__(self) -> None:
        super().__init__("message content is empty")


class SelfConversation(ValidationFailure):
    def __init__(self) -> None:
        super().__init__("cannot start a conversation with yourself")


class UnknownField(ValidationFailure):
    def __init__(self, record: str, fields: set[str]) -> None:
        self.record = record
        self.fields = frozenset(fields)
        super().__init__(f"unknown {record} fields: {', '.join(sorted(fields))}")


class OperationFailed(AlumNodeError):
    """A store-level failure surfaced by a named core operation.

    The underlying error is kept on ``cause`` and chained with ``raise ... from``.
    """

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(f"{type(self).__name__}: {cause}")


class ConversationResolutionFailed(OperationFailed):
    pass


class MessageSendFailed(OperationFailed):
    pass


class MessageFetchFailed(OperationFailed):
    pass
