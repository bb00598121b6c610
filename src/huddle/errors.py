"""Operation results and the error taxonomy.

Registry and context operations never raise for domain failures. They return
a :class:`Result` carrying either a value or an :class:`ErrorKind` plus a
human-readable reason, and the dispatch layer decides what to tell the client.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Generic, TypeVar

T = TypeVar("T")

# Reasons that callers and clients match on
SESSION_NOT_FOUND = "Session not found"
ROOM_NOT_FOUND = "Room not found"
ROOM_FULL = "Room is full"
MESSAGE_NOT_FOUND = "Message not found"
NOT_IN_ROOM = "not in a room"
WINDOW_EXPIRED = "window expired"
WRONG_MESSAGE_TYPE = "wrong message type"
DEFAULT_ROOM_PROTECTED = "Cannot delete default rooms"


class ErrorKind(StrEnum):
    """Category of a rejected operation."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    AUTHORIZATION = "authorization"
    CAPACITY = "capacity"
    STATE = "state"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a chat operation.

    Usage:
        joined = await ctx.join_room(session.id, "general")
        if not joined:
            logger.info("Join rejected: %s", joined.reason)
    """

    value: T | None = None
    error: ErrorKind | None = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ErrorKind, reason: str) -> "Result[T]":
        return cls(error=error, reason=reason)

    @classmethod
    def failed_from(cls, other: "Result[Any]") -> "Result[T]":
        """Carry another result's failure over to a different value type."""
        if other.error is None:
            msg = "Cannot propagate a successful result as a failure"
            raise ValueError(msg)
        return cls(error=other.error, reason=other.reason)


class EnvelopeError(ValueError):
    """An inbound frame could not be decoded into a command."""

    kind = ErrorKind.VALIDATION
