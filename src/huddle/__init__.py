"""huddle: In-memory real-time chat over WebSockets.

This package re-exports the core components. The FastAPI application lives in
``huddle.app``.
"""

from huddle.chat import ChatContext
from huddle.config import ChatConfig, DefaultRoom
from huddle.depends import Depends
from huddle.dispatch import Dispatcher, HandlerRegistry, Middleware
from huddle.errors import EnvelopeError, ErrorKind, Result
from huddle.models import ChatMessage, Envelope, EventType, MessageType, UserStatus
from huddle.sessions import Connection, Session

__all__ = [
    # context
    "ChatContext",
    "ChatConfig",
    "DefaultRoom",
    "Connection",
    "Session",
    # dispatch
    "Dispatcher",
    "HandlerRegistry",
    "Middleware",
    "Depends",
    # results
    "Result",
    "ErrorKind",
    "EnvelopeError",
    # wire
    "ChatMessage",
    "Envelope",
    "EventType",
    "MessageType",
    "UserStatus",
]
