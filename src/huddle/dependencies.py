"""FastAPI dependencies for the chat application."""

from typing import Annotated

from fastapi import Depends
from starlette.requests import HTTPConnection

from huddle.chat import ChatContext
from huddle.dispatch import Dispatcher


def get_chat(conn: HTTPConnection) -> ChatContext:
    """Get the application's chat context."""
    return conn.app.state.chat


def get_dispatcher(conn: HTTPConnection) -> Dispatcher:
    """Get the application's command dispatcher."""
    return conn.app.state.dispatcher


ChatDep = Annotated[ChatContext, Depends(get_chat)]
DispatcherDep = Annotated[Dispatcher, Depends(get_dispatcher)]
