"""Command handlers for the chat dispatcher.

Handlers receive the command first. ``ctx`` and ``connection`` are injected
by name; the sending session is resolved through :func:`current_session`.
"""

import logging
from typing import Annotated, Any

from huddle.chat import ChatContext
from huddle.commands import (
    AddModerator,
    AddReaction,
    Connect,
    CreateRoom,
    DeleteMessage,
    DeleteRoom,
    Disconnect,
    EditMessage,
    GetMessages,
    InvalidFrame,
    JoinRoom,
    LeaveRoom,
    RemoveModerator,
    RemoveReaction,
    SendMessage,
    StartTyping,
    StopTyping,
    SweepTyping,
)
from huddle.depends import Depends
from huddle.dispatch import HandlerRegistry
from huddle.errors import SESSION_NOT_FOUND, ErrorKind, Result
from huddle.sessions import Connection, Session

logger = logging.getLogger(__name__)

handlers = HandlerRegistry()


def current_session(
    ctx: ChatContext, connection: Connection | None
) -> Session | None:
    """Session bound to the connection that sent the command."""
    if connection is None:
        return None
    return ctx.sessions.find_by_connection(connection)


SessionDep = Annotated[Session | None, Depends(current_session)]


def _no_session() -> Result[Any]:
    return Result.failure(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)


# Connection lifecycle
@handlers.handler
async def handle_connect(
    cmd: Connect, ctx: ChatContext, connection: Connection | None
) -> Result[Session]:
    if connection is None:
        return Result.failure(ErrorKind.VALIDATION, "Connect requires a connection")
    return await ctx.connect(cmd.username, cmd.is_guest, connection)


@handlers.handler
async def handle_disconnect(
    cmd: Disconnect, ctx: ChatContext, session: SessionDep
) -> Result[Session]:
    if session is None:
        return Result.success()
    return Result.success(await ctx.remove_session(session.id))


@handlers.handler
async def handle_sweep_typing(cmd: SweepTyping, ctx: ChatContext) -> Result[Any]:
    return Result.success(await ctx.sweep_typing())


@handlers.handler
async def handle_invalid_frame(cmd: InvalidFrame) -> Result[Any]:
    return Result.failure(ErrorKind.VALIDATION, cmd.reason)


# Membership
@handlers.handler
async def handle_join_room(
    cmd: JoinRoom, ctx: ChatContext, session: SessionDep
) -> Result[Any]:
    """Join a room and send its recent history to the joiner."""
    if session is None:
        return _no_session()

    joined = await ctx.join_room(session.id, cmd.room_id)
    if joined:
        await ctx.send_history(session, cmd.room_id)
    return joined


@handlers.handler
async def handle_leave_room(
    cmd: LeaveRoom, ctx: ChatContext, session: SessionDep
) -> Result[Any]:
    if session is None:
        return _no_session()

    room_id = cmd.room_id or session.current_room
    if room_id is None:
        return Result.success()
    return await ctx.leave_room(session.id, room_id)


# Messages
@handlers.handler
async def handle_send_message(
    cmd: SendMessage, ctx: ChatContext, session: SessionDep
) -> Result[Any]:
    if session is None:
        return _no_session()
    return await ctx.send_message(session.id, cmd.content, cmd.reply_to)


@handlers.handler
async def handle_edit_message(
    cmd: EditMessage, ctx: ChatContext, session: SessionDep
) -> Result[Any]:
    if session is None:
        return _no_session()
    return await ctx.edit_message(session.id, cmd.message_id, cmd.content)


@handlers.handler
async def handle_delete_message(
    cmd: DeleteMessage, ctx: ChatContext, session: SessionDep
) -> Result[Any]:
    if session is None:
        return _no_session()
    return await ctx.delete_message(session.id, cmd.message_id)


@handlers.handler
async def handle_add_reaction(
    cmd: AddReaction, ctx: ChatContext, session: SessionDep
) -> Result[Any]:
    if session is None:
        return _no_session()
    return await ctx.add_reaction(session.id, cmd.message_id, cmd.emoji)


@handlers.handler
async def handle_remove_reaction(
    cmd: RemoveReaction, ctx: ChatContext, session: SessionDep
) -> Result[Any]:
    if session is None:
        return _no_session()
    return await ctx.remove_reaction(session.id, cmd.message_id, cmd.emoji)


@handlers.handler
async def handle_get_messages(
    cmd: GetMessages, ctx: ChatContext, session: SessionDep
) -> Result[Any]:
    if session is None:
        return _no_session()
    return await ctx.send_history(session, cmd.room_id, cmd.limit, cmd.before)


# Typing
@handlers.handler
async def handle_start_typing(
    cmd: StartTyping, ctx: ChatContext, session: SessionDep
) -> Result[Any]:
    if session is None:
        return _no_session()
    return await ctx.start_typing(session.id, cmd.room_id)


@handlers.handler
async def handle_stop_typing(
    cmd: StopTyping, ctx: ChatContext, session: SessionDep
) -> Result[Any]:
    if session is None:
        return _no_session()
    return await ctx.stop_typing(session.id, cmd.room_id)


# Rooms
@handlers.handler
async def handle_create_room(
    cmd: CreateRoom, ctx: ChatContext, session: SessionDep
) -> Result[Any]:
    if session is None:
        return _no_session()

    logger.info("User %s creating room %r", session.username, cmd.name)
    return await ctx.create_room(
        session.id, cmd.name, cmd.description, cmd.is_private, cmd.max_users
    )


@handlers.handler
async def handle_delete_room(
    cmd: DeleteRoom, ctx: ChatContext, session: SessionDep
) -> Result[Any]:
    if session is None:
        return _no_session()
    return await ctx.delete_room(session.id, cmd.room_id)


@handlers.handler
async def handle_add_moderator(
    cmd: AddModerator, ctx: ChatContext, session: SessionDep
) -> Result[Any]:
    if session is None:
        return _no_session()
    return await ctx.add_moderator(session.id, cmd.room_id, cmd.user_id)


@handlers.handler
async def handle_remove_moderator(
    cmd: RemoveModerator, ctx: ChatContext, session: SessionDep
) -> Result[Any]:
    if session is None:
        return _no_session()
    return await ctx.remove_moderator(session.id, cmd.room_id, cmd.user_id)
