"""Chat context - the registries plus the operations that span them.

A :class:`ChatContext` is created per application and passed explicitly to
command handlers. Construction seeds the default rooms; there is nothing to
tear down.

Every mutating operation here must run on the dispatcher's queue so that no
two of them interleave. Operations return :class:`~huddle.errors.Result`
objects and broadcast their consequences to the affected rooms.
"""

import logging
from typing import Any

from huddle.broadcast import Broadcaster
from huddle.clock import Clock, utcnow
from huddle.config import ChatConfig
from huddle.errors import (
    MESSAGE_NOT_FOUND,
    NOT_IN_ROOM,
    ROOM_FULL,
    ROOM_NOT_FOUND,
    SESSION_NOT_FOUND,
    ErrorKind,
    Result,
)
from huddle.models import ChatMessage, EventType, MessageType, UserStatus
from huddle.rooms import Room, RoomRegistry
from huddle.sessions import Connection, Session, SessionRegistry
from huddle.sweeper import TypingIndicator, TypingTracker
from huddle.users import UserRegistry

logger = logging.getLogger(__name__)

MAX_EMOJI_LENGTH = 32


def _presence(session: Session, room_id: str) -> dict[str, str]:
    return {"userId": session.user_id, "username": session.username, "roomId": room_id}


class ChatContext:
    """Owns the user, room and session registries and the typing tracker."""

    def __init__(
        self,
        config: ChatConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.config = config or ChatConfig()
        self.clock = clock
        self.users = UserRegistry(clock)
        self.rooms = RoomRegistry(self.config, clock)
        self.sessions = SessionRegistry(clock)
        self.typing = TypingTracker(self.config.typing_timeout)
        self.broadcaster = Broadcaster(
            self.sessions,
            self.users,
            self.rooms,
            clock=clock,
            send_timeout=self.config.send_timeout,
        )

    # Connections

    async def connect(
        self,
        username: str | None,
        is_guest: bool,
        connection: Connection,
    ) -> Result[Session]:
        """Create a user and session for a new connection.

        Guests that do not pick a name get a generated one. On success the
        public room list is sent to the new connection.
        """
        if not username and is_guest:
            username = self.users.generate_guest_name()

        checked = self.users.validate_username(username)
        if not checked.ok or checked.value is None:
            logger.info("Rejected connection for %r: %s", username, checked.reason)
            return Result.failed_from(checked)

        user = self.users.create_user(checked.value, is_guest)
        session = self.sessions.create_session(
            user.id, user.username, connection, is_guest
        )
        logger.info("User %s connected (guest: %s)", user.username, is_guest)

        await self.broadcaster.send(
            connection,
            self.broadcaster.envelope(EventType.ROOMS_LIST, self.rooms.summaries()),
        )
        return Result.success(session)

    async def remove_session(self, session_id: str) -> Session | None:
        """Tear down a closed connection's session.

        Leaves the current room (with its broadcasts) before the record is
        dropped. Calling it again for the same session does nothing.
        """
        session = self.sessions.get(session_id)
        if session is None:
            return None

        if session.current_room is not None:
            await self.leave_room(session_id, session.current_room)

        self.typing.drop_user(session.user_id)
        self.users.update_status(session.user_id, UserStatus.OFFLINE)
        self.sessions.remove(session_id)
        logger.info("Session %s for %s disconnected", session_id, session.username)
        return session

    # Membership

    async def join_room(self, session_id: str, room_id: str) -> Result[Room]:
        """Move a session into a room.

        Joining the current room again succeeds without side effects. Joining
        another room leaves the current one first, so the old room sees the
        departure before the new room sees the arrival.
        """
        session = self.sessions.get(session_id)
        if session is None:
            return Result.failure(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)

        room = self.rooms.get_room(room_id)
        if room is None:
            return Result.failure(ErrorKind.NOT_FOUND, ROOM_NOT_FOUND)

        if session.current_room == room_id:
            return Result.success(room)

        if room.is_full:
            return Result.failure(ErrorKind.CAPACITY, ROOM_FULL)

        if session.current_room is not None:
            await self.leave_room(session_id, session.current_room)

        added = self.rooms.add_member(room_id, session_id)
        if not added:
            return added

        self.sessions.set_current_room(session_id, room_id)
        self.sessions.touch(session_id)
        logger.info("User %s joined room %s", session.username, room_id)

        await self.broadcaster.broadcast_to_room(
            room_id,
            self.broadcaster.envelope(
                EventType.USER_JOINED, _presence(session, room_id)
            ),
        )
        await self.broadcaster.broadcast_room_membership(room_id)
        return Result.success(room)

    async def leave_room(self, session_id: str, room_id: str) -> Result[None]:
        """Take a session out of a room.

        A session that is not in the room has already left, so this succeeds
        without doing anything.
        """
        session = self.sessions.get(session_id)
        if session is None or session.current_room != room_id:
            return Result.success()

        # Notify the remaining members only.
        self.rooms.remove_member(room_id, session_id)
        self.sessions.set_current_room(session_id, None)
        logger.info("User %s left room %s", session.username, room_id)

        if self.typing.stop(session.user_id, room_id) is not None:
            await self.broadcaster.broadcast_to_room(
                room_id,
                self.broadcaster.envelope(
                    EventType.TYPING_STOP, _presence(session, room_id)
                ),
            )
        await self.broadcaster.broadcast_to_room(
            room_id,
            self.broadcaster.envelope(EventType.USER_LEFT, _presence(session, room_id)),
        )
        await self.broadcaster.broadcast_room_membership(room_id)
        return Result.success()

    # Messages

    async def send_message(
        self,
        session_id: str,
        content: str,
        reply_to: str | None = None,
    ) -> Result[ChatMessage]:
        """Append a message to the sender's current room and broadcast it."""
        session = self.sessions.get(session_id)
        if session is None:
            return Result.failure(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)

        checked = self._check_content(content)
        if not checked:
            return Result.failed_from(checked)

        room_id = session.current_room
        if room_id is None:
            return Result.failure(ErrorKind.STATE, NOT_IN_ROOM)

        if reply_to is not None:
            parent = self.rooms.get_message(reply_to)
            if parent is None or parent.room_id != room_id:
                return Result.failure(ErrorKind.NOT_FOUND, MESSAGE_NOT_FOUND)

        message = self.rooms.add_message(
            room_id, session.user_id, session.username, content, reply_to=reply_to
        )
        self.sessions.touch(session_id)

        if self.typing.stop(session.user_id, room_id) is not None:
            await self.broadcaster.broadcast_to_room(
                room_id,
                self.broadcaster.envelope(
                    EventType.TYPING_STOP, _presence(session, room_id)
                ),
            )
        await self.broadcaster.broadcast_to_room(
            room_id, self.broadcaster.envelope(EventType.MESSAGE, message)
        )
        return Result.success(message)

    def get_room_messages(
        self,
        room_id: str,
        limit: int | None = None,
        before: str | None = None,
    ) -> Result[list[ChatMessage]]:
        if self.rooms.get_room(room_id) is None:
            return Result.failure(ErrorKind.NOT_FOUND, ROOM_NOT_FOUND)
        return Result.success(self.rooms.get_messages(room_id, limit, before))

    async def send_history(
        self,
        session: Session,
        room_id: str,
        limit: int | None = None,
        before: str | None = None,
    ) -> Result[list[ChatMessage]]:
        """Send a page of a room's history to one session only."""
        page = self.get_room_messages(room_id, limit, before)
        if page.ok:
            data = {"roomId": room_id, "messages": page.value}
            await self.broadcaster.send(
                session.connection,
                self.broadcaster.envelope(EventType.ROOM_MESSAGES, data),
            )
        return page

    async def edit_message(
        self, session_id: str, message_id: str, content: str
    ) -> Result[ChatMessage]:
        session = self.sessions.get(session_id)
        if session is None:
            return Result.failure(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)

        checked = self._check_content(content)
        if not checked:
            return Result.failed_from(checked)

        edited = self.rooms.edit_message(message_id, session.user_id, content)
        if edited.ok and edited.value is not None:
            await self.broadcaster.broadcast_to_room(
                edited.value.room_id,
                self.broadcaster.envelope(EventType.MESSAGE_EDITED, edited.value),
            )
        return edited

    async def delete_message(
        self, session_id: str, message_id: str
    ) -> Result[ChatMessage]:
        """Delete a message as its author or as a moderator of its room."""
        session = self.sessions.get(session_id)
        if session is None:
            return Result.failure(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)

        message = self.rooms.get_message(message_id)
        if message is None:
            return Result.failure(ErrorKind.NOT_FOUND, MESSAGE_NOT_FOUND)

        is_moderator = self.rooms.is_moderator(message.room_id, session.user_id)
        deleted = self.rooms.delete_message(message_id, session.user_id, is_moderator)
        if deleted.ok:
            data = {"messageId": message_id, "roomId": message.room_id}
            await self.broadcaster.broadcast_to_room(
                message.room_id,
                self.broadcaster.envelope(EventType.MESSAGE_DELETED, data),
            )
        return deleted

    async def add_reaction(
        self, session_id: str, message_id: str, emoji: str
    ) -> Result[ChatMessage]:
        return await self._react(session_id, message_id, emoji, add=True)

    async def remove_reaction(
        self, session_id: str, message_id: str, emoji: str
    ) -> Result[ChatMessage]:
        return await self._react(session_id, message_id, emoji, add=False)

    async def _react(
        self, session_id: str, message_id: str, emoji: str, *, add: bool
    ) -> Result[ChatMessage]:
        session = self.sessions.get(session_id)
        if session is None:
            return Result.failure(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)

        if not emoji.strip() or len(emoji) > MAX_EMOJI_LENGTH:
            return Result.failure(ErrorKind.VALIDATION, "Invalid reaction")

        message = self.rooms.get_message(message_id)
        if message is None:
            return Result.failure(ErrorKind.NOT_FOUND, MESSAGE_NOT_FOUND)

        if session.current_room != message.room_id:
            return Result.failure(
                ErrorKind.AUTHORIZATION, "Only room members can react to messages"
            )

        if add:
            updated = self.rooms.add_reaction(message_id, session.user_id, emoji)
        else:
            updated = self.rooms.remove_reaction(message_id, session.user_id, emoji)

        if updated.ok and updated.value is not None:
            data = {
                "messageId": message_id,
                "roomId": message.room_id,
                "reactions": updated.value.reactions,
            }
            await self.broadcaster.broadcast_to_room(
                message.room_id,
                self.broadcaster.envelope(EventType.REACTION_UPDATED, data),
            )
        return updated

    # Typing

    async def start_typing(self, session_id: str, room_id: str) -> Result[None]:
        """Record a typing signal and tell everyone else in the room."""
        session = self.sessions.get(session_id)
        if session is None:
            return Result.failure(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)

        if session.current_room != room_id:
            return Result.failure(ErrorKind.STATE, NOT_IN_ROOM)

        self.typing.start(session.id, session.user_id, room_id, self.clock())
        await self.broadcaster.broadcast_to_room(
            room_id,
            self.broadcaster.envelope(
                EventType.TYPING_START, _presence(session, room_id)
            ),
            exclude=(session.id,),
        )
        return Result.success()

    async def stop_typing(self, session_id: str, room_id: str) -> Result[None]:
        """Clear a typing signal. Stopping while idle does nothing."""
        session = self.sessions.get(session_id)
        if session is None:
            return Result.failure(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)

        if self.typing.stop(session.user_id, room_id) is not None:
            await self.broadcaster.broadcast_to_room(
                room_id,
                self.broadcaster.envelope(
                    EventType.TYPING_STOP, _presence(session, room_id)
                ),
            )
        return Result.success()

    async def sweep_typing(self) -> list[TypingIndicator]:
        """Expire idle typing indicators and announce each expiry."""
        expired = self.typing.expire(self.clock())
        for indicator in expired:
            data = {
                "userId": indicator.user_id,
                "username": self.users.username_for(indicator.user_id),
                "roomId": indicator.room_id,
            }
            await self.broadcaster.broadcast_to_room(
                indicator.room_id,
                self.broadcaster.envelope(EventType.TYPING_STOP, data),
            )
        if expired:
            logger.debug("Swept %d typing indicator(s)", len(expired))
        return expired

    # Rooms

    async def create_room(
        self,
        session_id: str,
        name: str,
        description: str = "",
        is_private: bool = False,
        max_users: int | None = None,
    ) -> Result[Room]:
        session = self.sessions.get(session_id)
        if session is None:
            return Result.failure(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)

        name = name.strip()
        if not name or len(name) > self.config.max_room_name_length:
            return Result.failure(
                ErrorKind.VALIDATION,
                f"Room name must be 1-{self.config.max_room_name_length} characters",
            )

        room = self.rooms.create_room(
            name, description, session.user_id, is_private, max_users
        )
        self.rooms.add_message(
            room.id,
            session.user_id,
            session.username,
            f"{session.username} created the room",
            type=MessageType.SYSTEM,
        )

        await self.broadcaster.send(
            session.connection,
            self.broadcaster.envelope(EventType.ROOM_CREATED, room.summary()),
        )
        await self._broadcast_rooms_list()
        return Result.success(room)

    async def delete_room(self, session_id: str, room_id: str) -> Result[Room]:
        """Delete a room, evicting its members first."""
        session = self.sessions.get(session_id)
        if session is None:
            return Result.failure(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)

        deleted = self.rooms.delete_room(room_id, session.user_id)
        if not deleted:
            return deleted

        await self.broadcaster.broadcast_to_room(
            room_id,
            self.broadcaster.envelope(EventType.ROOM_DELETED, {"roomId": room_id}),
        )
        for member in self.sessions.in_room(room_id):
            self.sessions.set_current_room(member.id, None)
        self.typing.drop_room(room_id)

        await self._broadcast_rooms_list()
        return deleted

    async def add_moderator(
        self, session_id: str, room_id: str, user_id: str
    ) -> Result[Room]:
        session = self.sessions.get(session_id)
        if session is None:
            return Result.failure(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)
        return self.rooms.add_moderator(room_id, user_id, session.user_id)

    async def remove_moderator(
        self, session_id: str, room_id: str, user_id: str
    ) -> Result[Room]:
        session = self.sessions.get(session_id)
        if session is None:
            return Result.failure(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)
        return self.rooms.remove_moderator(room_id, user_id, session.user_id)

    async def _broadcast_rooms_list(self) -> None:
        await self.broadcaster.broadcast_all(
            self.broadcaster.envelope(EventType.ROOMS_LIST, self.rooms.summaries())
        )

    def _check_content(self, content: str) -> Result[Any]:
        if not content or not content.strip():
            return Result.failure(ErrorKind.VALIDATION, "Message content is required")
        if len(content) > self.config.max_message_length:
            return Result.failure(
                ErrorKind.VALIDATION,
                f"Message must be at most {self.config.max_message_length}"
                " characters",
            )
        return Result.success()
