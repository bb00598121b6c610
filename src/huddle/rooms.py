"""Room registry - rooms, membership, moderation and message history.

The registry only mutates state. Broadcasting the consequences of a change is
the job of :class:`huddle.chat.ChatContext`.
"""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from huddle.clock import Clock, utcnow
from huddle.config import SYSTEM_USER_ID, ChatConfig
from huddle.errors import (
    DEFAULT_ROOM_PROTECTED,
    MESSAGE_NOT_FOUND,
    ROOM_FULL,
    ROOM_NOT_FOUND,
    WINDOW_EXPIRED,
    WRONG_MESSAGE_TYPE,
    ErrorKind,
    Result,
)
from huddle.models import ChatMessage, MessageType, RoomStats, RoomSummary

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 20


@dataclass
class Room:
    """State of a chat room."""

    id: str
    name: str
    description: str
    created_by: str
    created_at: datetime
    is_private: bool = False
    is_default: bool = False
    max_users: int | None = None
    members: set[str] = field(default_factory=set)  # session ids
    moderators: set[str] = field(default_factory=set)  # user ids
    history: deque[ChatMessage] = field(default_factory=deque)

    @property
    def is_full(self) -> bool:
        return self.max_users is not None and len(self.members) >= self.max_users

    def can_moderate(self, user_id: str) -> bool:
        return user_id in self.moderators or user_id == self.created_by

    def summary(self) -> RoomSummary:
        return RoomSummary(
            id=self.id,
            name=self.name,
            description=self.description,
            user_count=len(self.members),
            is_private=self.is_private,
        )


class RoomRegistry:
    """In-memory store for rooms and their bounded message histories."""

    def __init__(
        self, config: ChatConfig | None = None, clock: Clock = utcnow
    ) -> None:
        self._config = config or ChatConfig()
        self._clock = clock
        self._rooms: dict[str, Room] = {}
        self._messages: dict[str, ChatMessage] = {}
        self._seed_default_rooms()

    def _seed_default_rooms(self) -> None:
        for default in self._config.default_rooms:
            room = self.create_room(
                default.name,
                default.description,
                SYSTEM_USER_ID,
                room_id=default.id,
            )
            room.is_default = True

    # Rooms

    def create_room(
        self,
        name: str,
        description: str,
        created_by: str,
        is_private: bool = False,
        max_users: int | None = None,
        room_id: str | None = None,
    ) -> Room:
        """Create a room with its creator as the sole moderator."""
        room = Room(
            id=room_id or uuid.uuid4().hex,
            name=name,
            description=description,
            created_by=created_by,
            created_at=self._clock(),
            is_private=is_private,
            max_users=max_users,
            moderators={created_by},
        )
        self._rooms[room.id] = room
        logger.info("Created room %s (%s)", room.name, room.id)
        return room

    def get_room(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id)

    def all_rooms(self) -> list[Room]:
        return list(self._rooms.values())

    def public_rooms(self) -> list[Room]:
        return [room for room in self._rooms.values() if not room.is_private]

    def rooms_for_session(self, session_id: str) -> list[Room]:
        return [room for room in self._rooms.values() if session_id in room.members]

    def summaries(self, include_private: bool = False) -> list[RoomSummary]:
        rooms = self.all_rooms() if include_private else self.public_rooms()
        return [room.summary() for room in rooms]

    def delete_room(self, room_id: str, requester_id: str) -> Result[Room]:
        """Remove a room and its history.

        Default rooms are protected no matter who asks.
        """
        room = self._rooms.get(room_id)
        if room is None:
            return Result.failure(ErrorKind.NOT_FOUND, ROOM_NOT_FOUND)

        if room.is_default:
            return Result.failure(ErrorKind.AUTHORIZATION, DEFAULT_ROOM_PROTECTED)

        if not room.can_moderate(requester_id):
            return Result.failure(
                ErrorKind.AUTHORIZATION, "Only moderators can delete the room"
            )

        del self._rooms[room_id]
        for message in room.history:
            self._messages.pop(message.id, None)
        logger.info("Deleted room %s (%s)", room.name, room.id)
        return Result.success(room)

    # Membership

    def add_member(self, room_id: str, session_id: str) -> Result[Room]:
        room = self._rooms.get(room_id)
        if room is None:
            return Result.failure(ErrorKind.NOT_FOUND, ROOM_NOT_FOUND)

        if session_id in room.members:
            return Result.success(room)

        if room.is_full:
            return Result.failure(ErrorKind.CAPACITY, ROOM_FULL)

        room.members.add(session_id)
        return Result.success(room)

    def remove_member(self, room_id: str, session_id: str) -> None:
        room = self._rooms.get(room_id)
        if room is not None:
            room.members.discard(session_id)

    # Moderation

    def is_moderator(self, room_id: str, user_id: str) -> bool:
        room = self._rooms.get(room_id)
        return room.can_moderate(user_id) if room else False

    def add_moderator(
        self, room_id: str, user_id: str, requester_id: str
    ) -> Result[Room]:
        room = self._rooms.get(room_id)
        if room is None:
            return Result.failure(ErrorKind.NOT_FOUND, ROOM_NOT_FOUND)

        if not room.can_moderate(requester_id):
            return Result.failure(
                ErrorKind.AUTHORIZATION, "Only moderators can add moderators"
            )

        room.moderators.add(user_id)
        return Result.success(room)

    def remove_moderator(
        self, room_id: str, user_id: str, requester_id: str
    ) -> Result[Room]:
        room = self._rooms.get(room_id)
        if room is None:
            return Result.failure(ErrorKind.NOT_FOUND, ROOM_NOT_FOUND)

        if not room.can_moderate(requester_id):
            return Result.failure(
                ErrorKind.AUTHORIZATION, "Only moderators can remove moderators"
            )

        if user_id == room.created_by:
            return Result.failure(
                ErrorKind.AUTHORIZATION, "Cannot remove room creator as moderator"
            )

        room.moderators.discard(user_id)
        return Result.success(room)

    # Messages

    def add_message(
        self,
        room_id: str,
        user_id: str,
        username: str,
        content: str,
        type: MessageType = MessageType.TEXT,
        reply_to: str | None = None,
    ) -> ChatMessage:
        """Append a message, dropping the oldest beyond the history limit.

        Raises:
            KeyError: The room does not exist.
        """
        room = self._rooms[room_id]
        message = ChatMessage(
            id=uuid.uuid4().hex,
            room_id=room_id,
            user_id=user_id,
            username=username,
            content=content,
            type=type,
            timestamp=self._clock(),
            reply_to=reply_to,
        )
        room.history.append(message)
        self._messages[message.id] = message

        while len(room.history) > self._config.history_limit:
            evicted = room.history.popleft()
            self._messages.pop(evicted.id, None)

        return message.model_copy(deep=True)

    def get_messages(
        self,
        room_id: str,
        limit: int | None = None,
        before: str | None = None,
    ) -> list[ChatMessage]:
        """Latest messages of a room, oldest first.

        With ``before``, only messages older than that message are returned.
        An unknown ``before`` id is ignored.
        """
        room = self._rooms.get(room_id)
        if room is None:
            return []

        page_size = min(
            limit or self._config.default_page_size, self._config.max_page_size
        )
        messages = list(room.history)

        if before is not None:
            for index, message in enumerate(messages):
                if message.id == before:
                    messages = messages[:index]
                    break

        return [m.model_copy(deep=True) for m in messages[-page_size:]]

    def get_message(self, message_id: str) -> ChatMessage | None:
        message = self._messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    def edit_message(
        self, message_id: str, user_id: str, content: str
    ) -> Result[ChatMessage]:
        message = self._messages.get(message_id)
        if message is None:
            return Result.failure(ErrorKind.NOT_FOUND, MESSAGE_NOT_FOUND)

        if message.user_id != user_id:
            return Result.failure(
                ErrorKind.AUTHORIZATION, "Can only edit your own messages"
            )

        if message.type is not MessageType.TEXT:
            return Result.failure(ErrorKind.STATE, WRONG_MESSAGE_TYPE)

        now = self._clock()
        if now - message.timestamp > timedelta(seconds=self._config.edit_window):
            return Result.failure(ErrorKind.STATE, WINDOW_EXPIRED)

        message.content = content
        message.edited_at = now
        return Result.success(message.model_copy(deep=True))

    def add_reaction(
        self, message_id: str, user_id: str, emoji: str
    ) -> Result[ChatMessage]:
        message = self._messages.get(message_id)
        if message is None:
            return Result.failure(ErrorKind.NOT_FOUND, MESSAGE_NOT_FOUND)

        users = message.reactions.setdefault(emoji, [])
        if user_id not in users:
            users.append(user_id)
        return Result.success(message.model_copy(deep=True))

    def remove_reaction(
        self, message_id: str, user_id: str, emoji: str
    ) -> Result[ChatMessage]:
        message = self._messages.get(message_id)
        if message is None:
            return Result.failure(ErrorKind.NOT_FOUND, MESSAGE_NOT_FOUND)

        users = message.reactions.get(emoji)
        if users and user_id in users:
            users.remove(user_id)
            if not users:
                del message.reactions[emoji]
        return Result.success(message.model_copy(deep=True))

    def delete_message(
        self, message_id: str, user_id: str, is_moderator: bool = False
    ) -> Result[ChatMessage]:
        message = self._messages.get(message_id)
        if message is None:
            return Result.failure(ErrorKind.NOT_FOUND, MESSAGE_NOT_FOUND)

        if not is_moderator and message.user_id != user_id:
            return Result.failure(
                ErrorKind.AUTHORIZATION, "Can only delete your own messages"
            )

        room = self._rooms.get(message.room_id)
        if room is not None:
            room.history.remove(message)
        del self._messages[message_id]
        return Result.success(message)

    def search_messages(
        self, room_id: str, query: str, limit: int = DEFAULT_SEARCH_LIMIT
    ) -> list[ChatMessage]:
        """Case-insensitive substring search over a room's text messages."""
        room = self._rooms.get(room_id)
        if room is None:
            return []

        needle = query.lower()
        matches = [
            m
            for m in room.history
            if m.type is MessageType.TEXT and needle in m.content.lower()
        ]
        return [m.model_copy(deep=True) for m in matches[-limit:]]

    def message_stats(self, room_id: str) -> RoomStats:
        room = self._rooms.get(room_id)
        history = list(room.history) if room else []
        today = self._clock().date()
        return RoomStats(
            total_messages=len(history),
            today_messages=sum(1 for m in history if m.timestamp.date() == today),
            active_users=len({m.user_id for m in history}),
        )
