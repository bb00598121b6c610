"""Chat wire models - messages, room listings and envelopes."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for models that cross the wire with camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserStatus(StrEnum):
    ONLINE = "online"
    AWAY = "away"
    OFFLINE = "offline"


class MessageType(StrEnum):
    TEXT = "text"
    SYSTEM = "system"


class EventType(StrEnum):
    """Outbound envelope types."""

    ROOMS_LIST = "rooms_list"
    ROOM_MESSAGES = "room_messages"
    MESSAGE = "message"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    ROOM_USERS = "room_users"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    MESSAGE_EDITED = "message_edited"
    MESSAGE_DELETED = "message_deleted"
    REACTION_UPDATED = "reaction_updated"
    ROOM_CREATED = "room_created"
    ROOM_DELETED = "room_deleted"
    ERROR = "error"


class ChatMessage(WireModel):
    """A message in a room's history."""

    id: str
    room_id: str
    user_id: str
    username: str
    content: str
    type: MessageType = MessageType.TEXT
    timestamp: datetime
    reply_to: str | None = None
    reactions: dict[str, list[str]] = Field(default_factory=dict)
    edited_at: datetime | None = None


class MemberInfo(WireModel):
    """One entry of a room's member list."""

    id: str
    username: str
    is_guest: bool


class RoomSummary(WireModel):
    """Room as shown in room listings."""

    id: str
    name: str
    description: str
    user_count: int
    is_private: bool


class RoomStats(WireModel):
    total_messages: int
    today_messages: int
    active_users: int


class Envelope(WireModel):
    """Outbound frame: ``{type, data, timestamp}``."""

    type: EventType
    data: Any = None
    timestamp: datetime
