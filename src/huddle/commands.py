"""Chat commands - inbound client requests and internal queue events."""

from pydantic import Field

from huddle.models import WireModel


# Client commands
class JoinRoom(WireModel):
    """Join a room, implicitly leaving the current one."""

    room_id: str


class LeaveRoom(WireModel):
    """Leave a room. Without a room id, leave the current room."""

    room_id: str | None = None


class SendMessage(WireModel):
    """Send a message to the current room."""

    content: str
    reply_to: str | None = None


class StartTyping(WireModel):
    room_id: str


class StopTyping(WireModel):
    room_id: str


class EditMessage(WireModel):
    message_id: str
    content: str


class DeleteMessage(WireModel):
    message_id: str


class AddReaction(WireModel):
    message_id: str
    emoji: str


class RemoveReaction(WireModel):
    message_id: str
    emoji: str


class CreateRoom(WireModel):
    name: str
    description: str = ""
    is_private: bool = False
    max_users: int | None = Field(default=None, ge=1)


class DeleteRoom(WireModel):
    room_id: str


class AddModerator(WireModel):
    room_id: str
    user_id: str


class RemoveModerator(WireModel):
    room_id: str
    user_id: str


class GetMessages(WireModel):
    """Fetch a page of a room's history."""

    room_id: str
    limit: int | None = Field(default=None, ge=1)
    before: str | None = None


# Internal commands
class Connect(WireModel):
    """A connection opened with a client-supplied name."""

    username: str | None = None
    is_guest: bool = False


class Disconnect(WireModel):
    """The connection closed."""


class SweepTyping(WireModel):
    """Periodic tick that expires idle typing indicators."""


class InvalidFrame(WireModel):
    """A frame from the connection could not be decoded."""

    reason: str


INBOUND_COMMANDS: dict[str, type[WireModel]] = {
    "join_room": JoinRoom,
    "leave_room": LeaveRoom,
    "send_message": SendMessage,
    "start_typing": StartTyping,
    "stop_typing": StopTyping,
    "edit_message": EditMessage,
    "delete_message": DeleteMessage,
    "add_reaction": AddReaction,
    "remove_reaction": RemoveReaction,
    "create_room": CreateRoom,
    "delete_room": DeleteRoom,
    "add_moderator": AddModerator,
    "remove_moderator": RemoveModerator,
    "get_messages": GetMessages,
}
