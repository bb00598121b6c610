"""Configuration dataclasses for the chat server."""

from dataclasses import dataclass, field

SYSTEM_USER_ID = "system"


@dataclass(frozen=True)
class DefaultRoom:
    """A room seeded at startup. Default rooms cannot be deleted."""

    id: str
    name: str
    description: str


DEFAULT_ROOMS = (
    DefaultRoom("general", "General", "General discussion for everyone"),
    DefaultRoom("random", "Random", "Random conversations and fun topics"),
    DefaultRoom("tech", "Tech Talk", "Technology and programming discussions"),
    DefaultRoom("gaming", "Gaming", "Video games and gaming discussion"),
)


@dataclass
class ChatConfig:
    """Configuration for the chat context, dispatcher and sweeper."""

    history_limit: int = 1000
    """Messages kept per room. The oldest are dropped once this is exceeded."""

    default_page_size: int = 50
    """History page size when a client does not ask for one."""

    max_page_size: int = 100
    """Upper bound on a single history page."""

    edit_window: float = 300.0
    """Seconds after sending during which the author may edit a message."""

    typing_timeout: float = 5.0
    """Seconds of silence after which a typing indicator is swept."""

    sweep_interval: float = 1.0
    """Seconds between typing-indicator sweeps."""

    send_timeout: float = 5.0
    """Seconds a single connection write may take before it is abandoned."""

    max_message_length: int = 2000
    """Maximum characters in a chat message."""

    max_room_name_length: int = 50
    """Maximum characters in a room name."""

    dispatch_buffer: int = 100
    """Commands that may wait on the dispatch queue before senders block."""

    handler_timeout: float | None = None
    """Seconds a single command may take before it is failed. ``None`` disables
    the limit. Broadcasts already in flight always finish."""

    default_rooms: tuple[DefaultRoom, ...] = field(default=DEFAULT_ROOMS)
    """Rooms created at startup."""
