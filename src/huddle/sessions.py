"""Session registry - binds live connections to user identities."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable

from huddle.clock import Clock, utcnow

logger = logging.getLogger(__name__)


@runtime_checkable
class Connection(Protocol):
    """A live connection that accepts text frames.

    Starlette's ``WebSocket`` satisfies this protocol.
    """

    async def send_text(self, data: str) -> None:
        """Write one text frame."""
        ...


@dataclass(eq=False)
class Session:
    """The binding between one connection and one user for its lifetime."""

    id: str
    user_id: str
    username: str
    connection: Connection
    created_at: datetime
    last_activity: datetime
    is_guest: bool = False
    current_room: str | None = None


class SessionRegistry:
    """Sessions keyed by id, with a reverse index keyed by connection.

    Connections are indexed by identity; Starlette websockets are not hashable.

    The registry is the only writer of a session's current room.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._by_connection: dict[int, str] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create_session(
        self,
        user_id: str,
        username: str,
        connection: Connection,
        is_guest: bool = False,
    ) -> Session:
        if id(connection) in self._by_connection:
            msg = "Connection already has a session"
            raise ValueError(msg)

        now = self._clock()
        session = Session(
            id=uuid.uuid4().hex,
            user_id=user_id,
            username=username,
            connection=connection,
            created_at=now,
            last_activity=now,
            is_guest=is_guest,
        )
        self._sessions[session.id] = session
        self._by_connection[id(connection)] = session.id
        logger.debug("Opened session %s for %s", session.id, username)
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def find_by_connection(self, connection: Connection) -> Session | None:
        session_id = self._by_connection.get(id(connection))
        return self._sessions.get(session_id) if session_id else None

    def all(self) -> list[Session]:
        return list(self._sessions.values())

    def in_room(self, room_id: str) -> list[Session]:
        """Sessions whose current room is ``room_id``."""
        return [s for s in self._sessions.values() if s.current_room == room_id]

    def set_current_room(self, session_id: str, room_id: str | None) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.current_room = room_id

    def touch(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_activity = self._clock()

    def remove(self, session_id: str) -> Session | None:
        """Drop a session from both indexes. Unknown ids are ignored."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        self._by_connection.pop(id(session.connection), None)
        logger.debug("Closed session %s", session_id)
        return session
