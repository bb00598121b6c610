"""Broadcast fan-out over open connections.

An envelope is serialized once and written to every recipient concurrently.
Each write is bounded by its own timeout. A failed or stalled write is logged
and skipped, so one broken socket never stops delivery to the rest of the
room. A fan-out in flight is shielded from outer cancellation and always
runs to the end.
"""

import logging
from collections.abc import Collection, Iterable
from typing import Any

import anyio

from huddle.clock import Clock, utcnow
from huddle.marshaling import encode, make_envelope
from huddle.models import Envelope, EventType, MemberInfo
from huddle.rooms import RoomRegistry
from huddle.sessions import Connection, Session, SessionRegistry
from huddle.users import UserRegistry

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT = 5.0


class Broadcaster:
    """Writes envelopes to connections resolved through the session registry."""

    def __init__(
        self,
        sessions: SessionRegistry,
        users: UserRegistry,
        rooms: RoomRegistry,
        clock: Clock = utcnow,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ) -> None:
        self._sessions = sessions
        self._users = users
        self._rooms = rooms
        self._clock = clock
        self._send_timeout = send_timeout

    def envelope(self, event_type: EventType, data: Any = None) -> Envelope:
        """Build an envelope stamped with the current time."""
        return make_envelope(event_type, data, self._clock())

    async def send(self, connection: Connection, envelope: Envelope) -> bool:
        """Write an envelope to a single connection."""
        return await self._write(connection, encode(envelope), "direct")

    async def broadcast_to_room(
        self,
        room_id: str,
        envelope: Envelope,
        exclude: Collection[str] = (),
    ) -> int:
        """Deliver an envelope to every session currently in ``room_id``.

        Args:
            room_id: Room whose current members receive the envelope.
            envelope: Envelope to deliver.
            exclude: Session ids to skip, e.g. the sender of a typing event.

        Returns:
            Number of connections the envelope was written to.
        """
        recipients = [
            s for s in self._sessions.in_room(room_id) if s.id not in exclude
        ]
        return await self._fan_out(recipients, encode(envelope))

    async def broadcast_all(self, envelope: Envelope) -> int:
        """Deliver an envelope to every open session."""
        return await self._fan_out(self._sessions.all(), encode(envelope))

    def room_members(self, room_id: str) -> list[MemberInfo]:
        room = self._rooms.get_room(room_id)
        if room is None:
            return []

        members: list[MemberInfo] = []
        for session_id in room.members:
            session = self._sessions.get(session_id)
            if session is None:
                continue
            user = self._users.get_user(session.user_id)
            members.append(
                MemberInfo(
                    id=session.user_id,
                    username=user.username if user else session.username,
                    is_guest=user.is_guest if user else session.is_guest,
                )
            )
        members.sort(key=lambda m: m.username.lower())
        return members

    async def broadcast_room_membership(self, room_id: str) -> int:
        """Send the room's current member list to the room."""
        data = {"roomId": room_id, "users": self.room_members(room_id)}
        return await self.broadcast_to_room(
            room_id, self.envelope(EventType.ROOM_USERS, data)
        )

    async def _fan_out(self, sessions: Iterable[Session], text: str) -> int:
        delivered = 0

        async def deliver(session: Session) -> None:
            nonlocal delivered
            if await self._write(session.connection, text, session.id):
                delivered += 1

        with anyio.CancelScope(shield=True):
            async with anyio.create_task_group() as tg:
                for session in sessions:
                    tg.start_soon(deliver, session)
        return delivered

    async def _write(self, connection: Connection, text: str, target: str) -> bool:
        try:
            with anyio.fail_after(self._send_timeout):
                await connection.send_text(text)
        except Exception:
            logger.warning("Failed to deliver frame to %s", target, exc_info=True)
            return False
        return True
