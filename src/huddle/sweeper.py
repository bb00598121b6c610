"""Typing indicators and the periodic sweep that expires them.

Each (user, room) pair is either idle or typing. A start signal records or
refreshes the indicator; a stop signal or a sweep after ``timeout`` seconds of
silence returns it to idle.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import anyio

from huddle.commands import SweepTyping

if TYPE_CHECKING:
    from huddle.dispatch import Dispatcher

logger = logging.getLogger(__name__)


@dataclass
class TypingIndicator:
    user_id: str
    room_id: str
    session_id: str
    started_at: datetime


class TypingTracker:
    """Typing indicators keyed by (user id, room id)."""

    def __init__(self, timeout: float) -> None:
        self._timeout = timedelta(seconds=timeout)
        self._indicators: dict[tuple[str, str], TypingIndicator] = {}

    def __len__(self) -> int:
        return len(self._indicators)

    def is_typing(self, user_id: str, room_id: str) -> bool:
        return (user_id, room_id) in self._indicators

    def start(
        self, session_id: str, user_id: str, room_id: str, now: datetime
    ) -> TypingIndicator:
        indicator = TypingIndicator(
            user_id=user_id,
            room_id=room_id,
            session_id=session_id,
            started_at=now,
        )
        self._indicators[(user_id, room_id)] = indicator
        return indicator

    def stop(self, user_id: str, room_id: str) -> TypingIndicator | None:
        return self._indicators.pop((user_id, room_id), None)

    def drop_room(self, room_id: str) -> list[TypingIndicator]:
        return self._drop(lambda i: i.room_id == room_id)

    def drop_user(self, user_id: str) -> list[TypingIndicator]:
        return self._drop(lambda i: i.user_id == user_id)

    def expire(self, now: datetime) -> list[TypingIndicator]:
        """Remove and return indicators idle for longer than the timeout."""
        return self._drop(lambda i: now - i.started_at > self._timeout)

    def _drop(
        self, predicate: Callable[[TypingIndicator], bool]
    ) -> list[TypingIndicator]:
        dropped = [i for i in self._indicators.values() if predicate(i)]
        for indicator in dropped:
            del self._indicators[(indicator.user_id, indicator.room_id)]
        return dropped


class TypingSweeper:
    """Enqueues a :class:`SweepTyping` tick on the dispatcher every interval.

    The sweep itself runs as an ordinary command, so it never interleaves with
    connection events.
    """

    def __init__(self, dispatcher: "Dispatcher", interval: float) -> None:
        self._dispatcher = dispatcher
        self._interval = interval
        self._running = False
        self._cancel_scope: anyio.CancelScope | None = None

    async def run(self) -> None:
        """Tick until closed or until the dispatcher stops accepting work."""
        if self._running:
            msg = "TypingSweeper is already running"
            raise RuntimeError(msg)

        self._running = True
        try:
            with anyio.CancelScope() as scope:
                self._cancel_scope = scope
                while not self._dispatcher.closed:
                    await anyio.sleep(self._interval)
                    if self._dispatcher.closed:
                        break
                    await self._dispatcher.submit(SweepTyping())
        finally:
            self._running = False
            self._cancel_scope = None
            logger.debug("Typing sweeper stopped")

    async def close(self) -> None:
        """Stop the sweeper."""
        if self._cancel_scope:
            self._cancel_scope.cancel()
