"""Shared fixtures for huddle tests."""

import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from huddle.chat import ChatContext
from huddle.config import ChatConfig
from huddle.sessions import Session

START = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingConnection:
    """Connection that keeps every frame written to it, decoded."""

    def __init__(self) -> None:
        self.frames: list[dict[str, Any]] = []

    async def send_text(self, data: str) -> None:
        self.frames.append(json.loads(data))

    def types(self) -> list[str]:
        return [frame["type"] for frame in self.frames]

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [frame for frame in self.frames if frame["type"] == event_type]

    def clear(self) -> None:
        self.frames.clear()


class BrokenConnection:
    """Connection whose every write fails."""

    def __init__(self) -> None:
        self.attempts = 0

    async def send_text(self, data: str) -> None:
        self.attempts += 1
        msg = "connection reset"
        raise ConnectionError(msg)


Connector = Callable[..., Awaitable[tuple[Session, RecordingConnection]]]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> ChatConfig:
    return ChatConfig()


@pytest.fixture
def ctx(config: ChatConfig, clock: FakeClock) -> ChatContext:
    return ChatContext(config, clock)


@pytest.fixture
def connect(ctx: ChatContext) -> Connector:
    """Open a session for a recording connection, optionally joining a room."""

    async def _connect(
        username: str, room_id: str | None = None
    ) -> tuple[Session, RecordingConnection]:
        connection = RecordingConnection()
        result = await ctx.connect(username, False, connection)
        assert result.ok, result.reason
        assert result.value is not None
        session = result.value
        if room_id is not None:
            joined = await ctx.join_room(session.id, room_id)
            assert joined.ok, joined.reason
        connection.clear()
        return session, connection

    return _connect
