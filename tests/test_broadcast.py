"""Tests for broadcast fan-out."""

import anyio
import pytest

from huddle.chat import ChatContext
from huddle.config import ChatConfig
from huddle.models import EventType

from conftest import BrokenConnection, Connector, FakeClock, RecordingConnection

pytestmark = pytest.mark.anyio

SEND_TIMEOUT = 0.05
RECIPIENTS_EXCEPT_SENDER = 2
GENERAL_MEMBERS = 2
STALLED_COUNT = 3


class StalledConnection:
    """Connection whose writes never complete."""

    async def send_text(self, data: str) -> None:
        await anyio.sleep_forever()


class SlowConnection(RecordingConnection):
    """Connection whose writes finish after a short delay."""

    async def send_text(self, data: str) -> None:
        await anyio.sleep(SEND_TIMEOUT / 2)
        await super().send_text(data)


class TestBroadcastToRoom:
    async def test_delivers_to_room_members_only(
        self, ctx: ChatContext, connect: Connector
    ) -> None:
        _, alice = await connect("alice", "general")
        _, bob = await connect("bob", "general")
        _, carol = await connect("carol", "random")

        envelope = ctx.broadcaster.envelope(EventType.MESSAGE, {"content": "hi"})
        delivered = await ctx.broadcaster.broadcast_to_room("general", envelope)

        assert delivered == GENERAL_MEMBERS
        assert alice.types() == ["message"]
        assert bob.types() == ["message"]
        assert carol.frames == []

    async def test_exclude_skips_sessions(
        self, ctx: ChatContext, connect: Connector
    ) -> None:
        alice_session, alice = await connect("alice", "general")
        _, bob = await connect("bob", "general")
        _, carol = await connect("carol", "general")

        delivered = await ctx.broadcaster.broadcast_to_room(
            "general",
            ctx.broadcaster.envelope(EventType.TYPING_START),
            exclude=(alice_session.id,),
        )

        assert delivered == RECIPIENTS_EXCEPT_SENDER
        assert alice.frames == []
        assert bob.types() == ["typing_start"]
        assert carol.types() == ["typing_start"]

    async def test_failed_connection_does_not_block_others(
        self, ctx: ChatContext, connect: Connector
    ) -> None:
        broken = BrokenConnection()
        result = await ctx.connect("mallory", False, broken)
        assert result.value is not None
        await ctx.join_room(result.value.id, "general")
        _, alice = await connect("alice", "general")

        delivered = await ctx.broadcaster.broadcast_to_room(
            "general", ctx.broadcaster.envelope(EventType.MESSAGE, {})
        )

        assert delivered == 1
        assert broken.attempts > 0
        assert alice.types() == ["message"]

    async def test_stalled_connection_times_out(self, clock: FakeClock) -> None:
        ctx = ChatContext(ChatConfig(send_timeout=SEND_TIMEOUT), clock)
        stalled = await ctx.connect("slow", False, StalledConnection())
        assert stalled.value is not None
        await ctx.join_room(stalled.value.id, "general")
        healthy = RecordingConnection()
        alice = await ctx.connect("alice", False, healthy)
        assert alice.value is not None
        await ctx.join_room(alice.value.id, "general")
        healthy.clear()

        with anyio.fail_after(1):
            delivered = await ctx.broadcaster.broadcast_to_room(
                "general", ctx.broadcaster.envelope(EventType.MESSAGE, {})
            )

        assert delivered == 1
        assert healthy.types() == ["message"]

    async def test_stalled_writes_run_concurrently(self, clock: FakeClock) -> None:
        ctx = ChatContext(ChatConfig(send_timeout=SEND_TIMEOUT), clock)
        for n in range(STALLED_COUNT):
            stalled = await ctx.connect(f"slow{n}", False, StalledConnection())
            assert stalled.value is not None
            await ctx.join_room(stalled.value.id, "general")
        healthy = RecordingConnection()
        alice = await ctx.connect("alice", False, healthy)
        assert alice.value is not None
        await ctx.join_room(alice.value.id, "general")
        healthy.clear()

        with anyio.fail_after(SEND_TIMEOUT * 2):
            delivered = await ctx.broadcaster.broadcast_to_room(
                "general", ctx.broadcaster.envelope(EventType.MESSAGE, {})
            )

        assert delivered == 1
        assert healthy.types() == ["message"]

    async def test_outer_cancel_does_not_cut_delivery(
        self, ctx: ChatContext
    ) -> None:
        slow = SlowConnection()
        session = await ctx.connect("alice", False, slow)
        assert session.value is not None
        await ctx.join_room(session.value.id, "general")
        slow.clear()

        with anyio.move_on_after(SEND_TIMEOUT / 4):
            await ctx.broadcaster.broadcast_to_room(
                "general", ctx.broadcaster.envelope(EventType.MESSAGE, {})
            )

        assert slow.types() == ["message"]


class TestEnvelopes:
    async def test_envelope_shape(
        self, ctx: ChatContext, connect: Connector, clock: FakeClock
    ) -> None:
        session, connection = await connect("alice")

        await ctx.broadcaster.send(
            session.connection,
            ctx.broadcaster.envelope(EventType.ROOM_DELETED, {"roomId": "x"}),
        )

        [frame] = connection.frames
        assert frame["type"] == "room_deleted"
        assert frame["data"] == {"roomId": "x"}
        assert frame["timestamp"].startswith(clock.now.strftime("%Y-%m-%dT%H:%M:%S"))

    async def test_broadcast_all_reaches_every_session(
        self, ctx: ChatContext, connect: Connector
    ) -> None:
        _, alice = await connect("alice", "general")
        _, bob = await connect("bob")

        await ctx.broadcaster.broadcast_all(
            ctx.broadcaster.envelope(EventType.ROOMS_LIST, [])
        )

        assert alice.types() == ["rooms_list"]
        assert bob.types() == ["rooms_list"]

    async def test_room_members_sorted_by_name(
        self, ctx: ChatContext, connect: Connector
    ) -> None:
        await connect("zoe", "general")
        await connect("Adam", "general")

        members = ctx.broadcaster.room_members("general")

        assert [m.username for m in members] == ["Adam", "zoe"]
        assert members[0].model_dump(by_alias=True)["isGuest"] is False
