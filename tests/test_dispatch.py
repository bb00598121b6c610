"""Tests for the command dispatcher and its middlewares."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

import anyio
import pytest
from pydantic import BaseModel

from huddle.app import default_middlewares
from huddle.chat import ChatContext
from huddle.commands import Connect, InvalidFrame, JoinRoom, SendMessage
from huddle.config import ChatConfig
from huddle.depends import Depends
from huddle.dispatch import Dispatch, Dispatcher, HandlerFunc, HandlerRegistry
from huddle.errors import ErrorKind, Result
from huddle.handlers import handlers
from huddle.middleware import recoverer, timeout
from huddle.sessions import Connection

from conftest import FakeClock, RecordingConnection

pytestmark = pytest.mark.anyio

TIMEOUT_SECONDS = 2
HANDLER_TIMEOUT = 0.05
COMMAND_COUNT = 5
DOUBLED = 42
SEND_TIMEOUT = 0.1
DEFAULT_MIDDLEWARE_COUNT = 2


class Ping(BaseModel):
    n: int = 0


class Crash(BaseModel):
    pass


class StalledConnection:
    async def send_text(self, data: str) -> None:
        await anyio.sleep_forever()


@asynccontextmanager
async def running(dispatcher: Dispatcher) -> AsyncIterator[Dispatcher]:
    with anyio.fail_after(TIMEOUT_SECONDS):
        async with anyio.create_task_group() as tg:
            tg.start_soon(dispatcher.run)
            yield dispatcher
            await dispatcher.close()


class TestHandlerRegistry:
    def test_infers_command_type(self) -> None:
        registry = HandlerRegistry()

        @registry.handler
        async def on_ping(cmd: Ping) -> Result[None]:
            return Result.success()

        assert Ping in registry
        assert registry.get(Ping) is on_ping

    def test_untyped_first_parameter(self) -> None:
        registry = HandlerRegistry()

        async def on_ping(cmd) -> Result[None]:  # type: ignore[no-untyped-def]
            return Result.success()

        with pytest.raises(TypeError, match="must be typed"):
            registry.handler(on_ping)

    def test_no_parameters(self) -> None:
        registry = HandlerRegistry()

        async def on_nothing() -> Result[None]:
            return Result.success()

        with pytest.raises(TypeError, match="at least one parameter"):
            registry.handler(on_nothing)

    def test_one_handler_per_command(self) -> None:
        registry = HandlerRegistry()

        @registry.handler
        async def first(cmd: Ping) -> Result[None]:
            return Result.success()

        async def second(cmd: Ping) -> Result[None]:
            return Result.success()

        with pytest.raises(ValueError, match="already registered"):
            registry.handler(second)


class TestDispatcher:
    async def test_dispatch_returns_handler_result(self, ctx: ChatContext) -> None:
        registry = HandlerRegistry()

        @registry.handler
        async def on_ping(cmd: Ping) -> Result[int]:
            return Result.success(cmd.n * 2)

        async with running(Dispatcher(ctx, registry)) as dispatcher:
            result = await dispatcher.dispatch(Ping(n=21))

        assert result.value == DOUBLED

    async def test_injects_context_and_connection(self, ctx: ChatContext) -> None:
        registry = HandlerRegistry()
        seen: dict[str, Any] = {}

        def connection_label(connection: Connection | None) -> str:
            return "attached" if connection is not None else "none"

        @registry.handler
        async def on_ping(
            cmd: Ping,
            ctx: ChatContext,
            connection: Connection | None,
            label: Annotated[str, Depends(connection_label)],
        ) -> Result[None]:
            seen.update(ctx=ctx, connection=connection, label=label)
            return Result.success()

        connection = RecordingConnection()
        async with running(Dispatcher(ctx, registry)) as dispatcher:
            await dispatcher.dispatch(Ping(), connection)

        assert seen == {"ctx": ctx, "connection": connection, "label": "attached"}

    async def test_commands_run_in_order(self, ctx: ChatContext) -> None:
        registry = HandlerRegistry()
        handled: list[int] = []

        @registry.handler
        async def on_ping(cmd: Ping) -> Result[None]:
            await anyio.sleep(0)
            handled.append(cmd.n)
            return Result.success()

        async with running(Dispatcher(ctx, registry)) as dispatcher:
            for n in range(COMMAND_COUNT):
                await dispatcher.submit(Ping(n=n))
            await dispatcher.dispatch(Ping(n=COMMAND_COUNT))

        assert handled == list(range(COMMAND_COUNT + 1))

    async def test_failure_is_reported_to_sender(self, ctx: ChatContext) -> None:
        registry = HandlerRegistry()

        @registry.handler
        async def on_ping(cmd: Ping) -> Result[None]:
            return Result.failure(ErrorKind.STATE, "not now")

        connection = RecordingConnection()
        async with running(Dispatcher(ctx, registry)) as dispatcher:
            result = await dispatcher.dispatch(Ping(), connection)

        assert result.error is ErrorKind.STATE
        [frame] = connection.frames
        assert frame["type"] == "error"
        assert frame["data"] == {
            "code": "state",
            "reason": "not now",
            "command": "Ping",
        }

    async def test_invalid_frame_error_has_no_command(self, ctx: ChatContext) -> None:
        connection = RecordingConnection()
        async with running(Dispatcher(ctx, handlers)) as dispatcher:
            await dispatcher.dispatch(InvalidFrame(reason="bad frame"), connection)

        [frame] = connection.frames
        assert frame["data"] == {
            "code": "validation",
            "reason": "bad frame",
            "command": None,
        }

    async def test_unhandled_crash_keeps_loop_alive(self, ctx: ChatContext) -> None:
        registry = HandlerRegistry()

        @registry.handler
        async def on_crash(cmd: Crash) -> Result[None]:
            msg = "boom"
            raise RuntimeError(msg)

        @registry.handler
        async def on_ping(cmd: Ping) -> Result[int]:
            return Result.success(cmd.n)

        async with running(Dispatcher(ctx, registry)) as dispatcher:
            crashed = await dispatcher.dispatch(Crash())
            after = await dispatcher.dispatch(Ping(n=1))

        assert crashed.error is ErrorKind.INTERNAL
        assert after.value == 1

    async def test_unregistered_command(self, ctx: ChatContext) -> None:
        async with running(Dispatcher(ctx, HandlerRegistry())) as dispatcher:
            result = await dispatcher.dispatch(Ping())

        assert result.error is ErrorKind.INTERNAL

    async def test_cannot_run_twice(self, ctx: ChatContext) -> None:
        async with running(Dispatcher(ctx, HandlerRegistry())) as dispatcher:
            await anyio.sleep(HANDLER_TIMEOUT)
            with pytest.raises(RuntimeError, match="already running"):
                await dispatcher.run()

    async def test_dispatch_after_close(self, ctx: ChatContext) -> None:
        dispatcher = Dispatcher(ctx, HandlerRegistry())
        await dispatcher.close()

        assert dispatcher.closed
        with pytest.raises(RuntimeError, match="closed"):
            await dispatcher.dispatch(Ping())

    async def test_close_drains_queue(self, ctx: ChatContext) -> None:
        registry = HandlerRegistry()
        handled: list[int] = []

        @registry.handler
        async def on_ping(cmd: Ping) -> Result[None]:
            handled.append(cmd.n)
            return Result.success()

        dispatcher = Dispatcher(ctx, registry)
        items = [await dispatcher.submit(Ping(n=n)) for n in range(COMMAND_COUNT)]
        await dispatcher.close()

        with anyio.fail_after(TIMEOUT_SECONDS):
            await dispatcher.run()

        assert handled == list(range(COMMAND_COUNT))
        assert all(item.done.is_set() for item in items)

    async def test_cancelled_run_fails_queued_commands(self, ctx: ChatContext) -> None:
        registry = HandlerRegistry()
        started = anyio.Event()

        @registry.handler
        async def on_ping(cmd: Ping) -> Result[None]:
            started.set()
            await anyio.sleep_forever()
            return Result.success()

        dispatcher = Dispatcher(ctx, registry)
        with anyio.fail_after(TIMEOUT_SECONDS):
            async with anyio.create_task_group() as tg:
                tg.start_soon(dispatcher.run)
                in_flight = await dispatcher.submit(Ping())
                queued = [
                    await dispatcher.submit(Ping(n=n)) for n in range(COMMAND_COUNT)
                ]
                await started.wait()
                tg.cancel_scope.cancel()

        assert in_flight.done.is_set()
        assert all(item.done.is_set() for item in queued)
        assert all(item.result.error is ErrorKind.INTERNAL for item in queued)
        assert all(item.result.reason == "Dispatcher stopped" for item in queued)

    async def test_middlewares_wrap_in_order(self, ctx: ChatContext) -> None:
        registry = HandlerRegistry()
        calls: list[str] = []

        @registry.handler
        async def on_ping(cmd: Ping) -> Result[None]:
            calls.append("handler")
            return Result.success()

        def tracking(name: str):
            def middleware(next_handler: HandlerFunc) -> HandlerFunc:
                async def handler(item: Dispatch) -> Result[Any]:
                    calls.append(name)
                    return await next_handler(item)

                return handler

            return middleware

        dispatcher = Dispatcher(ctx, registry, middlewares=[tracking("outer")])
        dispatcher.add_middleware(tracking("inner"))
        async with running(dispatcher):
            await dispatcher.dispatch(Ping())

        assert calls == ["outer", "inner", "handler"]


class TestMiddleware:
    def test_default_chain_has_no_handler_timeout(self) -> None:
        assert len(default_middlewares(ChatConfig())) == DEFAULT_MIDDLEWARE_COUNT
        assert len(default_middlewares(ChatConfig(handler_timeout=1.0))) == (
            DEFAULT_MIDDLEWARE_COUNT + 1
        )

    async def test_recoverer_returns_internal_error(
        self, ctx: ChatContext, caplog: pytest.LogCaptureFixture
    ) -> None:
        async def crashing(item: Dispatch) -> Result[Any]:
            msg = "boom"
            raise RuntimeError(msg)

        wrapped = recoverer()(crashing)
        result = await wrapped(Dispatch(command=Ping()))

        assert result.error is ErrorKind.INTERNAL
        assert "Handler failed for Ping" in caplog.text

    async def test_timeout_fails_slow_handler(self) -> None:
        async def slow(item: Dispatch) -> Result[Any]:
            await anyio.sleep(1)
            return Result.success()

        wrapped = timeout(HANDLER_TIMEOUT)(slow)

        with pytest.raises(TimeoutError):
            await wrapped(Dispatch(command=Ping()))

    async def test_timeout_with_recoverer(self, ctx: ChatContext) -> None:
        registry = HandlerRegistry()

        @registry.handler
        async def on_ping(cmd: Ping) -> Result[None]:
            await anyio.sleep(1)
            return Result.success()

        dispatcher = Dispatcher(
            ctx, registry, middlewares=[recoverer(), timeout(HANDLER_TIMEOUT)]
        )
        async with running(dispatcher):
            result = await dispatcher.dispatch(Ping())

        assert result.error is ErrorKind.INTERNAL


class TestChatHandlers:
    async def test_slow_fan_out_completes_under_app_middlewares(
        self, clock: FakeClock
    ) -> None:
        config = ChatConfig(send_timeout=SEND_TIMEOUT, handler_timeout=SEND_TIMEOUT * 2)
        ctx = ChatContext(config, clock)
        alice, bob = RecordingConnection(), RecordingConnection()
        members: list[tuple[str, Connection]] = [
            ("alice", alice),
            ("slow1", StalledConnection()),
            ("slow2", StalledConnection()),
            ("bob", bob),
        ]
        for name, connection in members:
            connected = await ctx.connect(name, False, connection)
            assert connected.value is not None
            await ctx.join_room(connected.value.id, "general")
        alice.clear()
        bob.clear()

        dispatcher = Dispatcher(ctx, handlers, default_middlewares(config))
        async with running(dispatcher):
            result = await dispatcher.dispatch(SendMessage(content="hello"), alice)

        assert result.ok
        assert alice.types() == ["message"]
        assert bob.types() == ["message"]
        assert [m.content for m in ctx.rooms.get_messages("general")] == ["hello"]

    async def test_join_sends_history(self, ctx: ChatContext) -> None:
        connection = RecordingConnection()
        async with running(Dispatcher(ctx, handlers)) as dispatcher:
            connected = await dispatcher.dispatch(Connect(username="alice"), connection)
            await dispatcher.dispatch(JoinRoom(room_id="general"), connection)
            await dispatcher.dispatch(SendMessage(content="hi"), connection)

        assert connected.ok
        assert connection.types() == [
            "rooms_list",
            "user_joined",
            "room_users",
            "room_messages",
            "message",
        ]

    async def test_commands_need_a_session(self, ctx: ChatContext) -> None:
        connection = RecordingConnection()
        async with running(Dispatcher(ctx, handlers)) as dispatcher:
            result = await dispatcher.dispatch(JoinRoom(room_id="general"), connection)

        assert result.error is ErrorKind.NOT_FOUND
        [frame] = connection.frames
        assert frame["data"]["command"] == "join_room"
