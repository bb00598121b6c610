"""Dispatcher - applies chat commands one at a time.

Every state change goes through a single queue: client commands, connects and
disconnects, and typing sweeps. The dispatcher drains the queue in one task,
so no two commands ever interleave and each connection's commands are applied
in the order they arrived.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, get_type_hints

import anyio
from pydantic import BaseModel

from huddle.commands import InvalidFrame
from huddle.depends import call_with_deps
from huddle.errors import ErrorKind, Result
from huddle.marshaling import command_name
from huddle.models import EventType
from huddle.sessions import Connection

if TYPE_CHECKING:
    from huddle.chat import ChatContext

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 100


@dataclass(eq=False)
class Dispatch:
    """A command waiting on the queue, with the connection that sent it."""

    command: BaseModel
    connection: Connection | None = None
    done: anyio.Event = field(default_factory=anyio.Event)
    result: Result[Any] = field(default_factory=Result.success)


HandlerFunc = Callable[[Dispatch], Awaitable[Result[Any]]]
Middleware = Callable[[HandlerFunc], HandlerFunc]
CommandHandler = Callable[..., Awaitable[Result[Any]]]


class HandlerRegistry:
    """Maps each command type to its single handler."""

    def __init__(self) -> None:
        self._handlers: dict[type, CommandHandler] = {}

    def __contains__(self, command_type: type) -> bool:
        return command_type in self._handlers

    def handler(self, func: CommandHandler) -> CommandHandler:
        """Decorator to register a command handler.

        The command type is inferred from the first parameter's type hint.
        Remaining parameters are injected by name (``ctx``, ``connection``)
        or through ``Depends``.

        Usage:
            @handlers.handler
            async def handle_join(cmd: JoinRoom, ctx: ChatContext) -> Result:
                ...
        """
        hints = get_type_hints(func)
        params = list(inspect.signature(func).parameters.keys())

        if not params:
            msg = f"Handler {func.__name__} must have at least one parameter"
            raise TypeError(msg)

        first_param = params[0]
        if first_param not in hints:
            msg = f"First parameter '{first_param}' of {func.__name__} must be typed"
            raise TypeError(msg)

        command_type = hints[first_param]
        if command_type in self._handlers:
            msg = f"A handler for {command_type.__name__} is already registered"
            raise ValueError(msg)

        self._handlers[command_type] = func
        return func

    def get(self, command_type: type) -> CommandHandler | None:
        return self._handlers.get(command_type)


class Dispatcher:
    """Serializes command handling for a :class:`ChatContext`.

    Middlewares wrap the handler call; the first middleware is outermost.
    """

    def __init__(
        self,
        ctx: "ChatContext",
        registry: HandlerRegistry,
        middlewares: Sequence[Middleware] = (),
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        self._ctx = ctx
        self._registry = registry
        self._middlewares = list(middlewares)
        self._send, self._receive = anyio.create_memory_object_stream[Dispatch](
            max_buffer_size=buffer_size
        )
        self._closed = False
        self._running = False

    @property
    def closed(self) -> bool:
        return self._closed

    def add_middleware(self, middleware: Middleware) -> None:
        self._middlewares.append(middleware)

    async def dispatch(
        self, command: BaseModel, connection: Connection | None = None
    ) -> Result[Any]:
        """Enqueue a command and wait for it to be handled.

        Raises:
            RuntimeError: The dispatcher has been closed.
        """
        item = await self._enqueue(command, connection)
        await item.done.wait()
        return item.result

    async def submit(
        self, command: BaseModel, connection: Connection | None = None
    ) -> Dispatch:
        """Enqueue a command without waiting for it."""
        return await self._enqueue(command, connection)

    async def _enqueue(
        self, command: BaseModel, connection: Connection | None
    ) -> Dispatch:
        if self._closed:
            msg = "Dispatcher is closed"
            raise RuntimeError(msg)

        item = Dispatch(command=command, connection=connection)
        try:
            await self._send.send(item)
        except anyio.ClosedResourceError as e:
            msg = "Dispatcher is closed"
            raise RuntimeError(msg) from e
        return item

    async def run(self) -> None:
        """Handle queued commands until closed and drained.

        If the run is cancelled, commands still queued fail with an internal
        error so their waiters are released.
        """
        if self._running:
            msg = "Dispatcher is already running"
            raise RuntimeError(msg)

        self._running = True
        handle = self._build_chain()
        try:
            async for item in self._receive:
                await self._process(handle, item)
        finally:
            self._running = False
            self._abandon_pending()
            logger.debug("Dispatcher stopped")

    async def close(self) -> None:
        """Stop accepting commands. Commands already queued are still handled."""
        if self._closed:
            return
        self._closed = True
        self._send.close()

    def _build_chain(self) -> HandlerFunc:
        handle: HandlerFunc = self._handle
        for middleware in reversed(self._middlewares):
            handle = middleware(handle)
        return handle

    async def _handle(self, item: Dispatch) -> Result[Any]:
        command_type = type(item.command)
        handler = self._registry.get(command_type)
        if handler is None:
            msg = f"No handler registered for {command_type.__name__}"
            raise LookupError(msg)

        scope = {"ctx": self._ctx, "connection": item.connection}
        return await call_with_deps(
            handler, {_first_param_name(handler): item.command}, scope
        )

    async def _process(self, handle: HandlerFunc, item: Dispatch) -> None:
        try:
            try:
                item.result = await handle(item)
            except Exception as e:
                logger.exception("Command %s failed", command_name(item.command))
                reason = str(e) or type(e).__name__
                item.result = Result.failure(ErrorKind.INTERNAL, reason)

            if not item.result.ok and item.connection is not None:
                await self._reply_error(item, item.connection)
        finally:
            item.done.set()

    async def _reply_error(self, item: Dispatch, connection: Connection) -> None:
        result = item.result
        name = None
        if not isinstance(item.command, InvalidFrame):
            name = command_name(item.command)
        logger.info(
            "Rejected %s: %s (%s)",
            name or "frame",
            result.reason,
            result.error,
        )
        data = {"code": str(result.error), "reason": result.reason, "command": name}
        broadcaster = self._ctx.broadcaster
        await broadcaster.send(connection, broadcaster.envelope(EventType.ERROR, data))

    def _abandon_pending(self) -> None:
        while True:
            try:
                item = self._receive.receive_nowait()
            except (anyio.WouldBlock, anyio.EndOfStream, anyio.ClosedResourceError):
                return
            item.result = Result.failure(ErrorKind.INTERNAL, "Dispatcher stopped")
            item.done.set()


def _first_param_name(func: Callable[..., Any]) -> str:
    """Get the name of the first parameter of a function."""
    return next(iter(inspect.signature(func).parameters.keys()))
