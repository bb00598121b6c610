"""FastAPI chat application."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated, Any

import anyio
from fastapi import (
    APIRouter,
    FastAPI,
    HTTPException,
    Query,
    Request,
    WebSocket,
    status,
)
from fastapi.websockets import WebSocketDisconnect
from opentelemetry.metrics import MeterProvider

from huddle.chat import ChatContext
from huddle.clock import Clock, utcnow
from huddle.commands import Connect, Disconnect, InvalidFrame
from huddle.config import ChatConfig
from huddle.dependencies import ChatDep, DispatcherDep
from huddle.dispatch import Dispatcher, Middleware
from huddle.errors import ROOM_NOT_FOUND, EnvelopeError
from huddle.handlers import handlers
from huddle.marshaling import decode_command, to_wire
from huddle.metrics import metrics_middleware
from huddle.middleware import recoverer, timeout
from huddle.sweeper import TypingSweeper

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

router = APIRouter()


def default_middlewares(
    config: ChatConfig, meter_provider: MeterProvider | None = None
) -> list[Middleware]:
    """Recoverer, metrics and, when configured, a per-command timeout."""
    middlewares: list[Middleware] = [
        recoverer(logger),
        metrics_middleware(meter_provider),
    ]
    if config.handler_timeout is not None:
        middlewares.append(timeout(config.handler_timeout))
    return middlewares


def create_app(
    config: ChatConfig | None = None,
    clock: Clock = utcnow,
    meter_provider: MeterProvider | None = None,
) -> FastAPI:
    """Build the chat application with its own context and dispatcher."""
    config = config or ChatConfig()
    chat = ChatContext(config, clock)
    dispatcher = Dispatcher(
        chat,
        handlers,
        middlewares=default_middlewares(config, meter_provider),
        buffer_size=config.dispatch_buffer,
    )
    sweeper = TypingSweeper(dispatcher, config.sweep_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start and stop the dispatcher and the typing sweeper."""
        logger.info("Starting chat dispatcher...")

        async with asyncio.TaskGroup() as tg:
            tg.create_task(dispatcher.run())
            tg.create_task(sweeper.run())

            yield

            logger.info("Shutting down chat dispatcher...")
            await sweeper.close()
            await dispatcher.close()

    app = FastAPI(title="Huddle Chat", lifespan=lifespan)
    app.state.chat = chat
    app.state.dispatcher = dispatcher
    app.state.started_at = time.monotonic()
    app.include_router(router)
    return app


# WebSocket
@router.websocket("/ws")
async def chat_socket(
    websocket: WebSocket,
    dispatcher: DispatcherDep,
    username: str | None = None,
    guest: bool = False,
):
    """Chat connection. Frames are decoded and handled in arrival order."""
    await websocket.accept()

    connected = await dispatcher.dispatch(
        Connect(username=username, is_guest=guest), websocket
    )
    if not connected:
        await websocket.close(
            code=status.WS_1008_POLICY_VIOLATION, reason=connected.reason
        )
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                code = message.get("code", status.WS_1000_NORMAL_CLOSURE)
                raise WebSocketDisconnect(code, message.get("reason"))
            raw: str | bytes | None = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            try:
                command = decode_command(raw)
            except EnvelopeError as e:
                command = InvalidFrame(reason=str(e))
            await dispatcher.dispatch(command, websocket)
    except WebSocketDisconnect:
        logger.debug("WebSocket closed by client")
    finally:
        with anyio.CancelScope(shield=True):
            if not dispatcher.closed:
                await dispatcher.dispatch(Disconnect(), websocket)


# HTTP
@router.get("/health")
async def health(request: Request, chat: ChatDep) -> dict[str, Any]:
    """Liveness probe."""
    return {
        "status": "healthy",
        "timestamp": chat.clock().isoformat(),
        "uptime": time.monotonic() - request.app.state.started_at,
        "connections": len(chat.sessions),
    }


@router.get("/api/rooms")
async def list_rooms(chat: ChatDep) -> dict[str, Any]:
    """Public rooms with their member counts."""
    return {"success": True, "rooms": to_wire(chat.rooms.summaries())}


@router.get("/api/rooms/{room_id}/messages")
async def room_messages(
    room_id: str,
    chat: ChatDep,
    limit: Annotated[int | None, Query(ge=1)] = None,
    before: str | None = None,
) -> dict[str, Any]:
    page = chat.get_room_messages(room_id, limit, before)
    if not page:
        raise HTTPException(status_code=404, detail=page.reason)
    return {"success": True, "roomId": room_id, "messages": to_wire(page.value)}


@router.get("/api/rooms/{room_id}/users")
async def room_users(room_id: str, chat: ChatDep) -> dict[str, Any]:
    if chat.rooms.get_room(room_id) is None:
        raise HTTPException(status_code=404, detail=ROOM_NOT_FOUND)
    users = chat.broadcaster.room_members(room_id)
    return {"success": True, "roomId": room_id, "users": to_wire(users)}


@router.get("/api/rooms/{room_id}/search")
async def search_messages(
    room_id: str,
    chat: ChatDep,
    q: Annotated[str, Query(min_length=1)],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> dict[str, Any]:
    """Case-insensitive search over a room's text messages."""
    if chat.rooms.get_room(room_id) is None:
        raise HTTPException(status_code=404, detail=ROOM_NOT_FOUND)
    matches = chat.rooms.search_messages(room_id, q, limit)
    return {"success": True, "roomId": room_id, "messages": to_wire(matches)}


@router.get("/api/rooms/{room_id}/stats")
async def room_stats(room_id: str, chat: ChatDep) -> dict[str, Any]:
    if chat.rooms.get_room(room_id) is None:
        raise HTTPException(status_code=404, detail=ROOM_NOT_FOUND)
    stats = chat.rooms.message_stats(room_id)
    return {"success": True, "roomId": room_id, "stats": to_wire(stats)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("huddle.app:create_app", factory=True, host="0.0.0.0", port=8000)
