"""Built-in dispatcher middlewares."""

import logging
from typing import Any

import anyio

from huddle.dispatch import Dispatch, HandlerFunc, Middleware
from huddle.errors import ErrorKind, Result
from huddle.marshaling import command_name

INTERNAL_ERROR_REASON = "Internal error"


def recoverer(
    logger: logging.Logger | None = None,
) -> Middleware:
    """Middleware that turns a crashing handler into an internal-error result.

    The dispatcher keeps serving the queue and the sender gets an error frame.
    """
    log = logger or logging.getLogger("huddle.dispatch")

    def middleware(next_handler: HandlerFunc) -> HandlerFunc:
        async def handler(item: Dispatch) -> Result[Any]:
            try:
                return await next_handler(item)
            except Exception:
                log.exception("Handler failed for %s", command_name(item.command))
                return Result.failure(ErrorKind.INTERNAL, INTERNAL_ERROR_REASON)

        return handler

    return middleware


def timeout(seconds: float) -> Middleware:
    """Middleware that fails a handler if it takes too long."""

    def middleware(next_handler: HandlerFunc) -> HandlerFunc:
        async def handler(item: Dispatch) -> Result[Any]:
            with anyio.fail_after(seconds):
                return await next_handler(item)

        return handler

    return middleware
