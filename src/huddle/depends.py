"""Dependency injection for command handlers, inspired by FastAPI's Depends."""

import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Annotated, Any, TypeVar, get_args, get_origin, get_type_hints

T = TypeVar("T")


@dataclass(frozen=True)
class Depends:
    """Marker for dependency injection in handler signatures.

    Usage:
        def current_session(ctx: ChatContext, connection: Connection) -> Session:
            return ctx.sessions.find_by_connection(connection)

        @handlers.handler
        async def handle_join(
            cmd: JoinRoom,
            session: Annotated[Session, Depends(current_session)],
        ) -> Result[Room]:
            ...
    """

    dependency: Callable[..., Any]


def _get_depends_from_annotation(annotation: Any) -> Depends | None:
    """Extract Depends from an Annotated type hint."""
    if get_origin(annotation) is Annotated:
        for arg in get_args(annotation)[1:]:
            if isinstance(arg, Depends):
                return arg
    return None


async def resolve_dependencies(
    func: Callable[..., Any],
    provided: dict[str, Any],
    scope: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Resolve a function's parameters.

    Parameters are filled from ``provided`` first, then from ``scope`` by
    name, then through ``Annotated[T, Depends(...)]`` or a ``Depends``
    default. ``scope`` is passed down to nested dependencies, so they can ask
    for the chat context or the connection the same way handlers do.

    Args:
        func: The function whose signature to inspect.
        provided: Already-provided arguments (e.g., the command).
        scope: Values injectable by parameter name at every level.

    Returns:
        Dict of resolved parameter names to values.
    """
    scope = scope or {}
    sig = inspect.signature(func)
    resolved: dict[str, Any] = dict(provided)

    try:
        hints = get_type_hints(func, include_extras=True)
    except (NameError, TypeError):
        hints = {}

    for name, param in sig.parameters.items():
        if name in resolved:
            continue

        if name in scope:
            resolved[name] = scope[name]
            continue

        depends: Depends | None = None
        if name in hints:
            depends = _get_depends_from_annotation(hints[name])

        if depends is None and isinstance(param.default, Depends):
            depends = param.default

        if depends is not None:
            dep_func = depends.dependency
            nested = await resolve_dependencies(dep_func, {}, scope)
            result = dep_func(**nested)

            if inspect.isawaitable(result):
                result = await result

            resolved[name] = result

    return resolved


async def call_with_deps(
    func: Callable[..., T | Awaitable[T]],
    provided: dict[str, Any],
    scope: Mapping[str, Any] | None = None,
) -> T:
    """Call a function, resolving its dependencies first.

    Args:
        func: The function to call.
        provided: Already-provided arguments.
        scope: Values injectable by parameter name.

    Returns:
        The result of calling the function.
    """
    resolved = await resolve_dependencies(func, provided, scope)
    result = func(**resolved)

    if inspect.isawaitable(result):
        return await result  # type: ignore[return-value]

    return result  # type: ignore[return-value]
