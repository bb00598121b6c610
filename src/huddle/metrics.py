"""OpenTelemetry metrics for command handling."""

import time
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import MeterProvider

from huddle.dispatch import Dispatch, HandlerFunc, Middleware
from huddle.errors import Result
from huddle.marshaling import command_name

OUTCOME_OK = "ok"


def metrics_middleware(
    meter_provider: MeterProvider | None = None,
) -> Middleware:
    """Create a metrics middleware for the dispatcher.

    Tracks:
    - chat.command.duration: Handling time histogram
    - chat.commands.processed: Count of handled commands by outcome

    Args:
        meter_provider: OTEL MeterProvider (uses global if not provided).

    Returns:
        Middleware function.
    """
    provider = meter_provider or metrics.get_meter_provider()
    meter = provider.get_meter("huddle")

    command_duration = meter.create_histogram(
        "chat.command.duration",
        unit="s",
        description="Duration of command handling",
    )
    processed_commands = meter.create_counter(
        "chat.commands.processed",
        unit="{command}",
        description="Number of commands handled by the dispatcher",
    )

    def middleware(handler: HandlerFunc) -> HandlerFunc:
        async def wrapper(item: Dispatch) -> Result[Any]:
            attributes: dict[str, Any] = {"chat.command": command_name(item.command)}

            start = time.perf_counter()
            try:
                result = await handler(item)
                outcome = OUTCOME_OK if result.ok else str(result.error)
                attributes["chat.outcome"] = outcome
                processed_commands.add(1, attributes)
                return result
            except Exception as e:
                attributes["error.type"] = type(e).__name__
                raise
            finally:
                duration = time.perf_counter() - start
                command_duration.record(duration, attributes)

        return wrapper

    return middleware
