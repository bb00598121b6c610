"""Wire marshaling between JSON frames and chat models.

Inbound frames are ``{"type": ..., "data": {...}}`` and decode to a command
model. Outbound frames are :class:`Envelope` objects serialized with camelCase
keys and ISO-8601 timestamps.
"""

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ValidationError

from huddle.commands import INBOUND_COMMANDS
from huddle.errors import EnvelopeError
from huddle.models import Envelope, EventType

_COMMAND_NAMES = {model: name for name, model in INBOUND_COMMANDS.items()}


def decode_command(raw: str | bytes) -> BaseModel:
    """Decode an inbound frame into its command model.

    Raises:
        EnvelopeError: The frame is not JSON, not an object, has no string
            ``type``, names an unknown command, or carries invalid data.
    """
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        msg = "Frame is not valid JSON"
        raise EnvelopeError(msg) from e

    if not isinstance(frame, dict):
        msg = "Frame must be a JSON object"
        raise EnvelopeError(msg)

    kind = frame.get("type")
    if not isinstance(kind, str):
        msg = "Frame is missing a string 'type'"
        raise EnvelopeError(msg)

    command_type = INBOUND_COMMANDS.get(kind)
    if command_type is None:
        msg = f"Unknown command type '{kind}'"
        raise EnvelopeError(msg)

    data = frame.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        msg = f"Data for '{kind}' must be a JSON object"
        raise EnvelopeError(msg)

    try:
        return command_type.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(part) for part in err["loc"]) for err in e.errors()
        )
        msg = f"Invalid data for '{kind}': {fields}"
        raise EnvelopeError(msg) from e


def command_name(command: BaseModel) -> str:
    """Wire name of a command, or its class name for internal commands."""
    return _COMMAND_NAMES.get(type(command), type(command).__name__)


def to_wire(value: Any) -> Any:
    """Convert models (possibly nested in lists and dicts) to JSON-ready data."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list | tuple):
        return [to_wire(item) for item in value]
    if isinstance(value, dict):
        return {key: to_wire(item) for key, item in value.items()}
    return value


def make_envelope(event_type: EventType, data: Any, timestamp: datetime) -> Envelope:
    return Envelope(type=event_type, data=to_wire(data), timestamp=timestamp)


def encode(envelope: Envelope) -> str:
    """Serialize an envelope to its JSON text frame."""
    return envelope.model_dump_json(by_alias=True)
