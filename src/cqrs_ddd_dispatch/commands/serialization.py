"""Flat JSON wire format for command envelopes."""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from ..exceptions import MessagingSerializationError
from .envelope import CommandEnvelope


def _json_serializer(obj: Any) -> Any:
    """Serialize datetime and other non-JSON types."""
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class EnvelopeSerializer:
    """Serialize/deserialize :class:`CommandEnvelope` to/from JSON bytes.

    The record is flat: every envelope field at top level plus the
    discriminated ``event_type`` (``<family>.<type>``) for consumers that
    route on a single key.
    """

    def serialize(self, envelope: CommandEnvelope) -> bytes:
        """Encode envelope to JSON bytes."""
        try:
            data = envelope.model_dump(mode="json")
            data["event_type"] = envelope.event_type
            return json.dumps(data, default=_json_serializer).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise MessagingSerializationError(str(e)) from e

    def deserialize(self, raw: bytes | str | CommandEnvelope) -> CommandEnvelope:
        """Decode JSON bytes to :class:`CommandEnvelope`."""
        if isinstance(raw, CommandEnvelope):
            return raw
        try:
            text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            data = json.loads(text)
            if not isinstance(data, dict):
                raise TypeError("envelope must be a JSON object")
            event_type = data.pop("event_type", None)
            if event_type and "command_family" not in data:
                family, _, command_type = str(event_type).partition(".")
                data["command_family"] = family
                data["command_type"] = command_type
            return CommandEnvelope.model_validate(data)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
            raise MessagingSerializationError(str(e)) from e
        except ValidationError as e:
            raise MessagingSerializationError(str(e)) from e
