"""Frame and update models carried over Server-Sent Events."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SSEEventType(str, Enum):
    """Standard ``event:`` values understood by the typed stream parser."""

    START = "start"
    DELTA = "delta"
    DONE = "done"
    ERROR = "error"
    PROGRESS = "progress"


class UpdatePhase(str, Enum):
    """Phases the core itself knows about.

    Callers are free to use their own phase strings; these are the tags
    the orchestrator and client emit or react to by default.
    """

    COMPLETE = "complete"
    ERROR = "error"
    RECONNECTING = "reconnecting"


class Frame(BaseModel):
    """One SSE wire unit.

    ``id`` is an opaque resumption hint and ``retry`` a reconnect delay hint
    in milliseconds. ``data`` must be JSON-serializable.
    """

    model_config = ConfigDict(frozen=True)

    data: Any
    id: str | None = None
    event: str | None = None
    retry: int | None = Field(default=None, ge=0)


class StreamUpdate(BaseModel):
    """Application payload riding inside a frame's ``data``.

    ``phase`` is a known :class:`UpdatePhase` or any caller-defined string.
    ``metadata`` is the open extension point for caller payloads; unknown
    keys received from the wire are kept as extra fields.
    """

    model_config = ConfigDict(extra="allow", use_enum_values=True)

    phase: UpdatePhase | str
    message: str | None = None
    result: Any = None
    error: str | None = None
    metadata: dict[str, Any] | None = None

    # Reconnection metadata (client-side)
    reconnect_attempt: int | None = None
    max_attempts: int | None = None
    retry_delay_ms: int | None = None

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON-ready dict, omitting empty optional fields.

        An explicitly given ``result`` is kept even when it is None.
        """
        data = self.model_dump(mode="json")
        return {
            key: value
            for key, value in data.items()
            if value is not None or (key == "result" and "result" in self.model_fields_set)
        }


def is_complete_update(update: StreamUpdate, complete_phase: str) -> bool:
    """Check whether ``update`` is a completion carrying a result."""
    return update.phase == complete_phase and update.result is not None


def is_error_update(update: StreamUpdate, error_phase: str) -> bool:
    """Check whether ``update`` is an error carrying a message."""
    return update.phase == error_phase and isinstance(update.error, str)


__all__ = [
    "Frame",
    "SSEEventType",
    "StreamUpdate",
    "UpdatePhase",
    "is_complete_update",
    "is_error_update",
]
