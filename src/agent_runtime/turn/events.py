"""Ordered, session-scoped events emitted while a turn runs.

Wire framing is up to the transport; sinks only see the events in the order
they were produced.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

TURN_START = "turn.start"
MESSAGE_DELTA = "message.delta"
TOOL_START = "tool.start"
TOOL_PROGRESS = "tool.progress"
TOOL_COMPLETE = "tool.complete"
TOOL_ERROR = "tool.error"
FILE_CREATED = "file.created"
THINKING_START = "thinking.start"
TURN_COMPLETE = "turn.complete"
STEP_LIMIT = "agent.step_limit"
TURN_ERROR = "turn.error"


class TurnEvent(BaseModel):
    type: str
    session_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] = Field(default_factory=dict)


class EventSink(Protocol):
    def emit(self, event: TurnEvent) -> None: ...


class ListEventSink:
    """Collects events in emission order."""

    def __init__(self) -> None:
        self.events: list[TurnEvent] = []

    def emit(self, event: TurnEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.type for event in self.events]

    def of_type(self, event_type: str) -> list[TurnEvent]:
        return [event for event in self.events if event.type == event_type]


class NullEventSink:
    def emit(self, event: TurnEvent) -> None:
        logger.debug("Turn event session_id=%s type=%s", event.session_id, event.type)
