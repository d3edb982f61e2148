"""Turn controller: the model/tool continuation loop."""

from agent_runtime.turn.controller import ToolRunner, TurnController, TurnResult
from agent_runtime.turn.events import EventSink, ListEventSink, TurnEvent
from agent_runtime.turn.messages import ToolCallRequest, TurnMessage
from agent_runtime.turn.model_client import (
    ContentChunk,
    DoneChunk,
    ModelClient,
    OpenAIChatStreamClient,
    ToolCallChunk,
)

__all__ = [
    "ContentChunk",
    "DoneChunk",
    "EventSink",
    "ListEventSink",
    "ModelClient",
    "OpenAIChatStreamClient",
    "ToolCallChunk",
    "ToolCallRequest",
    "ToolRunner",
    "TurnController",
    "TurnEvent",
    "TurnMessage",
    "TurnResult",
]
