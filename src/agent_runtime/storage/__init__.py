"""Storage backends and models."""

from agent_runtime.storage.base import TurnStorage
from agent_runtime.storage.memory import InMemoryTurnStorage
from agent_runtime.storage.models import MessageRecord, TurnRecord
from agent_runtime.storage.postgres import PostgresTurnStorage

__all__ = [
    "InMemoryTurnStorage",
    "MessageRecord",
    "PostgresTurnStorage",
    "TurnRecord",
    "TurnStorage",
]
