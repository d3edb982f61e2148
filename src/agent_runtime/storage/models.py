"""Storage models shared by API and persistence backends."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class TurnRecord(BaseModel):
    """Persisted record of one user turn."""

    turn_id: int
    session_id: str
    user_id: str
    user_message: str
    status: str
    created_at: datetime
    updated_at: datetime
    content: str | None = None
    finish_reason: str | None = None
    steps_taken: int = 0
    error: dict[str, Any] | None = None
    events: list[dict[str, Any]] = Field(default_factory=list)


class MessageRecord(BaseModel):
    """One conversation entry, stored in session order."""

    message_id: int
    session_id: str
    position: int
    payload: dict[str, Any]
    created_at: datetime
