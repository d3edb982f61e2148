"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any

from agent_runtime.storage.models import MessageRecord, TurnRecord


class InMemoryTurnStorage:
    """Simple in-memory implementation; nothing survives a restart."""

    def __init__(self) -> None:
        self._turns: dict[int, TurnRecord] = {}
        self._messages: list[MessageRecord] = []
        self._next_turn_id = 1
        self._lock = threading.Lock()

    def migrate(self) -> None:
        return None

    def append_messages(self, session_id: str, messages: list[dict[str, Any]]) -> None:
        now = datetime.now(UTC)
        with self._lock:
            position = sum(1 for item in self._messages if item.session_id == session_id)
            for payload in messages:
                self._messages.append(
                    MessageRecord(
                        message_id=len(self._messages) + 1,
                        session_id=session_id,
                        position=position,
                        payload=dict(payload),
                        created_at=now,
                    )
                )
                position += 1

    def list_messages(self, session_id: str) -> list[MessageRecord]:
        with self._lock:
            return [item for item in self._messages if item.session_id == session_id]

    def create_turn(self, *, session_id: str, user_id: str, user_message: str) -> TurnRecord:
        now = datetime.now(UTC)
        with self._lock:
            record = TurnRecord(
                turn_id=self._next_turn_id,
                session_id=session_id,
                user_id=user_id,
                user_message=user_message,
                status="running",
                created_at=now,
                updated_at=now,
            )
            self._next_turn_id += 1
            self._turns[record.turn_id] = record
        return record

    def finish_turn(
        self,
        turn_id: int,
        *,
        status: str,
        content: str | None,
        finish_reason: str | None,
        steps_taken: int,
        error: dict[str, Any] | None,
        events: list[dict[str, Any]],
    ) -> TurnRecord:
        with self._lock:
            current = self._turns.get(turn_id)
            if current is None:
                raise KeyError(f"Turn {turn_id} does not exist")
            updated = current.model_copy(
                update={
                    "status": status,
                    "content": content,
                    "finish_reason": finish_reason,
                    "steps_taken": steps_taken,
                    "error": error,
                    "events": list(events),
                    "updated_at": datetime.now(UTC),
                }
            )
            self._turns[turn_id] = updated
        return updated

    def get_latest_turn(self, session_id: str) -> TurnRecord | None:
        with self._lock:
            for turn_id in sorted(self._turns, reverse=True):
                record = self._turns[turn_id]
                if record.session_id == session_id:
                    return record
        return None
