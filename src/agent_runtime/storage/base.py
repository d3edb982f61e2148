"""Storage interfaces for turn and conversation persistence."""

from __future__ import annotations

from typing import Any, Protocol

from agent_runtime.storage.models import MessageRecord, TurnRecord


class TurnStorage(Protocol):
    def migrate(self) -> None: ...

    def append_messages(self, session_id: str, messages: list[dict[str, Any]]) -> None: ...

    def list_messages(self, session_id: str) -> list[MessageRecord]: ...

    def create_turn(self, *, session_id: str, user_id: str, user_message: str) -> TurnRecord: ...

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
    ) -> TurnRecord: ...

    def get_latest_turn(self, session_id: str) -> TurnRecord | None: ...
