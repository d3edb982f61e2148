"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from typing import Any

from agent_runtime.storage.models import MessageRecord, TurnRecord


class PostgresTurnStorage:
    """Persist turns and conversation messages in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("AGENT_RUNTIME_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS turns (
                    turn_id BIGSERIAL PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    user_message TEXT NOT NULL,
                    status TEXT NOT NULL,
                    content TEXT,
                    finish_reason TEXT,
                    steps_taken INTEGER NOT NULL DEFAULT 0,
                    error_json JSONB,
                    events_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_turns_session_id
                ON turns(session_id, turn_id DESC)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS session_messages (
                    message_id BIGSERIAL PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    payload_json JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    UNIQUE (session_id, position)
                )
                """)
            conn.commit()

    def append_messages(self, session_id: str, messages: list[dict[str, Any]]) -> None:
        if not messages:
            return
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(position), -1) AS last FROM session_messages WHERE session_id = %s",
                (session_id,),
            ).fetchone()
            position = int(row["last"]) + 1 if row else 0
            for payload in messages:
                conn.execute(
                    """
                    INSERT INTO session_messages (session_id, position, payload_json, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (session_id, position, self._json_wrapper(payload), now),
                )
                position += 1
            conn.commit()

    def list_messages(self, session_id: str) -> list[MessageRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM session_messages
                WHERE session_id = %s
                ORDER BY position ASC
                """,
                (session_id,),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def create_turn(self, *, session_id: str, user_id: str, user_message: str) -> TurnRecord:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO turns (
                    session_id,
                    user_id,
                    user_message,
                    status,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (session_id, user_id, user_message, "running", now, now),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist turn")
        return self._row_to_turn(row)

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
        updated_at = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                UPDATE turns
                SET status = %s,
                    content = %s,
                    finish_reason = %s,
                    steps_taken = %s,
                    error_json = %s,
                    events_json = %s,
                    updated_at = %s
                WHERE turn_id = %s
                RETURNING *
                """,
                (
                    status,
                    content,
                    finish_reason,
                    steps_taken,
                    self._json_wrapper(error) if error is not None else None,
                    self._json_wrapper(events),
                    updated_at,
                    turn_id,
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise KeyError(f"Turn {turn_id} does not exist")
        return self._row_to_turn(row)

    def get_latest_turn(self, session_id: str) -> TurnRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM turns
                WHERE session_id = %s
                ORDER BY turn_id DESC
                LIMIT 1
                """,
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_turn(row)

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json(raw: Any) -> Any:
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_turn(cls, row: Any) -> TurnRecord:
        error_payload = cls._parse_json(row.get("error_json"))
        events_payload = cls._parse_json(row.get("events_json"))
        return TurnRecord(
            turn_id=int(row["turn_id"]),
            session_id=str(row["session_id"]),
            user_id=str(row["user_id"]),
            user_message=row["user_message"],
            status=str(row["status"]),
            content=row.get("content"),
            finish_reason=row.get("finish_reason"),
            steps_taken=int(row.get("steps_taken") or 0),
            error=error_payload if isinstance(error_payload, dict) else None,
            events=[item for item in events_payload or [] if isinstance(item, dict)],
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_message(cls, row: Any) -> MessageRecord:
        payload = cls._parse_json(row["payload_json"])
        return MessageRecord(
            message_id=int(row["message_id"]),
            session_id=str(row["session_id"]),
            position=int(row["position"]),
            payload=payload if isinstance(payload, dict) else {},
            created_at=cls._parse_datetime(row["created_at"]),
        )
