"""FastAPI app entrypoint for agent-runtime."""

from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from agent_runtime.config.settings import Settings, get_settings
from agent_runtime.errors import TurnFault
from agent_runtime.guardrail.manager import TaskGuardrail
from agent_runtime.storage.base import TurnStorage
from agent_runtime.storage.memory import InMemoryTurnStorage
from agent_runtime.storage.models import TurnRecord
from agent_runtime.storage.postgres import PostgresTurnStorage
from agent_runtime.tools.gateway import ToolExecutor
from agent_runtime.tools.registry import build_registry, resolve_backends, tool_catalogue
from agent_runtime.turn.controller import ToolRunner, TurnController
from agent_runtime.turn.events import ListEventSink
from agent_runtime.turn.messages import TurnMessage
from agent_runtime.turn.model_client import ModelClient, build_model_client

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a research assistant. Use tools when they are needed, keep explicit "
    "time constraints exactly as the user stated them, and answer concisely."
)


class CreateTurnRequest(BaseModel):
    message: str = Field(min_length=1)
    user_id: str = "anonymous"
    system_prompt: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)


class TurnResponse(BaseModel):
    turn: TurnRecord
    content: str
    finish_reason: str
    steps_taken: int
    task: dict[str, Any]


class SessionLocks:
    """One lock per session id, so a session runs at most one turn at a time."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def for_session(self, session_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(session_id, threading.Lock())


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: TurnStorage | None,
    model_client_override: ModelClient | None,
    tool_runner_override: ToolRunner | None,
    guardrail_override: TaskGuardrail | None,
    tool_definitions_override: list[dict[str, Any]] | None,
) -> None:
    if not hasattr(app.state, "storage"):
        database_url = settings.resolved_database_url()
        if storage_override is not None:
            app.state.storage = storage_override
        elif database_url:
            app.state.storage = PostgresTurnStorage(database_url)
        else:
            logger.warning("No database URL configured; turns are kept in memory only")
            app.state.storage = InMemoryTurnStorage()
        app.state.storage.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "session_locks"):
        app.state.session_locks = SessionLocks()

    if not hasattr(app.state, "guardrail"):
        app.state.guardrail = guardrail_override or TaskGuardrail(
            search_call_cap=settings.search_call_cap,
            max_consecutive_failures=settings.max_consecutive_failures,
        )

    if not hasattr(app.state, "tool_runner"):
        if tool_runner_override is not None:
            app.state.tool_runner = tool_runner_override
            app.state.tool_catalogue = list(tool_definitions_override or [])
        else:
            backends = resolve_backends(settings.search_backend)
            if backends.fallback_reason:
                logger.warning("Search backend fallback reason=%s", backends.fallback_reason)
            registry = build_registry(
                web_backend=backends.web,
                paper_backend=backends.paper,
                search_max_retries=settings.search_max_retries,
                year_only_overlap=settings.year_only_dates_overlap,
            )
            app.state.tool_runner = ToolExecutor(
                registry=registry,
                tool_timeout_s=settings.tool_timeout_s,
                max_retries=settings.tool_max_retries,
                backoff_s=settings.tool_retry_backoff_s,
            )
            app.state.tool_catalogue = tool_catalogue(registry)

    if not hasattr(app.state, "model_client"):
        app.state.model_client = model_client_override or build_model_client(
            provider=settings.llm_provider,
            api_key=settings.resolved_openai_api_key(),
            model=settings.llm_model,
            base_url=settings.llm_base_url,
            timeout_s=settings.llm_timeout_s,
            max_retries=settings.llm_max_retries,
            backoff_s=settings.llm_backoff_s,
        )


def create_app(
    *,
    storage: TurnStorage | None = None,
    settings_override: Settings | None = None,
    model_client: ModelClient | None = None,
    tool_runner: ToolRunner | None = None,
    tool_definitions: list[dict[str, Any]] | None = None,
    guardrail: TaskGuardrail | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    overrides = {
        "settings": settings,
        "storage_override": storage,
        "model_client_override": model_client,
        "tool_runner_override": tool_runner,
        "guardrail_override": guardrail,
        "tool_definitions_override": tool_definitions,
    }

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, **overrides)
        yield

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure_runtime_state(app, **overrides)

    def _state(request: Request) -> Any:
        if not hasattr(request.app.state, "storage"):
            _ensure_runtime_state(request.app, **overrides)
        return request.app.state

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/tools")
    def tools(request: Request) -> dict[str, Any]:
        catalogue = _state(request).tool_catalogue
        return {"tools": sorted(item["function"]["name"] for item in catalogue)}

    @app.post("/sessions/{session_id}/turns", response_model=TurnResponse)
    def create_turn(session_id: str, payload: CreateTurnRequest, request: Request) -> TurnResponse:
        state = _state(request)
        if state.model_client is None:
            raise HTTPException(status_code=503, detail="Model client is not configured")

        session_lock = state.session_locks.for_session(session_id)
        if not session_lock.acquire(blocking=False):
            logger.info("Rejected overlapping turn session_id=%s", session_id)
            raise HTTPException(status_code=409, detail="A turn is already running for this session")
        try:
            return _run_turn(state, session_id, payload)
        finally:
            session_lock.release()

    def _run_turn(state: Any, session_id: str, payload: CreateTurnRequest) -> TurnResponse:
        turn_storage: TurnStorage = state.storage
        task_guardrail: TaskGuardrail = state.guardrail
        record = turn_storage.create_turn(
            session_id=session_id,
            user_id=payload.user_id,
            user_message=payload.message,
        )

        task_guardrail.clear_task(session_id)
        task_guardrail.start_task(session_id, payload.user_id, payload.message)

        user_message = TurnMessage(role="user", content=payload.message)
        history = [TurnMessage(role="system", content=payload.system_prompt or DEFAULT_SYSTEM_PROMPT)]
        history.extend(
            TurnMessage.model_validate(item.payload) for item in turn_storage.list_messages(session_id)
        )
        history.append(user_message)

        controller = TurnController(
            state.model_client,
            state.tool_runner,
            task_guardrail,
            max_steps=settings.max_steps,
            max_execution_time_s=settings.max_execution_time_s,
        )
        sink = ListEventSink()
        try:
            result = controller.run(
                session_id,
                history,
                state.tool_catalogue,
                options=payload.options,
                sink=sink,
            )
        except TurnFault as exc:
            task_guardrail.fail_task(session_id, str(exc))
            turn_storage.finish_turn(
                record.turn_id,
                status="failed",
                content=None,
                finish_reason=None,
                steps_taken=exc.steps_taken,
                error={"code": exc.code, "message": str(exc)},
                events=[event.model_dump(mode="json") for event in sink.events],
            )
            raise HTTPException(status_code=500, detail="Turn failed") from exc

        turn_storage.append_messages(
            session_id,
            [message.model_dump(mode="json") for message in [user_message, *result.messages]],
        )
        finished = turn_storage.finish_turn(
            record.turn_id,
            status="completed",
            content=result.content,
            finish_reason=result.finish_reason,
            steps_taken=result.steps_taken,
            error=None,
            events=[event.model_dump(mode="json") for event in sink.events],
        )
        return TurnResponse(
            turn=finished,
            content=result.content,
            finish_reason=result.finish_reason,
            steps_taken=result.steps_taken,
            task=task_guardrail.get_task_summary(session_id),
        )

    @app.get("/sessions/{session_id}/turns/latest", response_model=TurnRecord)
    def get_latest_turn(session_id: str, request: Request) -> TurnRecord:
        turn_storage: TurnStorage = _state(request).storage
        record = turn_storage.get_latest_turn(session_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Turn not found")
        return record

    @app.get("/sessions/{session_id}/task")
    def get_task(session_id: str, request: Request) -> dict[str, Any]:
        task_guardrail: TaskGuardrail = _state(request).guardrail
        task_state = task_guardrail.get_task_state(session_id)
        if task_state is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return {
            "state": task_state.model_dump(mode="json"),
            "summary": task_guardrail.get_task_summary(session_id),
        }

    return app


# Module-level app for `uvicorn agent_runtime.api.main:app`.
app = create_app()
