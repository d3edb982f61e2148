"""Per-session task state, tool-call gating and completion reflection."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping
from datetime import UTC, date, datetime
from typing import Any

from agent_runtime.guardrail.goals import (
    ARTIFACT_TOOLS,
    MODEL_STEPS,
    GoalInference,
    KeywordGoalInference,
    build_plan,
    is_search_tool,
    tool_matches_step,
)
from agent_runtime.guardrail.models import (
    ExecutionStep,
    GeneratedArtifact,
    ReflectionResult,
    TaskState,
    ToolCallDecision,
    ToolCallRecord,
)
from agent_runtime.guardrail.prompt import render_prompt_context, render_task_summary

logger = logging.getLogger(__name__)

PROGRESS_PHRASES = (
    "progress",
    "status",
    "how are you doing",
    "what is the status",
    "are you done",
    "did you finish",
    "complete",
    "current state",
)
SEARCH_RESULTS_ARTIFACT = "search-results.json"


class TaskGuardrail:
    """Owns every ``TaskState``; callers only read decisions and report outcomes.

    The lock protects the session map itself. Calls for one session are
    expected to be sequential.
    """

    def __init__(
        self,
        *,
        goal_inference: GoalInference | None = None,
        search_call_cap: int = 1,
        max_consecutive_failures: int = 2,
    ) -> None:
        self._goal_inference = goal_inference or KeywordGoalInference()
        self._search_call_cap = search_call_cap
        self._max_consecutive_failures = max_consecutive_failures
        self._states: dict[str, TaskState] = {}
        self._lock = threading.Lock()

    @property
    def search_call_cap(self) -> int:
        return self._search_call_cap

    def start_task(self, session_id: str, user_id: str, user_message: str) -> TaskState:
        goal = self._goal_inference.infer(user_message)
        state = TaskState(
            session_id=session_id,
            user_id=user_id,
            phase="planning",
            goal=goal,
            plan=build_plan(goal),
        )
        with self._lock:
            self._states[session_id] = state
        logger.info(
            "Task started session_id=%s steps=%s",
            session_id,
            ",".join(step.kind for step in state.plan),
        )
        return state

    def record_call(
        self,
        session_id: str,
        tool_name: str,
        parameters: Mapping[str, Any] | None,
        result: Any,
        success: bool,
    ) -> None:
        state = self._get(session_id)
        if state is None:
            return

        now = datetime.now(UTC)
        state.tool_call_history.append(
            ToolCallRecord(
                tool_name=tool_name,
                parameters=dict(parameters or {}),
                timestamp=now,
                success=success,
                result=_plain(result),
            )
        )
        state.updated_at = now
        if not success:
            return

        _complete_matching_step(state, tool_name, _plain(result), now)

        if is_search_tool(tool_name):
            state.search_results.extend(_search_results(result))
        if tool_name in ARTIFACT_TOOLS:
            artifact = _first_artifact(result)
            if artifact is not None:
                state.artifact_generated = GeneratedArtifact(
                    type=ARTIFACT_TOOLS[tool_name],
                    name=str(_get(artifact, "name") or tool_name),
                    file_id=_get(artifact, "file_id"),
                    size=_get(artifact, "size"),
                )

    def decide(
        self,
        session_id: str,
        tool_name: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> ToolCallDecision:
        state = self._get(session_id)
        if state is None:
            return ToolCallDecision(allowed=True)

        history = state.tool_call_history
        if is_search_tool(tool_name):
            successful_searches = sum(
                1 for record in history if record.success and is_search_tool(record.tool_name)
            )
            if successful_searches >= self._search_call_cap:
                return self._deny(
                    session_id,
                    tool_name,
                    f"Search limit reached ({successful_searches}/{self._search_call_cap} per task). "
                    "Synthesize an answer from the existing results instead of searching again.",
                )

        streak = _failure_streak(history, tool_name)
        if streak >= self._max_consecutive_failures:
            return self._deny(
                session_id,
                tool_name,
                f"{tool_name} failed {streak} times in a row. "
                "Stop retrying and report the failure to the user.",
            )

        if state.phase == "completed":
            return self._deny(
                session_id,
                tool_name,
                "Task is already complete. Start a new task to perform additional actions.",
            )

        query = str((parameters or {}).get("query") or "")
        if state.artifact_generated is not None and is_search_tool(tool_name) and _is_progress_query(query):
            return self._deny(
                session_id,
                tool_name,
                f"{state.artifact_generated.name} has been generated. "
                "Report completion to the user instead of searching again.",
            )

        return ToolCallDecision(allowed=True)

    def reflect(self, session_id: str) -> ReflectionResult:
        state = self._get(session_id)
        if state is None:
            return ReflectionResult(
                is_complete=False,
                should_continue=False,
                next_action="respond",
                reasoning="No active task found",
            )

        state.updated_at = datetime.now(UTC)
        result = self._assess(state)
        logger.info(
            "Task reflection session_id=%s phase=%s next_action=%s reasoning=%s",
            session_id,
            state.phase,
            result.next_action,
            result.reasoning,
        )
        return result

    def get_prompt_context(self, session_id: str, *, today: date | None = None) -> str:
        state = self._get(session_id)
        if state is None:
            return ""
        return render_prompt_context(state, search_call_cap=self._search_call_cap, today=today)

    def get_task_state(self, session_id: str) -> TaskState | None:
        state = self._get(session_id)
        return state.model_copy(deep=True) if state is not None else None

    def get_task_summary(self, session_id: str) -> dict[str, object]:
        return render_task_summary(self._get(session_id))

    def finalize(self, session_id: str) -> ReflectionResult:
        """Record that the model gave its final answer, then reassess the task.

        Pending model steps are completed; tool steps stay pending.
        """
        state = self._get(session_id)
        if state is not None:
            now = datetime.now(UTC)
            for step in state.plan:
                if step.status == "pending" and step.kind in MODEL_STEPS:
                    _mark_completed(step, now)
        return self.reflect(session_id)

    def complete_task(self, session_id: str) -> None:
        state = self._get(session_id)
        if state is not None:
            now = datetime.now(UTC)
            for step in state.plan:
                if step.status == "pending":
                    _mark_completed(step, now)
            state.phase = "completed"
            state.updated_at = now

    def fail_task(self, session_id: str, reason: str) -> None:
        state = self._get(session_id)
        if state is not None:
            state.phase = "failed"
            state.failure_reason = reason
            state.updated_at = datetime.now(UTC)
            logger.info("Task failed session_id=%s reason=%s", session_id, reason)

    def clear_task(self, session_id: str) -> None:
        with self._lock:
            self._states.pop(session_id, None)

    def _get(self, session_id: str) -> TaskState | None:
        with self._lock:
            return self._states.get(session_id)

    def _assess(self, state: TaskState) -> ReflectionResult:
        if state.plan and state.completed_steps == len(state.plan) and _expected_artifacts_ready(state):
            state.phase = "completed"
            return ReflectionResult(
                is_complete=True,
                should_continue=False,
                next_action="complete",
                reasoning=f"Task completed with all {len(state.plan)} steps finished.",
            )

        if state.goal.requires_artifact and state.artifact_generated is not None:
            state.phase = "completed"
            return ReflectionResult(
                is_complete=True,
                should_continue=False,
                next_action="complete",
                reasoning=f"{state.artifact_generated.name} generated. Task complete.",
            )

        if state.search_results and not state.goal.requires_artifact:
            state.phase = "completed"
            return ReflectionResult(
                is_complete=True,
                should_continue=False,
                next_action="respond",
                reasoning=f"Search completed with {len(state.search_results)} result set(s).",
            )

        for index, step in enumerate(state.plan):
            if step.status == "pending":
                state.current_step_index = index
                state.phase = "executing"
                return ReflectionResult(
                    is_complete=False,
                    should_continue=True,
                    next_action="continue",
                    reasoning=f"Proceeding to step {index + 1}: {step.description}",
                )

        return ReflectionResult(
            is_complete=False,
            should_continue=False,
            next_action="need_more_info",
            reasoning="Task execution stalled, waiting for more information or input",
        )

    def _deny(self, session_id: str, tool_name: str, reason: str) -> ToolCallDecision:
        logger.info("Tool call denied session_id=%s tool=%s reason=%s", session_id, tool_name, reason)
        return ToolCallDecision(allowed=False, reason=reason)


def _failure_streak(history: list[ToolCallRecord], tool_name: str) -> int:
    streak = 0
    for record in reversed(history):
        if record.tool_name != tool_name:
            continue
        if record.success:
            break
        streak += 1
    return streak


def _is_progress_query(query: str) -> bool:
    lowered = query.lower()
    return any(phrase in lowered for phrase in PROGRESS_PHRASES)


def _get(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _plain(result: Any) -> Any:
    dump = getattr(result, "model_dump", None)
    if callable(dump):
        return dump(mode="json")
    return result


def _first_artifact(result: Any) -> Any:
    artifacts = _get(result, "artifacts") or []
    return artifacts[0] if artifacts else None


def _search_results(result: Any) -> list[Any]:
    for artifact in _get(result, "artifacts") or []:
        if _get(artifact, "name") != SEARCH_RESULTS_ARTIFACT:
            continue
        content = _get(artifact, "content")
        if isinstance(content, str):
            try:
                return [json.loads(content)]
            except json.JSONDecodeError:
                logger.warning("Unreadable search results artifact name=%s", SEARCH_RESULTS_ARTIFACT)
                return []
    output = _get(result, "output")
    return [output] if output else []


def _complete_matching_step(state: TaskState, tool_name: str, result: Any, now: datetime) -> None:
    """Complete the next pending step served by ``tool_name``.

    Pending model steps in front of it are completed on the way, since a later
    tool step only runs once the model has done that work. ``finalize_output``
    is never passed over.
    """
    passed: list[ExecutionStep] = []
    for step in state.plan[state.current_step_index:]:
        if step.status == "completed":
            continue
        if tool_matches_step(tool_name, step.kind):
            for model_step in passed:
                _mark_completed(model_step, now)
            _mark_completed(step, now, tool_name=tool_name, result=result)
            return
        if step.kind not in MODEL_STEPS or step.kind == "finalize_output":
            return
        passed.append(step)


def _mark_completed(
    step: ExecutionStep,
    now: datetime,
    *,
    tool_name: str | None = None,
    result: Any = None,
) -> None:
    step.status = "completed"
    step.completed_at = now
    step.tool_name = tool_name
    step.result = result


def _expected_artifacts_ready(state: TaskState) -> bool:
    produced = {
        "ppt": state.artifact_generated is not None,
        "search_results": bool(state.search_results),
    }
    return all(produced.get(kind, False) for kind in state.goal.expected_artifacts)
