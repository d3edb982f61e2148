"""Model/tool continuation loop for a single user turn.

The loop is a LangGraph state machine:

    generate -> (no tool calls) -> finish
    generate -> execute_tools -> advance -> generate | step_limit

Per-turn collaborators (event sink, clock, deadline) live on a small context
object captured by the node closures, so the graph state only carries
conversation data.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, TypedDict

from langgraph.graph import END, StateGraph

from agent_runtime.errors import ModelStreamError, TurnFault, TurnTimeoutError
from agent_runtime.guardrail.manager import TaskGuardrail
from agent_runtime.tools.schemas import ToolResult
from agent_runtime.turn import events as ev
from agent_runtime.turn.events import EventSink, NullEventSink, TurnEvent
from agent_runtime.turn.messages import ToolCallRequest, TurnMessage
from agent_runtime.turn.model_client import ContentChunk, DoneChunk, ModelClient, ToolCallChunk

logger = logging.getLogger(__name__)


class ToolRunner(Protocol):
    def execute(
        self,
        name: str,
        params: dict[str, Any],
        on_progress: Callable[[str], None] | None = None,
    ) -> ToolResult: ...


@dataclass
class TurnResult:
    content: str
    finish_reason: str
    steps_taken: int
    messages: list[TurnMessage]


class LoopState(TypedDict, total=False):
    session_id: str
    messages: list[TurnMessage]
    new_messages: list[TurnMessage]
    tools: list[dict[str, Any]]
    options: dict[str, Any]
    iterations: int
    tool_steps: int
    content: str
    pending_calls: list[ToolCallRequest]
    step_text: str
    finish_reason: str


@dataclass
class _TurnContext:
    session_id: str
    sink: EventSink
    started_at: float
    iterations: int = 0

    def emit(self, event_type: str, **data: Any) -> None:
        self.sink.emit(TurnEvent(type=event_type, session_id=self.session_id, data=data))


class TurnController:
    """Drives one user turn until a tool-free answer, the step limit or the time budget.

    Tool calls from one generation run sequentially in proposal order. Every
    call is checked by the guardrail first; denials and tool failures are
    reported back to the model as failed tool results. Only ``TurnFault``
    subclasses escape ``run``.
    """

    def __init__(
        self,
        model_client: ModelClient,
        tool_runner: ToolRunner,
        guardrail: TaskGuardrail,
        *,
        max_steps: int = 10,
        max_execution_time_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.model_client = model_client
        self.tool_runner = tool_runner
        self.guardrail = guardrail
        self.max_steps = max_steps
        self.max_execution_time_s = max_execution_time_s
        self._clock = clock

    def run(
        self,
        session_id: str,
        messages: Sequence[TurnMessage],
        tools: Sequence[dict[str, Any]],
        options: dict[str, Any] | None = None,
        sink: EventSink | None = None,
    ) -> TurnResult:
        ctx = _TurnContext(session_id=session_id, sink=sink or NullEventSink(), started_at=self._clock())
        ctx.emit(ev.TURN_START, max_steps=self.max_steps)

        history = self._with_task_context(session_id, list(messages))
        initial: LoopState = {
            "session_id": session_id,
            "messages": history,
            "new_messages": [],
            "tools": list(tools),
            "options": dict(options or {}),
            "iterations": 0,
            "tool_steps": 0,
            "content": "",
            "pending_calls": [],
            "step_text": "",
            "finish_reason": "",
        }
        graph = self._build_graph(ctx)
        try:
            final = graph.invoke(initial, config={"recursion_limit": self.max_steps * 3 + 10})
        except TurnFault as exc:
            exc.steps_taken = max(exc.steps_taken, ctx.iterations)
            logger.error(
                "Turn failed session_id=%s code=%s steps=%d error=%s",
                session_id,
                exc.code,
                exc.steps_taken,
                exc,
            )
            ctx.emit(ev.TURN_ERROR, code=exc.code, message=str(exc), steps_taken=exc.steps_taken)
            raise

        result = TurnResult(
            content=final["content"],
            finish_reason=final["finish_reason"],
            steps_taken=final["iterations"],
            messages=list(final["new_messages"]),
        )
        ctx.emit(ev.TURN_COMPLETE, finish_reason=result.finish_reason, steps_taken=result.steps_taken)
        return result

    def _build_graph(self, ctx: _TurnContext):
        def _route_after_generate(state: LoopState) -> str:
            return "tools" if state.get("pending_calls") else "done"

        def _route_after_advance(state: LoopState) -> str:
            return "limit" if state["iterations"] >= self.max_steps else "continue"

        graph = StateGraph(LoopState)
        graph.add_node("generate", lambda state: self._generate(state, ctx))
        graph.add_node("execute_tools", lambda state: self._execute_tools(state, ctx))
        graph.add_node("advance", lambda state: self._advance(state, ctx))
        graph.add_node("finish", lambda state: self._finish(state, ctx))
        graph.add_node("step_limit", lambda state: self._step_limit(state, ctx))

        graph.set_entry_point("generate")
        graph.add_conditional_edges(
            "generate", _route_after_generate, {"tools": "execute_tools", "done": "finish"}
        )
        graph.add_edge("execute_tools", "advance")
        graph.add_conditional_edges(
            "advance", _route_after_advance, {"continue": "generate", "limit": "step_limit"}
        )
        graph.add_edge("finish", END)
        graph.add_edge("step_limit", END)
        return graph.compile()

    def _generate(self, state: LoopState, ctx: _TurnContext) -> LoopState:
        self._check_deadline(ctx)
        iterations = state["iterations"] + 1
        ctx.iterations = iterations

        text_parts: list[str] = []
        calls: list[ToolCallRequest] = []
        done = False
        try:
            for chunk in self.model_client.stream_chat(state["messages"], state["tools"], state["options"]):
                if isinstance(chunk, ContentChunk):
                    if chunk.text:
                        text_parts.append(chunk.text)
                        ctx.emit(ev.MESSAGE_DELTA, content=chunk.text)
                elif isinstance(chunk, ToolCallChunk):
                    calls.append(
                        ToolCallRequest(id=chunk.id, name=chunk.name, arguments_json=chunk.arguments_json)
                    )
                    ctx.emit(ev.TOOL_START, tool_call_id=chunk.id, tool_name=chunk.name, step=iterations)
                elif isinstance(chunk, DoneChunk):
                    done = True
                    break
        except TurnFault:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ModelStreamError(f"Model stream failed: {exc}", steps_taken=iterations) from exc
        if not done:
            raise ModelStreamError("Model stream ended without a completion marker", steps_taken=iterations)

        return {
            "iterations": iterations,
            "content": state["content"] + "".join(text_parts),
            "pending_calls": calls,
            "step_text": "".join(text_parts),
        }

    def _execute_tools(self, state: LoopState, ctx: _TurnContext) -> LoopState:
        session_id = state["session_id"]
        calls = state["pending_calls"]
        step_text = state.get("step_text", "")
        produced = [TurnMessage(role="assistant", content=step_text or None, tool_calls=list(calls))]

        for call in calls:
            produced.append(self._run_call(session_id, call, ctx))

        return {
            "messages": state["messages"] + produced,
            "new_messages": state["new_messages"] + produced,
            "pending_calls": [],
        }

    def _run_call(self, session_id: str, call: ToolCallRequest, ctx: _TurnContext) -> TurnMessage:
        try:
            params = json.loads(call.arguments_json or "{}")
        except json.JSONDecodeError as exc:
            params = None
            parse_error = f"Invalid tool arguments: {exc.msg}"
        else:
            parse_error = None if isinstance(params, dict) else "Tool arguments must be a JSON object"
        if parse_error is not None:
            self.guardrail.record_call(session_id, call.name, {}, None, False)
            ctx.emit(ev.TOOL_ERROR, tool_call_id=call.id, tool_name=call.name, error=parse_error, denied=False)
            return _tool_message(call, success=False, error=parse_error)

        decision = self.guardrail.decide(session_id, call.name, params)
        if not decision.allowed:
            reason = decision.reason or "Tool call rejected"
            ctx.emit(ev.TOOL_ERROR, tool_call_id=call.id, tool_name=call.name, error=reason, denied=True)
            return _tool_message(call, success=False, error=reason)

        def _on_progress(message: str) -> None:
            ctx.emit(ev.TOOL_PROGRESS, tool_call_id=call.id, tool_name=call.name, message=message)

        try:
            result = self.tool_runner.execute(call.name, params, on_progress=_on_progress)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Tool raised tool=%s session_id=%s error=%s", call.name, session_id, exc)
            result = ToolResult(success=False, error=str(exc) or exc.__class__.__name__)

        self.guardrail.record_call(session_id, call.name, params, result, result.success)
        if result.success:
            ctx.emit(
                ev.TOOL_COMPLETE,
                tool_call_id=call.id,
                tool_name=call.name,
                duration_ms=result.duration_ms,
                artifacts=[artifact.name for artifact in result.artifacts],
            )
        else:
            ctx.emit(
                ev.TOOL_ERROR,
                tool_call_id=call.id,
                tool_name=call.name,
                error=result.error or "Tool failed",
                denied=False,
            )
        for artifact in result.artifacts:
            if artifact.file_id:
                ctx.emit(
                    ev.FILE_CREATED,
                    tool_call_id=call.id,
                    file_id=artifact.file_id,
                    name=artifact.name,
                    mime_type=artifact.mime_type,
                    size=artifact.size,
                )
        return _tool_message(
            call,
            success=result.success,
            output=result.output,
            error=result.error,
            artifacts=[artifact.model_dump(exclude={"content"}) for artifact in result.artifacts],
        )

    def _advance(self, state: LoopState, ctx: _TurnContext) -> LoopState:
        tool_steps = state["tool_steps"] + 1
        self._check_deadline(ctx)
        reflection = self.guardrail.reflect(state["session_id"])
        if state["iterations"] < self.max_steps:
            ctx.emit(
                ev.THINKING_START,
                step=tool_steps,
                next_action=reflection.next_action,
                reasoning=reflection.reasoning,
            )
        return {"tool_steps": tool_steps}

    def _finish(self, state: LoopState, ctx: _TurnContext) -> LoopState:
        content = state["content"]
        self.guardrail.finalize(state["session_id"])
        return {
            "finish_reason": "stop",
            "new_messages": state["new_messages"] + [TurnMessage(role="assistant", content=content)],
        }

    def _step_limit(self, state: LoopState, ctx: _TurnContext) -> LoopState:
        content = state["content"] or (
            f"Stopped after reaching the limit of {self.max_steps} steps before a final answer."
        )
        logger.info("Turn hit step limit session_id=%s steps=%d", state["session_id"], state["iterations"])
        ctx.emit(ev.STEP_LIMIT, steps_taken=state["iterations"], max_steps=self.max_steps)
        return {
            "finish_reason": "max_steps",
            "content": content,
            "new_messages": state["new_messages"] + [TurnMessage(role="assistant", content=content)],
        }

    def _check_deadline(self, ctx: _TurnContext) -> None:
        elapsed = self._clock() - ctx.started_at
        if elapsed > self.max_execution_time_s:
            raise TurnTimeoutError(
                elapsed_s=elapsed,
                budget_s=self.max_execution_time_s,
                steps_taken=ctx.iterations,
            )

    def _with_task_context(self, session_id: str, messages: list[TurnMessage]) -> list[TurnMessage]:
        context = self.guardrail.get_prompt_context(session_id)
        if not context:
            return messages
        if messages and messages[0].role == "system":
            system = messages[0]
            merged = f"{system.content}\n\n{context}" if system.content else context
            return [system.model_copy(update={"content": merged})] + messages[1:]
        return [TurnMessage(role="system", content=context)] + messages


def _tool_message(
    call: ToolCallRequest,
    *,
    success: bool,
    output: str = "",
    error: str | None = None,
    artifacts: list[dict[str, Any]] | None = None,
) -> TurnMessage:
    payload = {
        "success": success,
        "output": output,
        "error": error,
        "artifacts": artifacts or [],
    }
    return TurnMessage(
        role="tool",
        tool_call_id=call.id,
        name=call.name,
        content=json.dumps(payload, ensure_ascii=False),
    )
