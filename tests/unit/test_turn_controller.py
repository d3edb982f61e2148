import json

import pytest

from agent_runtime.errors import ModelStreamError, TurnTimeoutError
from agent_runtime.guardrail import TaskGuardrail
from agent_runtime.tools.schemas import Artifact, ToolResult
from agent_runtime.turn import (
    ContentChunk,
    DoneChunk,
    ListEventSink,
    ToolCallChunk,
    TurnController,
    TurnMessage,
)


class AlwaysToolModelClient:
    def __init__(self, text: str = "") -> None:
        self.text = text
        self.calls = 0

    def stream_chat(self, messages, tools, options=None):
        self.calls += 1
        if self.text:
            yield ContentChunk(text=self.text)
        yield ToolCallChunk(id=f"call_{self.calls}", name="lookup", arguments_json='{"q": "x"}')
        yield DoneChunk(finish_reason="tool_calls")


class FakeToolRunner:
    def __init__(self, result: ToolResult | None = None, *, error: Exception | None = None, progress=None) -> None:
        self.result = result or ToolResult(success=True, output="ok")
        self.error = error
        self.progress = progress
        self.calls: list[tuple[str, dict]] = []

    def execute(self, name, params, on_progress=None):
        self.calls.append((name, params))
        if self.progress and on_progress is not None:
            on_progress(self.progress)
        if self.error is not None:
            raise self.error
        return self.result


def _tool_payloads(messages: list[TurnMessage]) -> list[dict]:
    return [json.loads(message.content) for message in messages if message.role == "tool"]


def test_tool_free_answer_stops_after_one_iteration(scripted_model) -> None:
    model = scripted_model([[ContentChunk("Hello"), ContentChunk(" world"), DoneChunk("stop")]])
    sink = ListEventSink()
    controller = TurnController(model, FakeToolRunner(), TaskGuardrail())

    result = controller.run("s1", [TurnMessage(role="user", content="hi")], [], sink=sink)

    assert result.finish_reason == "stop"
    assert result.steps_taken == 1
    assert result.content == "Hello world"
    assert len(model.calls) == 1
    assert sink.types() == ["turn.start", "message.delta", "message.delta", "turn.complete"]
    assert [event.data["content"] for event in sink.of_type("message.delta")] == ["Hello", " world"]
    assert result.messages[-1].role == "assistant"
    assert result.messages[-1].content == "Hello world"


def test_always_tool_calling_model_stops_at_max_steps() -> None:
    model = AlwaysToolModelClient()
    runner = FakeToolRunner()
    sink = ListEventSink()
    controller = TurnController(model, runner, TaskGuardrail(), max_steps=3)

    result = controller.run("s1", [TurnMessage(role="user", content="loop")], [], sink=sink)

    assert result.finish_reason == "max_steps"
    assert result.steps_taken == 3
    assert result.content
    assert model.calls == 3
    assert len(runner.calls) == 3
    limit = sink.of_type("agent.step_limit")
    assert len(limit) == 1
    assert limit[0].data["steps_taken"] == 3
    assert sink.types()[-1] == "turn.complete"
    assert len(sink.of_type("thinking.start")) == 2


def test_step_limit_preserves_accumulated_text() -> None:
    model = AlwaysToolModelClient(text="Working. ")
    controller = TurnController(model, FakeToolRunner(), TaskGuardrail(), max_steps=2)

    result = controller.run("s1", [TurnMessage(role="user", content="loop")], [])

    assert result.finish_reason == "max_steps"
    assert result.content == "Working. Working. "


def test_missing_done_marker_is_a_turn_fault(scripted_model) -> None:
    model = scripted_model([[ContentChunk("partial")]])
    sink = ListEventSink()
    controller = TurnController(model, FakeToolRunner(), TaskGuardrail())

    with pytest.raises(ModelStreamError):
        controller.run("s1", [TurnMessage(role="user", content="hi")], [], sink=sink)

    assert sink.types()[-1] == "turn.error"
    assert sink.events[-1].data["code"] == "model_stream_error"
    assert "turn.complete" not in sink.types()


def test_model_exception_is_wrapped_as_stream_error() -> None:
    class BrokenModelClient:
        def stream_chat(self, messages, tools, options=None):
            raise ConnectionError("socket closed")
            yield  # pragma: no cover

    controller = TurnController(BrokenModelClient(), FakeToolRunner(), TaskGuardrail())

    with pytest.raises(ModelStreamError, match="socket closed"):
        controller.run("s1", [TurnMessage(role="user", content="hi")], [])


def test_wall_clock_budget_raises_timeout_right_after_step() -> None:
    clock = {"now": 0.0}

    class SlowToolRunner(FakeToolRunner):
        def execute(self, name, params, on_progress=None):
            clock["now"] += 500.0
            return super().execute(name, params, on_progress)

    model = AlwaysToolModelClient()
    sink = ListEventSink()
    controller = TurnController(
        model,
        SlowToolRunner(),
        TaskGuardrail(),
        max_steps=10,
        max_execution_time_s=300.0,
        clock=lambda: clock["now"],
    )

    with pytest.raises(TurnTimeoutError) as excinfo:
        controller.run("s1", [TurnMessage(role="user", content="hi")], [], sink=sink)

    assert excinfo.value.steps_taken == 1
    assert model.calls == 1
    assert sink.types()[-1] == "turn.error"
    assert "thinking.start" not in sink.types()


def test_denied_call_becomes_failed_tool_result(scripted_model) -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "search for latest news on agents")
    guardrail.record_call("s1", "web_search", {"query": "agents"}, {"output": "found"}, True)
    model = scripted_model(
        [
            [ToolCallChunk(id="call_1", name="web_search", arguments_json='{"query": "more agents"}'), DoneChunk()],
            [ContentChunk("Here is what I found."), DoneChunk("stop")],
        ]
    )
    runner = FakeToolRunner()
    sink = ListEventSink()
    controller = TurnController(model, runner, guardrail)

    result = controller.run("s1", [TurnMessage(role="user", content="more")], [], sink=sink)

    assert result.finish_reason == "stop"
    assert runner.calls == []
    payload = _tool_payloads(result.messages)[0]
    assert payload["success"] is False
    assert "Search limit reached" in payload["error"]
    error_event = sink.of_type("tool.error")[0]
    assert error_event.data["denied"] is True
    assert error_event.data["tool_call_id"] == "call_1"
    second_call_messages = model.calls[1]
    assert second_call_messages[-1].role == "tool"
    assert second_call_messages[-1].tool_call_id == "call_1"


def test_unparseable_arguments_are_reported_to_the_model(scripted_model) -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "search for agents")
    model = scripted_model(
        [
            [ToolCallChunk(id="call_1", name="web_search", arguments_json="{not json"), DoneChunk()],
            [ContentChunk("Sorry."), DoneChunk("stop")],
        ]
    )
    runner = FakeToolRunner()
    controller = TurnController(model, runner, guardrail)

    result = controller.run("s1", [TurnMessage(role="user", content="go")], [])

    assert runner.calls == []
    payload = _tool_payloads(result.messages)[0]
    assert payload["success"] is False
    assert payload["error"].startswith("Invalid tool arguments")
    history = guardrail.get_task_state("s1").tool_call_history
    assert history[-1].tool_name == "web_search"
    assert history[-1].success is False


def test_tool_exception_is_recorded_and_turn_continues(scripted_model) -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "download https://youtu.be/xyz")
    model = scripted_model(
        [
            [ToolCallChunk(id="call_1", name="video_download", arguments_json="{}"), DoneChunk()],
            [ContentChunk("The download failed."), DoneChunk("stop")],
        ]
    )
    controller = TurnController(model, FakeToolRunner(error=RuntimeError("boom")), guardrail)

    result = controller.run("s1", [TurnMessage(role="user", content="go")], [])

    assert result.finish_reason == "stop"
    payload = _tool_payloads(result.messages)[0]
    assert payload == {"success": False, "output": "", "error": "boom", "artifacts": []}
    assert guardrail.get_task_state("s1").tool_call_history[-1].success is False


def test_event_order_for_a_tool_round_trip(scripted_model) -> None:
    model = scripted_model(
        [
            [
                ContentChunk("Let me check."),
                ToolCallChunk(id="call_7", name="lookup", arguments_json='{"q": "x"}'),
                DoneChunk("tool_calls"),
            ],
            [ContentChunk("Done."), DoneChunk("stop")],
        ]
    )
    runner = FakeToolRunner(
        ToolResult(
            success=True,
            output="report ready",
            artifacts=[Artifact(type="file", name="report.md", file_id="file-9", size=12)],
        ),
        progress="halfway",
    )
    sink = ListEventSink()
    controller = TurnController(model, runner, TaskGuardrail())

    result = controller.run("s1", [TurnMessage(role="user", content="go")], [], sink=sink)

    assert sink.types() == [
        "turn.start",
        "message.delta",
        "tool.start",
        "tool.progress",
        "tool.complete",
        "file.created",
        "thinking.start",
        "message.delta",
        "turn.complete",
    ]
    tool_events = [event for event in sink.events if event.type.startswith("tool.")]
    assert {event.data["tool_call_id"] for event in tool_events} == {"call_7"}
    assert sink.of_type("file.created")[0].data["file_id"] == "file-9"
    assert result.content == "Let me check.Done."
    assert [message.role for message in result.messages] == ["assistant", "tool", "assistant"]
    assert result.messages[0].tool_calls[0].id == "call_7"


def test_calls_from_one_generation_run_in_proposal_order(scripted_model) -> None:
    model = scripted_model(
        [
            [
                ToolCallChunk(id="a", name="first", arguments_json="{}"),
                ToolCallChunk(id="b", name="second", arguments_json="{}"),
                DoneChunk(),
            ],
            [ContentChunk("ok"), DoneChunk()],
        ]
    )
    runner = FakeToolRunner()
    controller = TurnController(model, runner, TaskGuardrail())

    controller.run("s1", [TurnMessage(role="user", content="go")], [])

    assert [name for name, _ in runner.calls] == ["first", "second"]


def test_task_context_is_merged_into_system_message(scripted_model) -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "find papers on agents")
    model = scripted_model([[ContentChunk("ok"), DoneChunk()]])
    controller = TurnController(model, FakeToolRunner(), guardrail)

    controller.run(
        "s1",
        [TurnMessage(role="system", content="Base prompt."), TurnMessage(role="user", content="go")],
        [],
    )

    sent = model.calls[0]
    assert sent[0].role == "system"
    assert sent[0].content.startswith("Base prompt.")
    assert "TASK CONTEXT:" in sent[0].content
    assert sent[1].content == "go"


def test_final_answer_finalizes_the_task(scripted_model) -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "search for latest news on agents")
    model = scripted_model(
        [
            [ToolCallChunk(id="call_1", name="web_search", arguments_json='{"query": "agents"}'), DoneChunk()],
            [ContentChunk("Here is the news."), DoneChunk("stop")],
        ]
    )
    runner = FakeToolRunner(ToolResult(success=True, output="2 results"))
    controller = TurnController(model, runner, guardrail)

    controller.run("s1", [TurnMessage(role="user", content="go")], [])

    state = guardrail.get_task_state("s1")
    assert [step.status for step in state.plan] == ["completed", "completed"]
    assert state.phase == "completed"


def test_step_limit_does_not_finalize_the_task() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "make slides about agents")
    controller = TurnController(AlwaysToolModelClient(), FakeToolRunner(), guardrail, max_steps=2)

    controller.run("s1", [TurnMessage(role="user", content="go")], [])

    assert guardrail.get_task_state("s1").plan[-1].status == "pending"
