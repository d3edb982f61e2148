from datetime import date

from agent_runtime.guardrail import KeywordGoalInference, TaskGoal, TaskGuardrail, build_plan

SEARCH_ARTIFACT = {
    "output": "3 results",
    "artifacts": [{"type": "data", "name": "search-results.json", "content": '{"results": [1, 2, 3]}'}],
}
DECK = {"output": "deck ready", "artifacts": [{"type": "file", "name": "agents.pptx", "file_id": "f-1", "size": 2048}]}


def _plan_kinds(guardrail: TaskGuardrail, session_id: str) -> list[str]:
    state = guardrail.get_task_state(session_id)
    return [step.kind for step in state.plan]


def test_research_and_presentation_plan() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "Find recent papers on RAG and make a presentation")

    assert _plan_kinds(guardrail, "s1") == [
        "web_search",
        "paper_selection",
        "summarization",
        "ppt_generation",
        "finalize_output",
    ]


def test_video_summary_plan_needs_transcript_not_search() -> None:
    goal = KeywordGoalInference().infer("Summarize https://www.youtube.com/watch?v=abc123 for me")

    assert goal.video_url == "https://www.youtube.com/watch?v=abc123"
    assert goal.requires_transcript is True
    assert goal.requires_search is False
    assert [step.kind for step in build_plan(goal)] == ["video_probe", "video_transcript", "finalize_output"]


def test_plan_always_ends_with_finalize_step() -> None:
    plan = build_plan(TaskGoal(description="hello"))

    assert [step.kind for step in plan] == ["finalize_output"]


def test_decide_without_task_allows_everything() -> None:
    decision = TaskGuardrail().decide("unknown", "web_search", {"query": "x"})

    assert decision.allowed is True


def test_decide_is_idempotent() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "search for latest news on agents")
    guardrail.record_call("s1", "web_search", {"query": "agents"}, SEARCH_ARTIFACT, True)

    first = guardrail.decide("s1", "web_search", {"query": "agents again"})
    second = guardrail.decide("s1", "web_search", {"query": "agents again"})

    assert first == second
    assert first.allowed is False
    assert len(guardrail.get_task_state("s1").tool_call_history) == 1


def test_search_cap_applies_across_search_tools_and_parameters() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "find papers on diffusion models")
    assert guardrail.decide("s1", "web_search", {"query": "diffusion"}).allowed is True

    guardrail.record_call("s1", "web_search", {"query": "diffusion"}, SEARCH_ARTIFACT, True)
    decision = guardrail.decide("s1", "paper_search", {"query": "something else", "date_range": "2024"})

    assert decision.allowed is False
    assert "Search limit reached" in decision.reason
    assert "existing results" in decision.reason


def test_failed_searches_do_not_consume_the_cap() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "find papers on diffusion models")
    guardrail.record_call("s1", "web_search", {"query": "diffusion"}, {"error": "timeout"}, False)

    assert guardrail.decide("s1", "web_search", {"query": "diffusion"}).allowed is True


def test_consecutive_failures_block_the_same_tool() -> None:
    guardrail = TaskGuardrail(max_consecutive_failures=2)
    guardrail.start_task("s1", "u1", "download https://youtu.be/xyz")
    guardrail.record_call("s1", "video_download", {}, None, False)
    guardrail.record_call("s1", "video_download", {}, None, False)

    decision = guardrail.decide("s1", "video_download", {})

    assert decision.allowed is False
    assert "Stop retrying" in decision.reason
    assert guardrail.decide("s1", "video_probe", {}).allowed is True


def test_interleaved_success_resets_failure_streak() -> None:
    guardrail = TaskGuardrail(max_consecutive_failures=2)
    guardrail.start_task("s1", "u1", "download https://youtu.be/xyz")
    guardrail.record_call("s1", "video_download", {}, None, False)
    guardrail.record_call("s1", "video_download", {}, {"output": "saved"}, True)
    guardrail.record_call("s1", "video_download", {}, None, False)

    assert guardrail.decide("s1", "video_download", {}).allowed is True


def test_completed_task_rejects_further_calls() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "make slides about agents")
    guardrail.complete_task("s1")

    decision = guardrail.decide("s1", "ppt_generator", {})

    assert decision.allowed is False
    assert "already complete" in decision.reason


def test_progress_query_after_artifact_is_rejected() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "make slides about agents")
    guardrail.record_call("s1", "ppt_generator", {"topic": "agents"}, DECK, True)

    progress = guardrail.decide("s1", "web_search", {"query": "what is the status of my deck"})
    regular = guardrail.decide("s1", "web_search", {"query": "agent benchmarks"})

    assert progress.allowed is False
    assert "Report completion" in progress.reason
    assert regular.allowed is True


def test_record_call_completes_matching_step_and_keeps_artifact() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "make slides about agents")
    guardrail.record_call("s1", "ppt_generator", {"topic": "agents"}, DECK, True)

    state = guardrail.get_task_state("s1")

    assert state.plan[0].kind == "ppt_generation"
    assert state.plan[0].status == "completed"
    assert state.plan[0].tool_name == "ppt_generator"
    assert state.artifact_generated.name == "agents.pptx"
    assert state.artifact_generated.file_id == "f-1"


def test_failed_call_does_not_complete_step() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "search for news on agents")
    guardrail.record_call("s1", "web_search", {"query": "agents"}, None, False)

    state = guardrail.get_task_state("s1")

    assert state.plan[0].status == "pending"
    assert state.search_results == []


def test_reflect_completes_when_required_artifact_exists() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "find papers and make a presentation")
    guardrail.record_call("s1", "ppt_generator", {}, DECK, True)

    result = guardrail.reflect("s1")

    assert result.is_complete is True
    assert result.next_action == "complete"
    assert guardrail.get_task_state("s1").phase == "completed"


def test_reflect_completes_search_only_task_with_results() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "search for latest news on LLM agents")
    guardrail.record_call("s1", "web_search", {"query": "LLM agents"}, SEARCH_ARTIFACT, True)

    result = guardrail.reflect("s1")
    state = guardrail.get_task_state("s1")

    assert result.is_complete is True
    assert result.next_action == "respond"
    assert state.search_results == [{"results": [1, 2, 3]}]


def test_reflect_advances_to_first_pending_step() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "find papers and make slides")

    result = guardrail.reflect("s1")
    state = guardrail.get_task_state("s1")

    assert result.should_continue is True
    assert result.next_action == "continue"
    assert state.current_step_index == 0
    assert state.phase == "executing"


def test_reflect_without_task() -> None:
    result = TaskGuardrail().reflect("missing")

    assert result.is_complete is False
    assert result.next_action == "respond"


def test_prompt_context_lists_goal_plan_and_instructions() -> None:
    guardrail = TaskGuardrail(search_call_cap=1)
    guardrail.start_task("s1", "u1", "find papers and make slides")

    context = guardrail.get_prompt_context("s1", today=date(2026, 2, 10))

    assert "Current date: 2026-02-10" in context
    assert "Goal: find papers and make slides" in context
    assert "Phase: planning" in context
    assert "[ ] Search for relevant papers and sources (web_search)" in context
    assert "at most 1 time(s) per task" in context
    assert "Never silently relax" in context
    assert guardrail.get_prompt_context("other") == ""


def test_task_summary_and_lifecycle() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "make slides about agents")
    guardrail.record_call("s1", "ppt_generator", {}, DECK, True)

    summary = guardrail.get_task_summary("s1")

    assert summary["progress_percent"] == 50
    assert summary["artifact"]["name"] == "agents.pptx"

    guardrail.fail_task("s1", "user cancelled")
    state = guardrail.get_task_state("s1")
    assert state.phase == "failed"
    assert state.failure_reason == "user cancelled"

    guardrail.clear_task("s1")
    assert guardrail.get_task_state("s1") is None
    assert guardrail.get_task_summary("s1")["active"] is False


def test_sessions_are_isolated() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("a", "u1", "search for agents")
    guardrail.start_task("b", "u2", "search for agents")
    guardrail.record_call("a", "web_search", {"query": "agents"}, SEARCH_ARTIFACT, True)

    assert guardrail.decide("a", "web_search", {"query": "x"}).allowed is False
    assert guardrail.decide("b", "web_search", {"query": "x"}).allowed is True


def test_later_tool_step_completes_model_steps_in_front_of_it() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "find papers and make slides")
    guardrail.record_call("s1", "web_search", {"query": "agents"}, SEARCH_ARTIFACT, True)
    guardrail.record_call("s1", "ppt_generator", {}, DECK, True)

    state = guardrail.get_task_state("s1")

    assert [(step.kind, step.status) for step in state.plan] == [
        ("web_search", "completed"),
        ("paper_selection", "completed"),
        ("summarization", "completed"),
        ("ppt_generation", "completed"),
        ("finalize_output", "pending"),
    ]
    assert state.plan[3].tool_name == "ppt_generator"
    assert state.plan[1].tool_name is None


def test_tool_step_is_not_skipped_to_reach_a_later_match() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "find papers and make slides")
    guardrail.record_call("s1", "ppt_generator", {}, DECK, True)

    state = guardrail.get_task_state("s1")

    assert state.completed_steps == 0


def test_finalize_completes_every_step_and_the_task() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "search for latest news on LLM agents")
    guardrail.record_call("s1", "web_search", {"query": "LLM agents"}, SEARCH_ARTIFACT, True)

    result = guardrail.finalize("s1")
    state = guardrail.get_task_state("s1")

    assert result.is_complete is True
    assert result.next_action == "complete"
    assert result.reasoning == "Task completed with all 2 steps finished."
    assert state.completed_steps == 2
    assert state.phase == "completed"


def test_finalize_keeps_unrun_tool_steps_pending() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "make slides about agents")

    result = guardrail.finalize("s1")
    state = guardrail.get_task_state("s1")

    assert result.next_action == "continue"
    assert [(step.kind, step.status) for step in state.plan] == [
        ("ppt_generation", "pending"),
        ("finalize_output", "completed"),
    ]


def test_reflect_needs_more_info_when_steps_finish_without_expected_artifact() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "make slides about agents")
    guardrail.record_call("s1", "ppt_generator", {}, {"output": "no file produced", "artifacts": []}, True)

    result = guardrail.finalize("s1")
    state = guardrail.get_task_state("s1")

    assert state.completed_steps == len(state.plan)
    assert state.artifact_generated is None
    assert result.is_complete is False
    assert result.should_continue is False
    assert result.next_action == "need_more_info"


def test_complete_task_marks_remaining_steps_completed() -> None:
    guardrail = TaskGuardrail()
    guardrail.start_task("s1", "u1", "find papers and make slides")

    guardrail.complete_task("s1")
    state = guardrail.get_task_state("s1")

    assert state.phase == "completed"
    assert state.completed_steps == len(state.plan)
