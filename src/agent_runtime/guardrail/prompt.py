"""Render task state for the model's instructions and for user display."""

from __future__ import annotations

from datetime import date

from agent_runtime.guardrail.models import TaskState

OPERATING_INSTRUCTIONS = (
    "Complete the task efficiently without redundant tool calls.",
    "Search tools are high-cost: call them at most {search_call_cap} time(s) per task and "
    "synthesize from existing results afterwards.",
    "Never silently relax an explicit time, date or source constraint; report that no "
    "matching results were found instead.",
    "When the requested artifact is generated, the task is complete.",
    "When the user asks about progress, report the current state without new tool calls.",
    "If a tool keeps failing, stop retrying and report the failure.",
)


def render_prompt_context(
    state: TaskState,
    *,
    search_call_cap: int,
    today: date | None = None,
) -> str:
    current = today or date.today()
    lines = [
        "TASK CONTEXT:",
        f"- Current date: {current.isoformat()}",
        f"- Goal: {state.goal.description}",
        f"- Phase: {state.phase}",
        f"- Progress: {state.completed_steps}/{len(state.plan)} steps completed",
        "- Plan:",
    ]
    for index, step in enumerate(state.plan, start=1):
        marker = "x" if step.status == "completed" else " "
        lines.append(f"  {index}. [{marker}] {step.description} ({step.kind})")
    if state.artifact_generated is not None:
        lines.append(f"- Artifact generated: {state.artifact_generated.name}")
    if state.search_results:
        lines.append(f"- Search results: {len(state.search_results)} result set(s) collected")

    lines.append("")
    lines.append("INSTRUCTIONS:")
    for instruction in OPERATING_INSTRUCTIONS:
        lines.append(f"- {instruction.format(search_call_cap=search_call_cap)}")
    return "\n".join(lines)


def render_task_summary(state: TaskState | None) -> dict[str, object]:
    if state is None:
        return {"active": False, "summary": "No active task."}

    total = len(state.plan)
    completed = state.completed_steps
    progress = round(completed / total * 100) if total else 0

    current = state.current_step
    current_step = current.description if current and current.status != "completed" else None

    summary = f"Task progress: {progress}% ({completed}/{total} steps completed)"
    if current_step:
        summary += f". Current step: {current_step}"
    elif state.phase in ("completed", "failed"):
        summary += f". Status: {state.phase}"
    if state.artifact_generated is not None:
        summary += f". Generated: {state.artifact_generated.name} ({state.artifact_generated.type})"

    return {
        "active": True,
        "phase": state.phase,
        "progress_percent": progress,
        "completed_steps": completed,
        "total_steps": total,
        "current_step": current_step,
        "artifact": state.artifact_generated.model_dump() if state.artifact_generated else None,
        "failure_reason": state.failure_reason,
        "summary": summary,
    }
