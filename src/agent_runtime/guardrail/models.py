"""Task state owned by the guardrail."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

TaskPhase = Literal["planning", "executing", "completed", "failed"]
StepKind = Literal[
    "video_probe",
    "video_download",
    "video_transcript",
    "web_search",
    "paper_selection",
    "summarization",
    "ppt_generation",
    "finalize_output",
]
NextAction = Literal["continue", "respond", "complete", "need_more_info"]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TaskGoal(BaseModel):
    description: str
    requires_search: bool = False
    requires_artifact: bool = False
    requires_video_probe: bool = False
    requires_video_download: bool = False
    requires_transcript: bool = False
    requires_summary: bool = False
    video_url: str | None = None
    expected_artifacts: list[str] = Field(default_factory=list)


class ExecutionStep(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex[:12])
    kind: StepKind
    description: str
    status: Literal["pending", "completed"] = "pending"
    completed_at: datetime | None = None
    tool_name: str | None = None
    result: Any = None


class GeneratedArtifact(BaseModel):
    type: str
    name: str
    file_id: str | None = None
    size: int | None = None


class ToolCallRecord(BaseModel):
    tool_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)
    success: bool
    result: Any = None


class TaskState(BaseModel):
    session_id: str
    user_id: str
    phase: TaskPhase = "planning"
    goal: TaskGoal
    plan: list[ExecutionStep] = Field(default_factory=list)
    current_step_index: int = 0
    tool_call_history: list[ToolCallRecord] = Field(default_factory=list)
    search_results: list[Any] = Field(default_factory=list)
    artifact_generated: GeneratedArtifact | None = None
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def completed_steps(self) -> int:
        return sum(1 for step in self.plan if step.status == "completed")

    @property
    def current_step(self) -> ExecutionStep | None:
        if 0 <= self.current_step_index < len(self.plan):
            return self.plan[self.current_step_index]
        return None


class ToolCallDecision(BaseModel):
    allowed: bool
    reason: str | None = None


class ReflectionResult(BaseModel):
    is_complete: bool
    should_continue: bool
    next_action: NextAction
    reasoning: str
