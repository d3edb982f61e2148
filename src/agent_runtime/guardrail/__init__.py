"""Task guardrail: goal tracking, tool-call gating and reflection."""

from agent_runtime.guardrail.goals import GoalInference, KeywordGoalInference, build_plan
from agent_runtime.guardrail.manager import TaskGuardrail
from agent_runtime.guardrail.models import (
    ExecutionStep,
    GeneratedArtifact,
    ReflectionResult,
    TaskGoal,
    TaskState,
    ToolCallDecision,
    ToolCallRecord,
)

__all__ = [
    "ExecutionStep",
    "GeneratedArtifact",
    "GoalInference",
    "KeywordGoalInference",
    "ReflectionResult",
    "TaskGoal",
    "TaskGuardrail",
    "TaskState",
    "ToolCallDecision",
    "ToolCallRecord",
    "build_plan",
]
