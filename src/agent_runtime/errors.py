"""Exceptions that are allowed to unwind out of a turn."""

from __future__ import annotations


class AgentRuntimeError(RuntimeError):
    """Base class for runtime errors raised by this package."""


class TurnFault(AgentRuntimeError):
    """Fatal for the current turn; no assistant message may be recorded as successful."""

    code = "turn_fault"

    def __init__(self, message: str, *, steps_taken: int = 0) -> None:
        super().__init__(message)
        self.steps_taken = steps_taken


class TurnTimeoutError(TurnFault):
    code = "turn_timeout"

    def __init__(self, *, elapsed_s: float, budget_s: float, steps_taken: int = 0) -> None:
        super().__init__(
            f"Turn exceeded wall-clock budget ({elapsed_s:.1f}s > {budget_s:.1f}s)",
            steps_taken=steps_taken,
        )
        self.elapsed_s = elapsed_s
        self.budget_s = budget_s


class ModelStreamError(TurnFault):
    code = "model_stream_error"
