"""Schema-enforcing tool execution gateway with timeout/retry telemetry."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from typing import Any

from agent_runtime.tools.registry import ToolSpec, build_registry
from agent_runtime.tools.schemas import ToolResult
from agent_runtime.tools.search import ProgressCallback

logger = logging.getLogger(__name__)


class ToolExecutor:
    """Execute registered tools with strict validation and retry/timeout controls.

    Failures never raise: they come back as ``ToolResult(success=False)``.
    """

    def __init__(
        self,
        *,
        registry: dict[str, ToolSpec] | None = None,
        tool_timeout_s: float = 60.0,
        max_retries: int = 0,
        backoff_s: float = 0.0,
    ) -> None:
        self.registry = registry if registry is not None else build_registry()
        self.tool_timeout_s = tool_timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s

    def execute(
        self,
        name: str,
        params: Mapping[str, Any],
        on_progress: ProgressCallback | None = None,
    ) -> ToolResult:
        started_at = time.perf_counter()
        attempts = 0
        final_error = "unknown error"
        spec = self.registry.get(name)
        implementation = spec.implementation if spec is not None else "unknown"

        for attempt in range(self.max_retries + 1):
            attempts = attempt + 1
            try:
                output = self._execute_once(name, dict(params), on_progress)
                return ToolResult(
                    success=True,
                    output=output.output,
                    artifacts=output.artifacts,
                    data=output.model_dump(mode="json", exclude={"output", "artifacts"}),
                    implementation=implementation,
                    attempts=attempts,
                    duration_ms=_duration_ms(started_at),
                )
            except Exception as exc:  # noqa: BLE001
                final_error = str(exc) or exc.__class__.__name__
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)

        logger.warning(
            "Tool execution failed tool=%s attempts=%d error=%s", name, attempts, final_error
        )
        return ToolResult(
            success=False,
            error=final_error,
            implementation=implementation,
            attempts=attempts,
            duration_ms=_duration_ms(started_at),
        )

    def _execute_once(
        self,
        name: str,
        params: dict[str, Any],
        on_progress: ProgressCallback | None,
    ):
        spec = self.registry.get(name)
        if spec is None:
            raise ValueError(f"Unknown tool: {name}")

        payload = spec.input_model.model_validate(params)
        # a hung tool must not hold the turn past its timeout
        pool = ThreadPoolExecutor(max_workers=1)
        try:
            future = pool.submit(spec.fn, payload, on_progress)
            try:
                raw_output = future.result(timeout=self.tool_timeout_s)
            except TimeoutError as exc:
                raise TimeoutError(f"Tool '{name}' timed out after {self.tool_timeout_s:.2f}s") from exc
        finally:
            pool.shutdown(wait=False)

        return spec.output_model.model_validate(raw_output)


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
