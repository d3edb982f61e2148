"""Strict Pydantic schemas for tool inputs, outputs and results."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agent_runtime.temporal.models import FilterStats


class StrictModel(BaseModel):
    """Base model for strict schema validation."""

    model_config = ConfigDict(extra="forbid")


class Artifact(StrictModel):
    """Side product of a tool call; a ``file_id`` means it was stored."""

    type: str
    name: str
    mime_type: str = "application/octet-stream"
    content: str | None = None
    file_id: str | None = None
    size: int | None = Field(default=None, ge=0)


class ToolOutput(StrictModel):
    """What a tool function returns; ``output`` is the text shown to the model."""

    output: str
    artifacts: list[Artifact] = Field(default_factory=list)


class ToolResult(BaseModel):
    success: bool
    output: str = ""
    error: str | None = None
    duration_ms: float = 0.0
    attempts: int = 1
    implementation: str = "unknown"
    artifacts: list[Artifact] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)


class SearchInput(StrictModel):
    query: str = Field(min_length=1)
    max_results: int = Field(default=10, ge=1, le=50)
    date_range: str | None = Field(
        default=None,
        description="Optional range token: last-N-days|weeks|months|years, YYYY or YYYY-YYYY",
    )


class SearchHit(BaseModel):
    title: str
    url: str
    snippet: str = ""
    published: str | None = None
    source: str = "web"
    authors: list[str] = Field(default_factory=list)


class SearchOutput(ToolOutput):
    query: str
    results: list[SearchHit] = Field(default_factory=list)
    window: dict[str, Any] | None = None
    attempts: int = 1
    excluded_reasons: list[str] = Field(default_factory=list)
    temporal_filter_stats: FilterStats = Field(default_factory=FilterStats)
