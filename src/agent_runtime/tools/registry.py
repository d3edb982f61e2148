"""Tool registry and the function catalogue offered to the model."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel

from agent_runtime.tools.backends import ArxivSearchBackend, InMemorySearchBackend, SearchBackend
from agent_runtime.tools.schemas import SearchInput, SearchOutput, ToolOutput
from agent_runtime.tools.search import Clock, build_search_tool


@dataclass(frozen=True)
class ToolSpec:
    input_model: type[BaseModel]
    output_model: type[ToolOutput]
    fn: Callable[..., ToolOutput]
    description: str
    implementation: str = "builtin"


@dataclass(frozen=True)
class BackendResolution:
    web: SearchBackend
    paper: SearchBackend
    requested: str
    fallback_reason: str | None = None


def resolve_backends(requested: str) -> BackendResolution:
    normalized = requested.lower().strip()
    if normalized == "arxiv":
        return BackendResolution(
            web=InMemorySearchBackend(name="offline-web"),
            paper=ArxivSearchBackend(),
            requested=normalized,
        )
    fallback = None if normalized == "offline" else f"unsupported search backend: {requested}"
    return BackendResolution(
        web=InMemorySearchBackend(name="offline-web"),
        paper=InMemorySearchBackend(name="offline-papers"),
        requested=normalized,
        fallback_reason=fallback,
    )


def build_registry(
    *,
    web_backend: SearchBackend | None = None,
    paper_backend: SearchBackend | None = None,
    search_max_retries: int = 2,
    year_only_overlap: bool = True,
    clock: Clock | None = None,
) -> dict[str, ToolSpec]:
    web = web_backend or InMemorySearchBackend(name="offline-web")
    paper = paper_backend or InMemorySearchBackend(name="offline-papers")
    return {
        "web_search": ToolSpec(
            input_model=SearchInput,
            output_model=SearchOutput,
            fn=build_search_tool(
                web,
                max_retries=search_max_retries,
                year_only_overlap=year_only_overlap,
                clock=clock,
            ),
            description=(
                "Search the web. High cost: call at most once per task. Pass date_range "
                "(last-N-days|weeks|months|years, YYYY, YYYY-YYYY) for explicit time limits."
            ),
            implementation=web.name,
        ),
        "paper_search": ToolSpec(
            input_model=SearchInput,
            output_model=SearchOutput,
            fn=build_search_tool(
                paper,
                max_retries=search_max_retries,
                year_only_overlap=year_only_overlap,
                clock=clock,
            ),
            description=(
                "Search academic papers. High cost: call at most once per task. Explicit "
                "time limits in the query or date_range are enforced strictly."
            ),
            implementation=paper.name,
        ),
    }


def tool_catalogue(registry: dict[str, ToolSpec]) -> list[dict[str, Any]]:
    """OpenAI-style function definitions for every registered tool."""
    return [
        {
            "type": "function",
            "function": {
                "name": name,
                "description": spec.description,
                "parameters": spec.input_model.model_json_schema(),
            },
        }
        for name, spec in sorted(registry.items())
    ]
