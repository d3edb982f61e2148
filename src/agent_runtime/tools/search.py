"""Search-class tools with temporal constraint enforcement.

The date window is resolved once, before the first backend call. Retries may
reformulate the query, but a strict window is re-sent unchanged on every
attempt; only flexible windows are dropped after the first attempt.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from agent_runtime.temporal.filtering import filter_by_utc_window, filter_by_window, infer_utc_window
from agent_runtime.temporal.formatting import describe_window
from agent_runtime.temporal.models import AbsoluteDateWindow, FilterStats, UtcWindow
from agent_runtime.temporal.parser import resolve_search_window, window_for_attempt
from agent_runtime.tools.backends import SearchBackend
from agent_runtime.tools.schemas import Artifact, SearchHit, SearchInput, SearchOutput

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]
Clock = Callable[[], datetime]

SEARCH_RESULTS_ARTIFACT = "search-results.json"
STOPWORDS = frozenset(
    {
        "a", "an", "and", "about", "for", "find", "from", "in", "latest", "me", "of",
        "on", "papers", "please", "recent", "search", "show", "the", "to", "what", "with",
    }
)
_WORD = re.compile(r"[A-Za-z0-9][A-Za-z0-9\-]*")


def build_search_tool(
    backend: SearchBackend,
    *,
    max_retries: int = 2,
    year_only_overlap: bool = True,
    clock: Clock | None = None,
) -> Callable[..., SearchOutput]:
    now_fn = clock or (lambda: datetime.now(UTC))

    def _search(payload: SearchInput, on_progress: ProgressCallback | None = None) -> SearchOutput:
        now = now_fn()
        window, utc_window = _resolve_windows(payload, now)
        queries = reformulations(payload.query, window)[: max_retries + 1]

        stats = FilterStats()
        reasons: list[str] = []
        included: list[SearchHit] = []
        attempts = 0
        for attempt, query in enumerate(queries):
            attempts = attempt + 1
            attempt_window = window_for_attempt(window, attempt)
            if on_progress is not None:
                on_progress(f"Searching {backend.name} (attempt {attempts}): {query}")
            hits = backend.search(query, max_results=payload.max_results, window=attempt_window)

            if utc_window is not None:
                outcome = filter_by_utc_window(hits, utc_window, date_field="published")
            elif attempt_window is not None:
                outcome = filter_by_window(
                    hits,
                    attempt_window,
                    date_field="published",
                    year_only_overlap=year_only_overlap,
                )
            else:
                outcome = None

            if outcome is None:
                included = list(hits)
            else:
                included = list(outcome.included)
                stats.out_of_window += outcome.stats.out_of_window
                stats.missing_date += outcome.stats.missing_date
                stats.low_precision += outcome.stats.low_precision
                reasons.extend(outcome.reasons)
            if included:
                break
            logger.info(
                "Search attempt returned no usable results tool_backend=%s attempt=%d strict_window=%s",
                backend.name,
                attempts,
                bool(attempt_window and attempt_window.strict),
            )

        window_payload = _window_payload(window, utc_window)
        document = {
            "query": payload.query,
            "window": window_payload,
            "attempts": attempts,
            "results": [hit.model_dump(mode="json") for hit in included],
            "temporal_filter_stats": stats.model_dump(),
        }
        content = json.dumps(document, ensure_ascii=False)
        return SearchOutput(
            output=_render(payload.query, included, window, utc_window),
            artifacts=[
                Artifact(
                    type="data",
                    name=SEARCH_RESULTS_ARTIFACT,
                    mime_type="application/json",
                    content=content,
                    size=len(content.encode("utf-8")),
                )
            ],
            query=payload.query,
            results=included,
            window=window_payload,
            attempts=attempts,
            excluded_reasons=reasons,
            temporal_filter_stats=stats,
        )

    return _search


def reformulations(query: str, window: AbsoluteDateWindow | None) -> list[str]:
    """Original query, then without the time expression, then keywords only."""
    candidates = [query.strip()]
    expression = window.intent.original_expression if window and window.intent else None
    if expression:
        candidates.append(" ".join(query.replace(expression, " ").split()))
    keywords = [word for word in _WORD.findall(query) if word.lower() not in STOPWORDS]
    if keywords:
        candidates.append(" ".join(keywords[:6]))

    unique: list[str] = []
    for candidate in candidates:
        if candidate and candidate not in unique:
            unique.append(candidate)
    return unique


def _resolve_windows(
    payload: SearchInput,
    now: datetime,
) -> tuple[AbsoluteDateWindow | None, UtcWindow | None]:
    today = now.astimezone(UTC).date()
    if not payload.date_range:
        utc_window = infer_utc_window(payload.query, now)
        if utc_window is not None:
            day_window = AbsoluteDateWindow(
                start_date=utc_window.start.date(),
                end_date=utc_window.end.date(),
                strict=True,
            )
            return day_window, utc_window
    return resolve_search_window(payload.date_range, payload.query, today), None


def _window_payload(
    window: AbsoluteDateWindow | None,
    utc_window: UtcWindow | None,
) -> dict[str, Any] | None:
    if utc_window is not None:
        return {
            "label": utc_window.label,
            "start": utc_window.start.isoformat(),
            "end": utc_window.end.isoformat(),
            "start_utc_ms": utc_window.start_utc_ms,
            "end_utc_ms": utc_window.end_utc_ms,
            "strict": utc_window.strict,
        }
    if window is None:
        return None
    return {
        "start_date": window.start_date.isoformat(),
        "end_date": window.end_date.isoformat(),
        "strict": window.strict,
        "expression": window.intent.original_expression if window.intent else None,
    }


def _render(
    query: str,
    hits: list[SearchHit],
    window: AbsoluteDateWindow | None,
    utc_window: UtcWindow | None,
) -> str:
    if utc_window is not None:
        scope = f" within {utc_window.label}"
    elif window is not None:
        scope = f" within {describe_window(window)}"
    else:
        scope = ""

    if not hits:
        if window is not None and window.strict:
            return (
                f"No results for '{query}'{scope}. The date constraint was kept; "
                "tell the user nothing matched instead of widening it."
            )
        return f"No results for '{query}'{scope}."

    lines = [f"Found {len(hits)} result(s) for '{query}'{scope}:"]
    for index, hit in enumerate(hits, start=1):
        published = hit.published or "date unknown"
        lines.append(f"{index}. {hit.title} ({published}) {hit.url}")
        if hit.snippet:
            lines.append(f"   {hit.snippet}")
    return "\n".join(lines)
