"""Render date windows for search query languages and logs."""

from __future__ import annotations

from agent_runtime.temporal.models import AbsoluteDateWindow

ARXIV_START_FORMAT = "%Y%m%d0000"
ARXIV_END_FORMAT = "%Y%m%d2359"
ARXIV_TEMPLATE = "[{start} TO {end}]"

WILDCARD_TOKENS = ("*", "?")


def format_for_query_language(
    window: AbsoluteDateWindow,
    *,
    start_format: str = ARXIV_START_FORMAT,
    end_format: str = ARXIV_END_FORMAT,
    template: str = ARXIV_TEMPLATE,
) -> str:
    """Render both inclusive bounds explicitly.

    The defaults produce the arXiv ``submittedDate`` syntax, which accepts no
    wildcards: the start bound is midnight and the end bound is 23:59.
    """
    start = window.start_date.strftime(start_format)
    end = window.end_date.strftime(end_format)
    for bound in (start, end):
        if not bound or any(token in bound for token in WILDCARD_TOKENS):
            raise ValueError(f"Date bound {bound!r} must be explicit; wildcards are not allowed")
    return template.format(start=start, end=end)


def describe_window(window: AbsoluteDateWindow) -> str:
    label = "strict" if window.strict else "flexible"
    span = f"{window.start_date.isoformat()} to {window.end_date.isoformat()}"
    if window.intent is not None:
        return f"{window.intent.value} {window.intent.unit} ({label}): {span}"
    return f"{span} ({label})"
