"""Temporal constraint resolution and post-search date filtering."""

from agent_runtime.temporal.filtering import (
    filter_by_utc_window,
    filter_by_window,
    infer_utc_window,
    is_within_window,
    parse_published_date,
)
from agent_runtime.temporal.formatting import describe_window, format_for_query_language
from agent_runtime.temporal.models import (
    AbsoluteDateWindow,
    FilterStats,
    PublishedDate,
    TimeRangeIntent,
    UtcWindow,
    WindowFilterOutcome,
)
from agent_runtime.temporal.parser import (
    parse_intent_from_text,
    parse_structured_range,
    resolve_search_window,
    to_absolute_window,
    window_for_attempt,
)

__all__ = [
    "AbsoluteDateWindow",
    "FilterStats",
    "PublishedDate",
    "TimeRangeIntent",
    "UtcWindow",
    "WindowFilterOutcome",
    "describe_window",
    "filter_by_utc_window",
    "filter_by_window",
    "format_for_query_language",
    "infer_utc_window",
    "is_within_window",
    "parse_intent_from_text",
    "parse_published_date",
    "parse_structured_range",
    "resolve_search_window",
    "to_absolute_window",
    "window_for_attempt",
]
