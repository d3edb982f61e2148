"""Post-search verification of results against a temporal window.

Search backends do not always honour the window they were given, so every
result is re-checked here before it reaches the model. Exclusions are never
silent: each one is counted and carries a reason.
"""

from __future__ import annotations

import calendar
import logging
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from agent_runtime.temporal.models import (
    AbsoluteDateWindow,
    PublishedDate,
    UtcWindow,
    WindowFilterOutcome,
)

logger = logging.getLogger(__name__)

_YEAR_ONLY = re.compile(r"^\d{4}$")
_YEAR_MONTH = re.compile(r"^(\d{4})-(\d{2})$")
_DAY_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_HOURS_PATTERN = re.compile(
    r"\b(?:last|past|previous|within(?:\s+the)?)\s+(\d+)\s*(?:hours?|hrs?)\b", re.I
)
_SINGLE_HOUR_PATTERN = re.compile(r"\b(?:in\s+the\s+)?(?:last|past)\s+hour\b", re.I)
_YESTERDAY_PATTERN = re.compile(r"\byesterday\b", re.I)
_TODAY_PATTERN = re.compile(r"\btoday\b", re.I)


def parse_published_date(value: Any) -> PublishedDate | None:
    """Parse a publication field, keeping track of how precise it is.

    ``"2026"`` has year precision, ``"2026-02"`` month precision,
    ``"2026-02-11"`` day precision and a full ISO timestamp has timestamp
    precision. Naive timestamps are taken as UTC. Anything unusable,
    including values outside the representable range, gives ``None``.
    """
    if value is None:
        return None
    try:
        if isinstance(value, datetime):
            stamp = value if value.tzinfo else value.replace(tzinfo=UTC)
            return PublishedDate(value=stamp.astimezone(UTC), precision="timestamp")
        if isinstance(value, date):
            return PublishedDate(value=datetime.combine(value, time.min, UTC), precision="day")

        text = str(value).strip()
        if not text:
            return None
        if _YEAR_ONLY.match(text):
            return PublishedDate(value=datetime(int(text), 1, 1, tzinfo=UTC), precision="year")
        month_match = _YEAR_MONTH.match(text)
        if month_match:
            parsed = datetime(int(month_match.group(1)), int(month_match.group(2)), 1, tzinfo=UTC)
            return PublishedDate(value=parsed, precision="month")
        if _DAY_ONLY.match(text):
            parsed_day = date.fromisoformat(text)
            return PublishedDate(value=datetime.combine(parsed_day, time.min, UTC), precision="day")
        stamp = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=UTC)
        return PublishedDate(value=stamp.astimezone(UTC), precision="timestamp")
    except (TypeError, ValueError, OverflowError):
        return None


def is_within_window(
    date_value: Any,
    window: AbsoluteDateWindow,
    *,
    year_only_overlap: bool = True,
) -> bool:
    """Total membership check; never raises.

    Missing or unparsable dates pass only non-strict windows. Coarse dates (a
    bare year, the ``YYYY-01-01`` placeholder some sources emit, or a bare
    ``YYYY-MM``) pass when their year or month overlaps the window, even if
    the window is shorter. Set ``year_only_overlap=False`` to exclude them
    from strict windows instead.
    """
    return _admits(date_value, parse_published_date(date_value), window, year_only_overlap)


def filter_by_window(
    items: Iterable[Any],
    window: AbsoluteDateWindow,
    *,
    date_field: str = "publication_date",
    year_only_overlap: bool = True,
) -> WindowFilterOutcome:
    outcome = WindowFilterOutcome()
    for item in items:
        raw = _field(item, date_field)
        published = parse_published_date(raw)
        if _admits(raw, published, window, year_only_overlap):
            outcome.included.append(item)
            continue
        outcome.excluded.append(item)
        coarse = _coarse_precision(raw, published)
        if raw in (None, ""):
            outcome.stats.missing_date += 1
            outcome.reasons.append("Result has no publication date (strict window excludes undated items)")
        elif published is None:
            outcome.stats.missing_date += 1
            outcome.reasons.append(f"Result date {raw!r} could not be parsed (strict window)")
        elif coarse is not None and window.strict and not year_only_overlap:
            outcome.stats.low_precision += 1
            outcome.reasons.append(f"Result date {raw} has {coarse}-only precision (strict window)")
        else:
            outcome.stats.out_of_window += 1
            outcome.reasons.append(
                f"Result date {raw} outside window [{window.start_date.isoformat()}, "
                f"{window.end_date.isoformat()}]"
            )

    if outcome.excluded:
        logger.debug(
            "Post-search date filter excluded=%d total=%d window=%s..%s strict=%s",
            len(outcome.excluded),
            len(outcome.excluded) + len(outcome.included),
            window.start_date,
            window.end_date,
            window.strict,
        )
    return outcome


def infer_utc_window(text: str | None, now: datetime | None = None) -> UtcWindow | None:
    """Recognise sub-day requests ("last 24 hours", "today", "yesterday")."""
    if not text:
        return None
    current = (now or datetime.now(UTC)).astimezone(UTC)

    hours_match = _HOURS_PATTERN.search(text)
    if hours_match:
        hours = int(hours_match.group(1))
        return UtcWindow(
            start=current - timedelta(hours=hours),
            end=current,
            label=f"last {hours} hour{'' if hours == 1 else 's'}",
            allow_date_only=False,
        )
    if _SINGLE_HOUR_PATTERN.search(text):
        return UtcWindow(start=current - timedelta(hours=1), end=current, label="last 1 hour")

    midnight = datetime.combine(current.date(), time.min, UTC)
    if _YESTERDAY_PATTERN.search(text):
        return UtcWindow(
            start=midnight - timedelta(days=1),
            end=midnight - timedelta(milliseconds=1),
            label="yesterday",
            allow_date_only=True,
        )
    if _TODAY_PATTERN.search(text):
        return UtcWindow(start=midnight, end=current, label="today", allow_date_only=True)
    return None


def filter_by_utc_window(
    items: Iterable[Any],
    window: UtcWindow,
    *,
    date_field: str = "published_date",
) -> WindowFilterOutcome:
    """Millisecond-precision variant of :func:`filter_by_window`.

    Day-precision items are excluded as low precision unless the window allows
    date-only values, in which case their calendar day must overlap the window.
    Year and month precision is always too coarse here.
    """
    outcome = WindowFilterOutcome()
    for item in items:
        raw = _field(item, date_field)
        published = parse_published_date(raw)
        if published is None:
            if not window.strict:
                outcome.included.append(item)
                continue
            outcome.excluded.append(item)
            outcome.stats.missing_date += 1
            outcome.reasons.append(f"Result has no usable publication date for {window.label}")
            continue

        if published.precision != "timestamp":
            if not window.allow_date_only or published.precision != "day":
                outcome.excluded.append(item)
                outcome.stats.low_precision += 1
                outcome.reasons.append(
                    f"Result date {raw} lacks time-of-day precision required for {window.label}"
                )
                continue
            day = published.value.date()
            inside = window.start.date() <= day <= window.end.date()
        else:
            inside = window.start <= published.value <= window.end

        if inside:
            outcome.included.append(item)
        else:
            outcome.excluded.append(item)
            outcome.stats.out_of_window += 1
            outcome.reasons.append(
                f"Result published {published.value.isoformat()} outside {window.label} "
                f"[{window.start.isoformat()}, {window.end.isoformat()}]"
            )
    return outcome


def _admits(
    raw: Any,
    published: PublishedDate | None,
    window: AbsoluteDateWindow,
    year_only_overlap: bool,
) -> bool:
    if published is None:
        return not window.strict

    coarse = _coarse_precision(raw, published)
    if coarse is not None:
        if not year_only_overlap and window.strict:
            return False
        first, last = _coarse_span(published.value.date(), coarse)
        return first <= window.end_date and last >= window.start_date

    day = published.value.date()
    return window.start_date <= day <= window.end_date


def _coarse_precision(raw: Any, published: PublishedDate | None) -> str | None:
    if published is None:
        return None
    if published.precision in ("year", "month"):
        return published.precision
    if isinstance(raw, str) and _DAY_ONLY.match(raw.strip()) and raw.strip().endswith("-01-01"):
        return "year"
    return None


def _coarse_span(first: date, precision: str) -> tuple[date, date]:
    if precision == "year":
        return first.replace(month=1, day=1), first.replace(month=12, day=31)
    last_day = calendar.monthrange(first.year, first.month)[1]
    return first.replace(day=1), first.replace(day=last_day)


def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)
