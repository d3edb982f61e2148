"""Parse time expressions into absolute, inclusive date windows.

Free text is parsed once, before any search call, into a ``TimeRangeIntent``
and then converted to absolute dates. Explicit expressions ("last 3 months",
"this week", "since March 2025") are strict; vague ones ("recent papers") are
flexible and may be abandoned on a later retry. Structured tokens coming from
tool parameters are always strict.
"""

from __future__ import annotations

import calendar
import logging
import re
from collections.abc import Callable
from datetime import MINYEAR, date, timedelta

from agent_runtime.temporal.models import AbsoluteDateWindow, TimeRangeIntent, TimeUnit

logger = logging.getLogger(__name__)

MONTHS = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}

_LEAD = r"(?:last|past|recent|within(?:\s+the)?)"

IntentExtractor = Callable[[re.Match[str], date], TimeRangeIntent | None]


def _counted(unit: TimeUnit) -> IntentExtractor:
    return lambda match, _ref: TimeRangeIntent(value=int(match.group(1)), unit=unit, strict=True)


def _fixed(value: int, unit: TimeUnit, *, strict: bool) -> IntentExtractor:
    return lambda _match, _ref: TimeRangeIntent(value=value, unit=unit, strict=strict)


def _since_month(match: re.Match[str], reference_date: date) -> TimeRangeIntent | None:
    year = int(match.group(2))
    if year < MINYEAR:
        return None
    start = date(year, MONTHS[match.group(1).lower()], 1)
    return TimeRangeIntent(value=max(0, (reference_date - start).days), unit="days", strict=True)


STRICT_PATTERNS: list[tuple[re.Pattern[str], IntentExtractor]] = [
    (re.compile(rf"{_LEAD}\s+(\d+)\s*months?\b", re.I), _counted("months")),
    (re.compile(rf"{_LEAD}\s+(\d+)\s*days?\b", re.I), _counted("days")),
    (re.compile(rf"{_LEAD}\s+(\d+)\s*weeks?\b", re.I), _counted("weeks")),
    (re.compile(rf"{_LEAD}\s+(\d+)\s*years?\b", re.I), _counted("years")),
    (re.compile(r"in\s+the\s+(?:last|past)\s+month\b", re.I), _fixed(1, "months", strict=True)),
    (re.compile(r"in\s+the\s+(?:last|past)\s+week\b", re.I), _fixed(1, "weeks", strict=True)),
    (re.compile(r"\bthis\s+month\b", re.I), _fixed(1, "months", strict=True)),
    (re.compile(r"\bthis\s+week\b", re.I), _fixed(1, "weeks", strict=True)),
    (re.compile(r"\bthis\s+year\b", re.I), _fixed(1, "years", strict=True)),
    (
        re.compile(rf"(?:since|from)\s+({'|'.join(MONTHS)})\s+(\d{{4}})\b", re.I),
        _since_month,
    ),
]

_SUBJECTS = r"(?:papers?|research|work|studies|publications?)"

FLEXIBLE_PATTERNS: list[tuple[re.Pattern[str], IntentExtractor]] = [
    (re.compile(rf"\brecent\s+{_SUBJECTS}\b", re.I), _fixed(12, "months", strict=False)),
    (
        re.compile(rf"\b(?:new|latest|newest)\s+{_SUBJECTS}\b", re.I),
        _fixed(6, "months", strict=False),
    ),
]

_STRUCTURED_LAST = re.compile(r"^last-?(\d+)-?(days?|weeks?|months?|years?)$")
_STRUCTURED_YEAR_RANGE = re.compile(r"^(\d{4})-(\d{4})$")
_STRUCTURED_YEAR = re.compile(r"^(\d{4})$")


def parse_intent_from_text(
    text: str | None,
    reference_date: date | None = None,
) -> TimeRangeIntent | None:
    """Return the first strict match, else the first flexible match, else None."""
    if not text:
        return None
    ref = reference_date or date.today()
    for patterns, kind in ((STRICT_PATTERNS, "strict"), (FLEXIBLE_PATTERNS, "flexible")):
        for pattern, extract in patterns:
            match = pattern.search(text)
            if match is None:
                continue
            extracted = extract(match, ref)
            if extracted is None:
                continue
            intent = extracted.model_copy(update={"original_expression": match.group(0)})
            logger.debug(
                "Parsed %s time range expression=%r value=%d unit=%s",
                kind,
                match.group(0),
                intent.value,
                intent.unit,
            )
            return intent
    return None


def to_absolute_window(
    intent: TimeRangeIntent,
    reference_date: date | None = None,
) -> AbsoluteDateWindow:
    """Inclusive window ending at ``reference_date``.

    A span reaching past the first representable day starts at ``date.min``.
    """
    end = reference_date or date.today()
    if intent.unit in ("days", "weeks"):
        days = intent.value * 7 if intent.unit == "weeks" else intent.value
        try:
            start = end - timedelta(days=days)
        except OverflowError:
            start = date.min
    elif intent.unit == "months":
        start = _shift_months(end, -intent.value)
    else:
        start = _shift_months(end, -12 * intent.value)
    return AbsoluteDateWindow(start_date=start, end_date=end, strict=intent.strict, intent=intent)


def parse_structured_range(
    token: str | None,
    reference_date: date | None = None,
) -> AbsoluteDateWindow | None:
    """Parse a tool-supplied ``date_range`` token. Every structured window is strict."""
    if not token:
        return None
    lowered = token.strip().lower()

    last_match = _STRUCTURED_LAST.match(lowered)
    if last_match:
        unit_text = last_match.group(2)
        unit: TimeUnit = unit_text if unit_text.endswith("s") else f"{unit_text}s"  # type: ignore[assignment]
        intent = TimeRangeIntent(
            value=int(last_match.group(1)),
            unit=unit,
            strict=True,
            original_expression=token,
        )
        return to_absolute_window(intent, reference_date)

    range_match = _STRUCTURED_YEAR_RANGE.match(lowered)
    if range_match:
        first, last = int(range_match.group(1)), int(range_match.group(2))
        if first < MINYEAR or first > last:
            return None
        return AbsoluteDateWindow(
            start_date=date(first, 1, 1),
            end_date=date(last, 12, 31),
            strict=True,
        )

    year_match = _STRUCTURED_YEAR.match(lowered)
    if year_match:
        year = int(year_match.group(1))
        if year < MINYEAR:
            return None
        return AbsoluteDateWindow(
            start_date=date(year, 1, 1),
            end_date=date(year, 12, 31),
            strict=True,
        )

    return None


def resolve_search_window(
    date_range: str | None,
    query_text: str | None,
    reference_date: date | None = None,
) -> AbsoluteDateWindow | None:
    """Structured token first, then inference from the query text, else no constraint."""
    window = parse_structured_range(date_range, reference_date)
    if window is not None:
        return window
    if date_range:
        logger.info("Ignoring unparseable date_range token=%r", date_range)

    intent = parse_intent_from_text(query_text, reference_date)
    if intent is None:
        return None
    return to_absolute_window(intent, reference_date)


def window_for_attempt(
    window: AbsoluteDateWindow | None,
    attempt: int,
) -> AbsoluteDateWindow | None:
    """Window to use on retry ``attempt`` (0 is the first call).

    Strict windows are returned unchanged on every attempt. Flexible windows
    are dropped after the first attempt.
    """
    if window is None or attempt <= 0 or window.strict:
        return window
    return None


def _shift_months(value: date, months: int) -> date:
    month_index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(month_index, 12)
    if year < MINYEAR:
        return date.min
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)
