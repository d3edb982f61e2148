"""Value objects for temporal constraints."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

TimeUnit = Literal["days", "weeks", "months", "years"]
DatePrecision = Literal["year", "month", "day", "timestamp"]


class FrozenModel(BaseModel):
    """Immutable base for temporal value objects."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class TimeRangeIntent(FrozenModel):
    """Relative time range parsed from user text, e.g. "last 1 month"."""

    value: int = Field(ge=0)
    unit: TimeUnit
    strict: bool
    original_expression: str | None = None


class AbsoluteDateWindow(FrozenModel):
    """Inclusive calendar-day window handed to search tools.

    A strict window is an explicit user or system constraint: retry logic may
    neither widen it nor replace it with "no window".
    """

    start_date: date
    end_date: date
    strict: bool
    intent: TimeRangeIntent | None = None


class UtcWindow(FrozenModel):
    """Timestamp window for sources that report real publication times."""

    start: datetime
    end: datetime
    label: str
    strict: bool = True
    allow_date_only: bool = False

    @property
    def start_utc_ms(self) -> int:
        return int(self.start.timestamp() * 1000)

    @property
    def end_utc_ms(self) -> int:
        return int(self.end.timestamp() * 1000)


class PublishedDate(FrozenModel):
    value: datetime
    precision: DatePrecision


class FilterStats(BaseModel):
    out_of_window: int = 0
    missing_date: int = 0
    low_precision: int = 0


class WindowFilterOutcome(BaseModel):
    """Result of post-search filtering; every exclusion carries a reason."""

    included: list[Any] = Field(default_factory=list)
    excluded: list[Any] = Field(default_factory=list)
    reasons: list[str] = Field(default_factory=list)
    stats: FilterStats = Field(default_factory=FilterStats)
