"""Period classification for report date ranges.

WHAT:
    Decides whether a requested date range is the current calendar month,
    the current ISO week, a fully elapsed (historical) period, the all-time
    window, or an arbitrary custom range. Only the first two are cacheable.

WHY:
    The resolution engine picks its data tier from this answer, so the rules
    must be pure and deterministic: "today" is always passed in, never read
    from the clock here.

ISO WEEKS:
    Weeks start on Monday. A week belongs to the year that contains its
    Thursday, so 2025-12-29..2026-01-04 is 2026-W01 and 2021-01-01 sits in
    2020-W53. `date.isocalendar()` implements exactly this rule.

REFERENCES:
    - adreport/services/resolution_engine.py (consumer)
    - adreport/services/period_transition.py (uses period ids to detect ended periods)
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional, Tuple

from adreport.models import CacheTierEnum, SummaryTypeEnum
from adreport.schemas import DateRange


CURRENT_MONTH = "current-month"
CURRENT_WEEK = "current-week"
HISTORICAL = "historical"
CUSTOM = "custom"
ALL_TIME = "all-time"

# Meta keeps 37 months of insights; the all-time window never reaches further back
ALL_TIME_MONTHS = 37


@dataclass(frozen=True)
class PeriodClassification:
    """Derived, never persisted.

    Attributes:
        kind: current-month, current-week, historical, custom or all-time
        is_cacheable: True only for the canonical current month/week
        canonical_period_id: "2025-09" / "2025-W36" when cacheable
        cache_tier: month or week when cacheable
        summary_type: weekly/monthly summary to read when historical; None
            when the range is not a whole week or month
        summary_date: first day of that summary when historical
    """

    kind: str
    is_cacheable: bool = False
    canonical_period_id: Optional[str] = None
    cache_tier: Optional[CacheTierEnum] = None
    summary_type: Optional[SummaryTypeEnum] = None
    summary_date: Optional[date] = None


# --- Calendar helpers ---------------------------------------------------------

def month_bounds(day: date) -> Tuple[date, date]:
    """First and last day of the month containing `day`."""
    last = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=1), day.replace(day=last)


def iso_week_bounds(day: date) -> Tuple[date, date]:
    """Monday and Sunday of the ISO week containing `day`."""
    monday = day - timedelta(days=day.weekday())
    return monday, monday + timedelta(days=6)


def month_period_id(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def iso_week_period_id(day: date) -> str:
    """ISO week id for `day`, using the Thursday-anchored year."""
    iso_year, iso_week, _ = day.isocalendar()
    return f"{iso_year:04d}-W{iso_week:02d}"


def period_end_from_id(period_id: str) -> date:
    """Last calendar day covered by a month ("2025-09") or week ("2025-W36") id."""
    if "-W" in period_id:
        year, week = period_id.split("-W")
        monday = date.fromisocalendar(int(year), int(week), 1)
        return monday + timedelta(days=6)
    year, month = period_id.split("-")
    return month_bounds(date(int(year), int(month), 1))[1]


def period_start_from_id(period_id: str) -> date:
    """First calendar day covered by a month or week id."""
    if "-W" in period_id:
        year, week = period_id.split("-W")
        return date.fromisocalendar(int(year), int(week), 1)
    year, month = period_id.split("-")
    return date(int(year), int(month), 1)


def _subtract_months(day: date, months: int) -> date:
    total = day.year * 12 + (day.month - 1) - months
    year, month = divmod(total, 12)
    month += 1
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last))


def all_time_range(today: date, months: int = ALL_TIME_MONTHS) -> DateRange:
    """The all-time window: [today - 37 months, today].

    Callers build all-time requests with this helper; the classifier
    recognizes the exact same range and nothing else as all-time.
    """
    return DateRange(start=_subtract_months(today, months), end=today)


# --- Historical lookup key ----------------------------------------------------

def historical_lookup(date_range: DateRange) -> Optional[Tuple[SummaryTypeEnum, date]]:
    """Which backfilled summary answers a historical range, if any.

    Summaries cover whole periods only: a Monday..Sunday ISO week reads the
    weekly summary of that Monday, a whole calendar month reads the monthly
    summary of its first day. Partial months, multi-month spans and
    unaligned weeks have no summary and return None.
    """
    start, end = date_range.start, date_range.end
    if start.weekday() == 0 and (end - start).days == 6:
        return SummaryTypeEnum.weekly, start
    if (start, end) == month_bounds(start):
        return SummaryTypeEnum.monthly, start
    return None


# --- Classification -----------------------------------------------------------

def classify(date_range: DateRange, today: date, all_time_months: int = ALL_TIME_MONTHS) -> PeriodClassification:
    """Classify a date range relative to `today`.

    Rules, in order:
        1. Exactly the current calendar month -> current-month (cacheable)
        2. Exactly the current ISO week -> current-week (cacheable)
        3. Exactly all_time_range(today) -> all-time
        4. Ends before the current month starts, or is a complete ISO week
           that ended before the current week -> historical
        5. Anything else -> custom (partial months, multi-month spans,
           future-inclusive ranges)
    """
    start, end = date_range.start, date_range.end

    month_start, month_end = month_bounds(today)
    if start == month_start and end == month_end:
        return PeriodClassification(
            kind=CURRENT_MONTH,
            is_cacheable=True,
            canonical_period_id=month_period_id(today),
            cache_tier=CacheTierEnum.month,
        )

    week_start, week_end = iso_week_bounds(today)
    if start == week_start and end == week_end:
        return PeriodClassification(
            kind=CURRENT_WEEK,
            is_cacheable=True,
            canonical_period_id=iso_week_period_id(today),
            cache_tier=CacheTierEnum.week,
        )

    window = all_time_range(today, all_time_months)
    if start == window.start and end == window.end:
        return PeriodClassification(kind=ALL_TIME)

    is_elapsed_iso_week = (
        start.weekday() == 0
        and (end - start).days == 6
        and end < week_start
    )
    if end < month_start or is_elapsed_iso_week:
        summary_type, summary_date = historical_lookup(date_range) or (None, None)
        return PeriodClassification(
            kind=HISTORICAL,
            summary_type=summary_type,
            summary_date=summary_date,
        )

    return PeriodClassification(kind=CUSTOM)
