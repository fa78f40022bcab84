"""
Trend Calculator
================

Compares the citation rate of the last 30 days with the 30 days before it,
and buckets results into weekly or monthly citation-rate series for charting.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from ..models import PROVIDERS, CheckResult, Provider, round_half_up, to_utc, utcnow

# Movements smaller than this many percentage points are reported as stable
STABLE_TREND_THRESHOLD = 2

TREND_WINDOW = timedelta(days=30)

WEEKLY_PERIODS = 8
MONTHLY_PERIODS = 6


class TrendDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class Granularity(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass
class Trend:
    direction: TrendDirection
    change: int
    current_rate: Optional[float] = None
    previous_rate: Optional[float] = None


@dataclass
class TrendReport:
    overall: Trend
    providers: dict[Provider, Trend] = field(default_factory=dict)


def citation_rate(results: list[CheckResult]) -> Optional[float]:
    if not results:
        return None
    cited = sum(1 for r in results if r.domain_cited)
    return cited / len(results) * 100


def compare_rates(current: Optional[float], previous: Optional[float]) -> Trend:
    """Direction and size of the move from the previous to the current rate."""
    if current is None:
        return Trend(TrendDirection.STABLE, 0, current, previous)

    if not previous:
        direction = TrendDirection.UP if current > 0 else TrendDirection.STABLE
        return Trend(direction, round_half_up(current), current, previous)

    change = current - previous
    if abs(change) < STABLE_TREND_THRESHOLD:
        return Trend(TrendDirection.STABLE, 0, current, previous)

    direction = TrendDirection.UP if change > 0 else TrendDirection.DOWN
    return Trend(direction, round_half_up(change), current, previous)


def split_periods(
    results: Iterable[CheckResult],
    now: Optional[datetime] = None,
) -> tuple[list[CheckResult], list[CheckResult]]:
    """Partition results into (last 30 days, 30-60 days ago); older ones are dropped."""
    now = to_utc(now) if now else utcnow()
    current_start = now - TREND_WINDOW
    previous_start = now - 2 * TREND_WINDOW

    current, previous = [], []
    for result in results:
        if result.checked_at > current_start:
            current.append(result)
        elif result.checked_at > previous_start:
            previous.append(result)
    return current, previous


def calculate_trend(results: Iterable[CheckResult], now: Optional[datetime] = None) -> Trend:
    current, previous = split_periods(results, now)
    return compare_rates(citation_rate(current), citation_rate(previous))


def trend_report(
    results: Iterable[CheckResult],
    providers: Iterable[Provider] = PROVIDERS,
    now: Optional[datetime] = None,
) -> TrendReport:
    """Overall and per-provider trends over results from the active providers only."""
    providers = list(providers)
    active = set(providers)
    in_scope = [r for r in results if r.provider in active]

    by_provider: dict[Provider, list[CheckResult]] = defaultdict(list)
    for result in in_scope:
        by_provider[result.provider].append(result)

    return TrendReport(
        overall=calculate_trend(in_scope, now),
        providers={p: calculate_trend(by_provider.get(p, []), now) for p in providers},
    )


@dataclass
class SeriesPoint:
    label: str
    start: date
    provider_rates: dict[Provider, Optional[int]]
    overall: Optional[int]
    total_checks: int = 0
    cited_checks: int = 0


def week_start(day: date) -> date:
    """Sunday on or before the given day."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def month_start(day: date, months_back: int = 0) -> date:
    index = day.year * 12 + (day.month - 1) - months_back
    year, month = divmod(index, 12)
    return date(year, month + 1, 1)


def _period_starts(granularity: Granularity, today: date) -> list[date]:
    if granularity == Granularity.MONTHLY:
        return [month_start(today, i) for i in range(MONTHLY_PERIODS - 1, -1, -1)]
    return [week_start(today - timedelta(weeks=i)) for i in range(WEEKLY_PERIODS - 1, -1, -1)]


def _label(start: date, granularity: Granularity) -> str:
    if granularity == Granularity.MONTHLY:
        return start.strftime("%b %y")
    return f"{start.strftime('%b')} {start.day}"


def citation_rate_series(
    results: Iterable[CheckResult],
    granularity: Granularity = Granularity.WEEKLY,
    now: Optional[datetime] = None,
) -> list[SeriesPoint]:
    """Citation rate per period (8 weeks or 6 months), oldest first.

    Empty periods carry None rather than 0.
    """
    now = to_utc(now) if now else utcnow()
    starts = _period_starts(granularity, now.date())
    buckets: dict[date, dict[Provider, list[int]]] = {
        start: {p: [0, 0] for p in PROVIDERS} for start in starts
    }

    for result in results:
        day = result.checked_at.date()
        key = month_start(day) if granularity == Granularity.MONTHLY else week_start(day)
        bucket = buckets.get(key)
        if bucket is None:
            continue
        counts = bucket[result.provider]
        counts[0] += 1
        if result.domain_cited:
            counts[1] += 1

    points = []
    for start in starts:
        provider_rates: dict[Provider, Optional[int]] = {}
        total_all = cited_all = 0
        for provider, (total, cited) in buckets[start].items():
            provider_rates[provider] = round_half_up(cited / total * 100) if total else None
            total_all += total
            cited_all += cited

        points.append(SeriesPoint(
            label=_label(start, granularity),
            start=start,
            provider_rates=provider_rates,
            overall=round_half_up(cited_all / total_all * 100) if total_all else None,
            total_checks=total_all,
            cited_checks=cited_all,
        ))

    return points
