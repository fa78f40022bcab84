from datetime import date, timedelta

from visibility.analytics.trends import (
    STABLE_TREND_THRESHOLD,
    Granularity,
    TrendDirection,
    calculate_trend,
    citation_rate_series,
    compare_rates,
    split_periods,
    trend_report,
    week_start,
)
from visibility.models import Provider

from builders import NOW, make_question, make_result


def test_small_movement_is_stable():
    trend = compare_rates(41.0, 40.0)
    assert trend.direction == TrendDirection.STABLE
    assert trend.change == 0


def test_threshold_is_two_points():
    assert STABLE_TREND_THRESHOLD == 2
    assert compare_rates(41.9, 40.0).direction == TrendDirection.STABLE
    assert compare_rates(42.0, 40.0).direction == TrendDirection.UP
    assert compare_rates(42.0, 40.0).change == 2
    assert compare_rates(30.0, 45.5).direction == TrendDirection.DOWN
    assert compare_rates(30.0, 45.5).change == -15


def test_empty_previous_period():
    assert compare_rates(0.0, None).direction == TrendDirection.STABLE
    assert compare_rates(0.0, None).change == 0

    trend = compare_rates(30.0, None)
    assert trend.direction == TrendDirection.UP
    assert trend.change == 30


def test_zero_previous_rate_counts_as_empty():
    trend = compare_rates(25.0, 0.0)
    assert trend.direction == TrendDirection.UP
    assert trend.change == 25


def test_empty_current_period_is_stable():
    trend = compare_rates(None, 80.0)
    assert trend.direction == TrendDirection.STABLE
    assert trend.change == 0


def test_periods_split_on_30_day_boundaries():
    question = make_question("q", id="q1")
    recent = make_result(question, days_ago=29)
    boundary = make_result(question, days_ago=30)
    older = make_result(question, days_ago=45)
    ancient = make_result(question, days_ago=61)

    current, previous = split_periods([recent, boundary, older, ancient], NOW)

    assert current == [recent]
    assert previous == [boundary, older]


def test_calculate_trend_over_results():
    question = make_question("q", id="q1")
    results = [
        make_result(question, cited=True, days_ago=5),
        make_result(question, cited=True, days_ago=10),
        make_result(question, cited=False, days_ago=40),
        make_result(question, cited=True, days_ago=50),
    ]
    trend = calculate_trend(results, NOW)

    assert trend.direction == TrendDirection.UP
    assert trend.change == 50
    assert trend.current_rate == 100
    assert trend.previous_rate == 50


def test_trend_report_ignores_inactive_providers():
    question = make_question("q", id="q1")
    results = [
        make_result(question, Provider.CHATGPT, cited=False, days_ago=5),
        make_result(question, Provider.CHATGPT, cited=False, days_ago=40),
        make_result(question, Provider.GEMINI, cited=True, days_ago=5),
    ]

    with_gemini = trend_report(results, [Provider.CHATGPT, Provider.GEMINI], NOW)
    without_gemini = trend_report(results, [Provider.CHATGPT], NOW)

    assert with_gemini.overall.direction == TrendDirection.UP
    assert without_gemini.overall.direction == TrendDirection.STABLE
    assert set(without_gemini.providers) == {Provider.CHATGPT}
    assert with_gemini.providers[Provider.GEMINI].change == 100


def test_week_start_is_sunday():
    # 2026-03-15 is a Sunday
    assert week_start(date(2026, 3, 15)) == date(2026, 3, 15)
    assert week_start(date(2026, 3, 18)) == date(2026, 3, 15)
    assert week_start(date(2026, 3, 21)) == date(2026, 3, 15)


def test_weekly_series_has_eight_points_and_gaps():
    question = make_question("q", id="q1")
    results = [
        make_result(question, Provider.CHATGPT, cited=True, days_ago=1),
        make_result(question, Provider.CHATGPT, cited=False, days_ago=2),
        make_result(question, Provider.CLAUDE, cited=True, days_ago=15),
        # Outside the window
        make_result(question, Provider.CLAUDE, cited=True, days_ago=120),
    ]

    series = citation_rate_series(results, Granularity.WEEKLY, NOW)

    assert len(series) == 8
    assert series[-1].start == date(2026, 3, 15)
    assert series[0].start == date(2026, 1, 25)
    assert sum(point.total_checks for point in series) == 3

    latest = series[-1] if series[-1].total_checks else series[-2]
    assert latest.provider_rates[Provider.CHATGPT] == 50
    assert latest.provider_rates[Provider.GEMINI] is None
    assert any(point.overall is None for point in series)


def test_monthly_series_has_six_points():
    question = make_question("q", id="q1")
    results = [make_result(question, cited=True, days_ago=d) for d in (1, 40, 70)]

    series = citation_rate_series(results, Granularity.MONTHLY, NOW)

    assert len(series) == 6
    assert series[-1].start == date(2026, 3, 1)
    assert series[0].start == date(2025, 10, 1)
    assert [p.overall for p in series[-3:]] == [100, 100, 100]
