"""
Visibility Analytics
====================

Turns raw check results into:
- Per-question rows with latest and historical results (aggregator)
- Answer consistency per question, provider and account (consistency)
- Citation-rate trend direction and time series (trends)
- Ranked research source domains (sources)
"""

from .aggregator import AccountSummary, Aggregation, CheckCounts, QuestionRow, aggregate, summarize_rows
from .consistency import ConsistencyReport, pair_consistency, score_rows
from .sources import ResearchSourcesReport, rank_research_sources
from .trends import STABLE_TREND_THRESHOLD, Trend, TrendDirection, TrendReport, trend_report

__all__ = [
    "AccountSummary",
    "Aggregation",
    "CheckCounts",
    "QuestionRow",
    "aggregate",
    "summarize_rows",
    "ConsistencyReport",
    "pair_consistency",
    "score_rows",
    "ResearchSourcesReport",
    "rank_research_sources",
    "STABLE_TREND_THRESHOLD",
    "Trend",
    "TrendDirection",
    "TrendReport",
    "trend_report",
]
