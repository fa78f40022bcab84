"""
View Composer
=============

Filters, sorts and paginates aggregated question rows and derives the
summary, consistency and trend figures from exactly the rows in view.
"""

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import structlog

from .analytics.aggregator import AccountSummary, Aggregation, QuestionRow, summarize_rows
from .analytics.consistency import (
    ConsistencyReport,
    PairConsistency,
    mean_score,
    question_consistency,
    score_rows,
)
from .analytics.trends import TrendReport, trend_report
from .batch.orchestrator import UNGROUPED
from .models import DEFAULT_PROVIDERS, FUNNEL_ORDER, FunnelStage, Provider, round_half_up

logger = structlog.get_logger(__name__)

EMPTY_VALUE = "—"

DEFAULT_PAGE_SIZE = 25


class SortField(str, Enum):
    QUESTION = "question"
    CONCEPT = "concept"
    FUNNEL = "funnel"
    LAST_CHECKED = "last_checked"
    CITATION_CONSISTENCY = "citation_consistency"


@dataclass
class SortSpec:
    field: SortField = SortField.QUESTION
    descending: bool = False


@dataclass
class ViewFilters:
    concept_id: Optional[str] = None
    funnel_stage: Optional[FunnelStage] = None
    # UNGROUPED selects questions that belong to no group
    group_id: Optional[str] = None
    providers: list[Provider] = field(default_factory=lambda: list(DEFAULT_PROVIDERS))
    search: str = ""

    def __post_init__(self):
        self.providers = [Provider(p) for p in self.providers]
        if not self.providers:
            raise ValueError("At least one provider must be selected")
        if self.funnel_stage is not None:
            self.funnel_stage = FunnelStage(self.funnel_stage)

    def matches(self, row: QuestionRow) -> bool:
        if self.concept_id and row.concept_id != self.concept_id:
            return False
        if self.funnel_stage and row.funnel_stage != self.funnel_stage:
            return False
        if self.group_id == UNGROUPED:
            if row.group_id is not None:
                return False
        elif self.group_id and row.group_id != self.group_id:
            return False
        if self.search and self.search.strip().lower() not in row.text.lower():
            return False
        return True


@dataclass
class VisibilityView:
    rows: list[QuestionRow]
    total_rows: int
    page: int
    page_count: int
    summary: AccountSummary
    consistency: ConsistencyReport
    trend: TrendReport
    row_consistency: dict[str, dict[Provider, PairConsistency]]
    concept_options: list[tuple[str, str]]
    account_summary: AccountSummary
    filters: ViewFilters
    sort: SortSpec


def row_citation_consistency(row: QuestionRow, providers: list[Provider]) -> Optional[int]:
    return mean_score(question_consistency(row, p).citation for p in providers)


def _sort_value(row: QuestionRow, sort_field: SortField, providers: list[Provider]):
    if sort_field == SortField.QUESTION:
        return row.text.lower()
    if sort_field == SortField.CONCEPT:
        return row.concept_name.lower()
    if sort_field == SortField.FUNNEL:
        return FUNNEL_ORDER[row.funnel_stage]
    if sort_field == SortField.LAST_CHECKED:
        return row.last_checked_at
    return row_citation_consistency(row, providers)


def sort_rows(rows: list[QuestionRow], sort: SortSpec, providers: list[Provider]) -> list[QuestionRow]:
    """Sort rows; rows without a value (never checked, no score) always go last.

    Ties keep question-text order in either direction.
    """
    keyed = [(_sort_value(row, sort.field, providers), row) for row in rows]
    present = [(value, row) for value, row in keyed if value is not None]
    missing = [row for value, row in keyed if value is None]

    descending = sort.descending
    if sort.field == SortField.LAST_CHECKED:
        # Ascending last-checked lists the most recent check first
        descending = not descending

    present.sort(key=lambda item: item[1].text.lower())
    present.sort(key=lambda item: item[0], reverse=descending)
    return [row for _, row in present] + missing


def concept_options(aggregation: Aggregation) -> list[tuple[str, str]]:
    options: dict[str, str] = {}
    for row in aggregation.rows:
        options.setdefault(row.concept_id, row.concept_name)
    return sorted(options.items(), key=lambda item: item[1].lower())


def compose(
    aggregation: Aggregation,
    filters: Optional[ViewFilters] = None,
    sort: Optional[SortSpec] = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    now: Optional[datetime] = None,
) -> VisibilityView:
    """Build one page of the view.

    Summary, consistency and trend are derived from the filtered rows, never
    from account-wide figures.
    """
    filters = filters or ViewFilters()
    sort = sort or SortSpec()
    providers = filters.providers

    rows = sort_rows([row for row in aggregation.rows if filters.matches(row)], sort, providers)

    page_size = max(1, page_size)
    page_count = max(1, math.ceil(len(rows) / page_size))
    page = min(max(1, page), page_count)
    page_rows = rows[(page - 1) * page_size: page * page_size]

    history = [result for row in rows for result in row.results_for(providers)]

    return VisibilityView(
        rows=page_rows,
        total_rows=len(rows),
        page=page,
        page_count=page_count,
        summary=summarize_rows(rows, providers),
        consistency=score_rows(rows, providers),
        trend=trend_report(history, providers, now),
        row_consistency={
            row.key: {p: question_consistency(row, p) for p in providers} for row in page_rows
        },
        concept_options=concept_options(aggregation),
        account_summary=aggregation.summary,
        filters=filters,
        sort=sort,
    )


def format_score(value: Optional[int]) -> str:
    """Render a 0-100 score; missing data is a dash, never zero."""
    return EMPTY_VALUE if value is None else f"{value}%"


def format_rate(value: Optional[float]) -> str:
    return EMPTY_VALUE if value is None else f"{round_half_up(value)}%"


class ViewScheduler:
    """Recomputes views off the interaction path; only the newest request publishes.

    Deferral never changes the result: a published view is identical to what
    ``compose`` returns for the same arguments.
    """

    def __init__(self, publish: Optional[Callable[[VisibilityView], None]] = None):
        self.publish = publish
        self.latest: Optional[VisibilityView] = None
        self._generation = 0
        self._task: Optional[asyncio.Task] = None

    def request(self, aggregation: Aggregation, **kwargs) -> asyncio.Task:
        """Schedule a recompute, superseding any in flight."""
        self.cancel()
        self._generation += 1
        self._task = asyncio.create_task(self._recompute(self._generation, aggregation, kwargs))
        return self._task

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def flush(self) -> Optional[VisibilityView]:
        """Wait for the newest request and return the latest published view."""
        task = self._task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        return self.latest

    async def _recompute(self, generation: int, aggregation: Aggregation, kwargs: dict) -> Optional[VisibilityView]:
        view = await asyncio.to_thread(compose, aggregation, **kwargs)
        if generation != self._generation:
            logger.debug("stale_view_discarded", generation=generation, current=self._generation)
            return None

        self.latest = view
        if self.publish is not None:
            self.publish(view)
        return view
