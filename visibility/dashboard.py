"""
Visibility Dashboard
====================

Owns the data behind the visibility page: loads concepts and results,
aggregates them, composes filtered views, and drives batch runs through the
status poller. The poller's refresh callback reloads the data, so a finished
run is always followed by a full refetch and recompute.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

import structlog

from .analytics.aggregator import Aggregation, aggregate
from .analytics.sources import ResearchSourcesReport, rank_research_sources
from .analytics.trends import Granularity, SeriesPoint, citation_rate_series
from .batch.poller import BatchNotification, BatchStatusPoller
from .config import VisibilityConfig, get_config
from .connectors.base import VisibilityAPI
from .errors import VisibilityError
from .loader import ResultLoader
from .models import BatchRun, BatchRunTicket, CheckResult, Concept, Provider
from .view import SortSpec, ViewFilters, ViewScheduler, VisibilityView, compose

logger = structlog.get_logger(__name__)


class VisibilityDashboard:
    """State and actions of one mounted visibility page."""

    def __init__(
        self,
        api: VisibilityAPI,
        config: Optional[VisibilityConfig] = None,
        on_notify: Optional[Callable[[BatchNotification], None]] = None,
    ):
        self.api = api
        self.config = config or get_config()
        self.loader = ResultLoader(api, limit=self.config.results_fetch_limit)
        self.poller = BatchStatusPoller(
            api,
            on_refresh=self.load,
            on_notify=on_notify,
            interval=self.config.batch.poll_interval,
            recovery_lookback=timedelta(hours=self.config.batch.recovery_lookback_hours),
        )
        self.scheduler = ViewScheduler()

        self.concepts: list[Concept] = []
        self.results: list[CheckResult] = []
        self.aggregation: Optional[Aggregation] = None

        self.filters = ViewFilters(providers=list(self.config.default_providers))
        self.sort = SortSpec()
        self.page = 1

        self.logger = logger.bind(component="VisibilityDashboard", source=api.source_name)

    async def load(self) -> Aggregation:
        """Refetch everything and rebuild the aggregation."""
        concepts = await self.api.list_concepts()
        results = await self.loader.fetch_all(concepts)

        self.concepts = concepts
        self.results = results
        self.aggregation = aggregate(concepts, results)

        self.logger.info(
            "dashboard_loaded",
            concepts=len(concepts),
            questions=len(self.aggregation.rows),
            results=len(results),
            orphaned_results=self.aggregation.orphaned_results,
        )
        return self.aggregation

    async def mount(self) -> None:
        await self.load()
        await self.poller.resume()

    async def unmount(self) -> None:
        await self.poller.stop()
        self.scheduler.cancel()

    def _apply(
        self,
        filters: Optional[ViewFilters],
        sort: Optional[SortSpec],
        page: Optional[int],
    ) -> Aggregation:
        if self.aggregation is None:
            raise VisibilityError("Dashboard data has not been loaded")
        if filters is not None:
            self.filters = filters
            # A new question set starts from its first page
            self.page = 1
        if sort is not None:
            self.sort = sort
        if page is not None:
            self.page = page
        return self.aggregation

    def view(
        self,
        filters: Optional[ViewFilters] = None,
        sort: Optional[SortSpec] = None,
        page: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> VisibilityView:
        aggregation = self._apply(filters, sort, page)
        view = compose(
            aggregation,
            self.filters,
            self.sort,
            page=self.page,
            page_size=self.config.page_size,
            now=now,
        )
        self.page = view.page
        return view

    def request_view(
        self,
        filters: Optional[ViewFilters] = None,
        sort: Optional[SortSpec] = None,
        page: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> asyncio.Task:
        """Deferred variant of ``view``; the scheduler publishes only the newest result."""
        aggregation = self._apply(filters, sort, page)
        return self.scheduler.request(
            aggregation,
            filters=self.filters,
            sort=self.sort,
            page=self.page,
            page_size=self.config.page_size,
            now=now,
        )

    def trend_series(
        self,
        granularity: Granularity = Granularity.WEEKLY,
        now: Optional[datetime] = None,
    ) -> list[SeriesPoint]:
        active = set(self.filters.providers)
        in_scope = [r for r in self.results if r.provider in active]
        return citation_rate_series(in_scope, granularity, now)

    def sources(self, sort_field: str = "frequency", descending: bool = True) -> ResearchSourcesReport:
        return rank_research_sources(
            self.results,
            target_domain=self.config.target_domain,
            concept_names={c.id: c.phrase for c in self.concepts},
            sort_field=sort_field,
            descending=descending,
        )

    # ------------------------------------------------------------------
    # Batch runs
    # ------------------------------------------------------------------

    async def start_batch(
        self,
        providers: Optional[Iterable[Provider]] = None,
        group_id: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> BatchRunTicket:
        providers = list(providers) if providers else list(self.filters.providers)
        return await self.poller.start_run(providers, group_id=group_id, scheduled_for=scheduled_for)

    async def retry_failed(
        self,
        providers: Optional[Iterable[Provider]] = None,
        run: Optional[BatchRun] = None,
    ) -> BatchRunTicket:
        return await self.poller.retry_failed(providers, run=run)

    async def dismiss_batch(self) -> None:
        await self.poller.dismiss()

    async def cancel_scheduled(self, run_id: str) -> int:
        refunded = await self.api.cancel_scheduled(run_id)
        self.logger.info("scheduled_run_cancelled", run_id=run_id, credits_refunded=refunded)
        return refunded
