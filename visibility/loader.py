"""
Result Loader
=============

Fetches check results for every concept concurrently and joins them before
aggregation.
"""

import asyncio
from typing import Iterable

import structlog

from .connectors.base import CheckResultsAPI
from .models import CheckResult, Concept

logger = structlog.get_logger(__name__)


class ResultLoader:
    """One results fetch per concept, all in flight at once."""

    def __init__(self, api: CheckResultsAPI, limit: int = 200):
        self.api = api
        self.limit = limit
        self.logger = logger.bind(component="ResultLoader")

    async def fetch_concept(self, concept: Concept) -> list[CheckResult]:
        """Results for one concept; a failed fetch is logged and yields no results."""
        try:
            return await self.api.list_results(concept.id, limit=self.limit)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning(
                "concept_results_fetch_failed",
                concept_id=concept.id,
                concept=concept.phrase,
                error=str(e),
            )
            return []

    async def fetch_all(self, concepts: Iterable[Concept]) -> list[CheckResult]:
        concepts = list(concepts)
        batches = await asyncio.gather(*(self.fetch_concept(c) for c in concepts))

        results = [result for batch in batches for result in batch]
        self.logger.info(
            "results_loaded",
            concepts=len(concepts),
            results=len(results),
            empty_concepts=sum(1 for batch in batches if not batch),
        )
        return results
