"""
In-Memory Visibility API
========================

Collaborator backed by Python lists and the in-process batch orchestrator.
Used by demo mode and tests. When a checker is attached, each status poll
advances the active run as a job runner would.
"""

import csv
import json
from pathlib import Path
from typing import Callable, Iterable, Optional

import structlog

from ..batch.orchestrator import BatchRunOrchestrator, CreditLedger, QueuedQuestion
from ..errors import APIError
from ..models import BatchPreview, BatchRun, BatchRunTicket, CheckResult, Concept, Provider
from .base import VisibilityAPI

logger = structlog.get_logger(__name__)

# Returns the stored result of a check, or None when the provider call failed
Checker = Callable[[QueuedQuestion, Provider], Optional[CheckResult]]

EXPORT_COLUMNS = [
    "id",
    "keywordId",
    "questionId",
    "question",
    "llmProvider",
    "checkedAt",
    "domainCited",
    "citationPosition",
    "citationUrl",
    "totalCitations",
    "brandMentioned",
    "responseSnippet",
]


class InMemoryVisibilityAPI(VisibilityAPI):
    """Every collaborator contract over in-memory state for one account."""

    def __init__(
        self,
        account_id: str = "demo",
        concepts: Optional[Iterable[Concept]] = None,
        results: Optional[Iterable[CheckResult]] = None,
        orchestrator: Optional[BatchRunOrchestrator] = None,
        credits: int = 0,
        checker: Optional[Checker] = None,
        questions_per_poll: int = 1,
        provider_costs: Optional[dict[Provider, int]] = None,
    ):
        self.account_id = account_id
        self.concepts: list[Concept] = list(concepts or [])
        self.results: list[CheckResult] = list(results or [])
        self.orchestrator = orchestrator or BatchRunOrchestrator(
            question_source=lambda _account_id: self.concepts,
            ledger=CreditLedger({account_id: credits}),
            provider_costs=provider_costs,
        )
        self.checker = checker
        self.questions_per_poll = questions_per_poll

        # Failure injection
        self.failing_concepts: set[str] = set()
        self.status_failures = 0

        self.logger = logger.bind(component="InMemoryVisibilityAPI", account_id=account_id)

    @property
    def source_name(self) -> str:
        return "memory"

    async def list_concepts(self) -> list[Concept]:
        return list(self.concepts)

    async def list_results(self, concept_id: str, limit: int = 200) -> list[CheckResult]:
        if concept_id in self.failing_concepts:
            raise APIError(500, f"Failed to load results for {concept_id}")
        matching = [r for r in self.results if r.concept_id == concept_id]
        matching.sort(key=lambda r: r.checked_at, reverse=True)
        return matching[:limit]

    async def start(
        self,
        providers: list[Provider],
        retry_failed_from_run_id: Optional[str] = None,
        group_id: Optional[str] = None,
        scheduled_for=None,
    ) -> BatchRunTicket:
        return self.orchestrator.start(
            self.account_id,
            providers,
            retry_failed_from_run_id=retry_failed_from_run_id,
            group_id=group_id,
            scheduled_for=scheduled_for,
        )

    async def status(self, run_id: Optional[str] = None) -> Optional[BatchRun]:
        if self.status_failures > 0:
            self.status_failures -= 1
            raise APIError(503, "Batch status temporarily unavailable")

        if self.checker is not None:
            self.orchestrator.activate_due_runs()
            self._advance_active_run()
        return self.orchestrator.status(self.account_id, run_id)

    async def preview(self, providers: list[Provider], group_id: Optional[str] = None) -> BatchPreview:
        return self.orchestrator.preview(self.account_id, providers, group_id)

    async def cancel_scheduled(self, run_id: str) -> int:
        return self.orchestrator.cancel_scheduled(self.account_id, run_id)

    def _advance_active_run(self) -> None:
        run_id = self.orchestrator.register.holder(self.account_id)
        if run_id is None:
            return

        for question in self.orchestrator.pending_questions(run_id)[: self.questions_per_poll]:
            outcomes: dict[Provider, Optional[bool]] = {}
            for provider in question.checks:
                result = self.checker(question, provider)
                outcomes[provider] = result is not None
                if result is not None:
                    self.results.append(result)
            self.orchestrator.record_question(run_id, question.question_key, outcomes)

    async def export_results(self, destination: Path) -> Path:
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        rows = [r.model_dump(by_alias=True, mode="json") for r in self.results]

        if destination.suffix.lower() == ".csv":
            with open(destination, "w", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=EXPORT_COLUMNS, extrasaction="ignore")
                writer.writeheader()
                writer.writerows(rows)
        else:
            with open(destination, "w") as f:
                json.dump({"results": rows}, f, indent=2)

        self.logger.info("export_written", path=str(destination), results=len(rows))
        return destination
