"""
Result Aggregator
=================

Joins every question to its most recent check result per provider and to its
full per-provider check history. Everything here is a pure function of the
concepts and results passed in.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

import structlog

from ..models import PROVIDERS, CheckResult, Concept, FunnelStage, Provider, Question

logger = structlog.get_logger(__name__)


@dataclass
class CheckCounts:
    """Counts of checks and of the checks that cited / mentioned us."""
    total: int = 0
    cited: int = 0
    mentioned: int = 0

    def add(self, result: CheckResult) -> None:
        self.total += 1
        if result.domain_cited:
            self.cited += 1
        if result.brand_mentioned:
            self.mentioned += 1

    @property
    def citation_rate(self) -> Optional[float]:
        return self.cited / self.total * 100 if self.total else None

    @property
    def mention_rate(self) -> Optional[float]:
        return self.mentioned / self.total * 100 if self.total else None


@dataclass
class QuestionRow:
    """One question with its latest result and history for every provider."""
    key: str
    question: Question
    concept_id: str
    concept_name: str
    latest: dict[Provider, Optional[CheckResult]]
    history: dict[Provider, list[CheckResult]]
    stats: dict[Provider, CheckCounts]
    last_checked_at: Optional[datetime] = None

    @property
    def text(self) -> str:
        return self.question.text

    @property
    def funnel_stage(self) -> FunnelStage:
        return self.question.funnel_stage

    @property
    def group_id(self) -> Optional[str]:
        return self.question.group_id

    def results_for(self, providers: Iterable[Provider]) -> list[CheckResult]:
        """Full history of this question restricted to the given providers."""
        results = []
        for provider in providers:
            results.extend(self.history.get(provider, []))
        return results


@dataclass
class AccountSummary:
    """Visibility totals over the latest result of each question/provider pair."""
    total_concepts: int
    total_questions: int
    unique_checks: int
    overall: CheckCounts
    provider_stats: dict[Provider, CheckCounts] = field(default_factory=dict)

    @property
    def average_visibility(self) -> Optional[float]:
        return self.overall.citation_rate

    @property
    def mention_rate(self) -> Optional[float]:
        return self.overall.mention_rate


@dataclass
class Aggregation:
    rows: list[QuestionRow]
    summary: AccountSummary
    orphaned_results: int = 0


class QuestionIndex:
    """Resolves check results to the identity key of the question they belong to.

    A question with an id answers to that id and to its concept+text composite,
    so results recorded before ids existed still join. Questions without an id
    are known only by the composite key.
    """

    def __init__(self, concepts: Iterable[Concept]):
        self.entries: list[tuple[Concept, Question]] = []
        self._ids: dict[str, str] = {}
        self._composites: dict[str, str] = {}

        for concept in concepts:
            for question in concept.questions:
                self.entries.append((concept, question))
                if question.id:
                    self._ids.setdefault(question.id, question.key)
                self._composites.setdefault(question.composite_key, question.key)

    def resolve(self, result: CheckResult) -> Optional[str]:
        if result.question_id and result.question_id in self._ids:
            return self._ids[result.question_id]
        return self._composites.get(result.composite_key)


def dedupe_results(results: Iterable[CheckResult]) -> list[CheckResult]:
    """Drop repeated result ids, keeping the first occurrence."""
    seen = set()
    unique = []
    for result in results:
        if result.id in seen:
            continue
        seen.add(result.id)
        unique.append(result)
    return unique


def _chronological(results: list[CheckResult]) -> list[CheckResult]:
    return sorted(results, key=lambda r: (r.checked_at, r.id))


def latest_result(results: Iterable[CheckResult]) -> Optional[CheckResult]:
    """The result with the greatest checked_at, or None."""
    latest = None
    for result in results:
        if latest is None or (result.checked_at, result.id) > (latest.checked_at, latest.id):
            latest = result
    return latest


def build_row(
    concept: Concept,
    question: Question,
    results_by_provider: dict[Provider, list[CheckResult]],
) -> QuestionRow:
    latest: dict[Provider, Optional[CheckResult]] = {}
    history: dict[Provider, list[CheckResult]] = {}
    stats: dict[Provider, CheckCounts] = {}
    last_checked_at = None

    for provider in PROVIDERS:
        provider_history = _chronological(results_by_provider.get(provider, []))
        counts = CheckCounts()
        for result in provider_history:
            counts.add(result)

        history[provider] = provider_history
        stats[provider] = counts
        latest[provider] = provider_history[-1] if provider_history else None

        if latest[provider] and (last_checked_at is None or latest[provider].checked_at > last_checked_at):
            last_checked_at = latest[provider].checked_at

    return QuestionRow(
        key=question.key,
        question=question,
        concept_id=concept.id,
        concept_name=concept.phrase,
        latest=latest,
        history=history,
        stats=stats,
        last_checked_at=last_checked_at,
    )


def summarize_rows(rows: list[QuestionRow], providers: Iterable[Provider] = PROVIDERS) -> AccountSummary:
    """Summary over the latest results of the given rows and providers."""
    providers = list(providers)
    overall = CheckCounts()
    provider_stats = {provider: CheckCounts() for provider in providers}

    for row in rows:
        for provider in providers:
            result = row.latest.get(provider)
            if result is None:
                continue
            provider_stats[provider].add(result)
            overall.add(result)

    return AccountSummary(
        total_concepts=len({row.concept_id for row in rows}),
        total_questions=len(rows),
        unique_checks=overall.total,
        overall=overall,
        provider_stats=provider_stats,
    )


def summarize_account(
    concepts: list[Concept],
    results: list[CheckResult],
    index: Optional[QuestionIndex] = None,
) -> AccountSummary:
    """Account-wide unique-check statistics over raw results.

    Results whose question no longer exists still count here, keyed by their
    own question id or concept+text.
    """
    index = index or QuestionIndex(concepts)
    unique: dict[tuple[str, Provider], CheckResult] = {}

    for result in results:
        identity = index.resolve(result) or result.question_id or result.composite_key
        pair = (identity, result.provider)
        existing = unique.get(pair)
        if existing is None or (result.checked_at, result.id) > (existing.checked_at, existing.id):
            unique[pair] = result

    overall = CheckCounts()
    provider_stats = {provider: CheckCounts() for provider in PROVIDERS}
    for result in unique.values():
        provider_stats[result.provider].add(result)
        overall.add(result)

    return AccountSummary(
        total_concepts=len(concepts),
        total_questions=sum(len(c.questions) for c in concepts),
        unique_checks=len(unique),
        overall=overall,
        provider_stats=provider_stats,
    )


def aggregate(concepts: list[Concept], results: Iterable[CheckResult]) -> Aggregation:
    """Build the per-question rows and the account summary."""
    results = dedupe_results(results)
    index = QuestionIndex(concepts)

    grouped: dict[str, dict[Provider, list[CheckResult]]] = defaultdict(lambda: defaultdict(list))
    orphaned = 0
    for result in results:
        key = index.resolve(result)
        if key is None:
            orphaned += 1
            continue
        grouped[key][result.provider].append(result)

    rows = [build_row(concept, question, grouped.get(question.key, {})) for concept, question in index.entries]
    summary = summarize_account(concepts, results, index)

    if orphaned:
        logger.debug("orphaned_results_excluded", count=orphaned)

    logger.debug(
        "results_aggregated",
        questions=len(rows),
        results=len(results),
        unique_checks=summary.unique_checks,
    )

    return Aggregation(rows=rows, summary=summary, orphaned_results=orphaned)
