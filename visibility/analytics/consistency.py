"""
Consistency Scorer
==================

Measures how repeatable a provider's answer is for the same question across
independent checks, separately for citations and brand mentions.

A pair scores ``max(positive, negative) / total`` as a percentage, so an
answer that is reliably cited and one that is reliably not cited both score
100. The score is undefined for fewer than two checks.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

from ..models import PROVIDERS, Provider, round_half_up
from .aggregator import CheckCounts, QuestionRow

MIN_CHECKS_FOR_CONSISTENCY = 2


def pair_consistency(total: int, positive: int) -> Optional[int]:
    """Repeatability of one binary outcome, 50-100, or None below two checks."""
    if total < MIN_CHECKS_FOR_CONSISTENCY:
        return None
    agreeing = max(positive, total - positive)
    return round_half_up(agreeing / total * 100)


def mean_score(scores: Iterable[Optional[int]]) -> Optional[int]:
    """Average of the defined scores, or None if there are none."""
    defined = [score for score in scores if score is not None]
    if not defined:
        return None
    return round_half_up(sum(defined) / len(defined))


@dataclass
class PairConsistency:
    citation: Optional[int]
    mention: Optional[int]
    checks: int

    @classmethod
    def from_counts(cls, counts: CheckCounts) -> "PairConsistency":
        return cls(
            citation=pair_consistency(counts.total, counts.cited),
            mention=pair_consistency(counts.total, counts.mentioned),
            checks=counts.total,
        )


@dataclass
class ProviderConsistency:
    provider: Provider
    citation: Optional[int]
    mention: Optional[int]
    questions_scored: int


@dataclass
class ConsistencyReport:
    """Provider and account rollups over one row set."""
    providers: dict[Provider, ProviderConsistency] = field(default_factory=dict)
    citation: Optional[int] = None
    mention: Optional[int] = None


def question_consistency(row: QuestionRow, provider: Provider) -> PairConsistency:
    return PairConsistency.from_counts(row.stats.get(provider, CheckCounts()))


def score_rows(rows: list[QuestionRow], providers: Iterable[Provider] = PROVIDERS) -> ConsistencyReport:
    """Roll per-question scores up to provider and account level.

    Always pass the rows currently in view; rollups are never shared between
    differently filtered row sets.
    """
    report = ConsistencyReport()

    for provider in providers:
        pairs = [question_consistency(row, provider) for row in rows]
        citation_scores = [p.citation for p in pairs]
        report.providers[provider] = ProviderConsistency(
            provider=provider,
            citation=mean_score(citation_scores),
            mention=mean_score(p.mention for p in pairs),
            questions_scored=sum(1 for score in citation_scores if score is not None),
        )

    report.citation = mean_score(p.citation for p in report.providers.values())
    report.mention = mean_score(p.mention for p in report.providers.values())
    return report
