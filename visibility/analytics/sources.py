"""
Research Sources
================

Ranks the websites AI assistants cite or consult when answering tracked
questions. High-frequency domains are link-building targets.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional
from urllib.parse import urlparse

from ..models import CheckResult, SourceReference

MAX_SAMPLES = 3

SORT_FIELDS = ("domain", "frequency", "last_seen", "concepts")


@dataclass
class ResearchSource:
    domain: str
    frequency: int = 0
    last_seen: Optional[datetime] = None
    sample_urls: list[str] = field(default_factory=list)
    sample_titles: list[str] = field(default_factory=list)
    concepts: list[str] = field(default_factory=list)
    is_ours: bool = False


@dataclass
class ResearchSourcesReport:
    sources: list[ResearchSource]
    total_checks: int
    unique_domains: int
    your_domain_appearances: int


def normalize_domain(value: Optional[str]) -> Optional[str]:
    """Bare lowercase host for a URL or domain string, without a leading www."""
    if not value:
        return None
    value = value.strip().lower()
    host = urlparse(value).netloc if "://" in value else value.split("/", 1)[0]
    host = host.split("@")[-1].split(":")[0]
    if host.startswith("www."):
        host = host[4:]
    return host or None


def _is_target(domain: str, target_domain: Optional[str]) -> bool:
    target = normalize_domain(target_domain)
    if not target:
        return False
    return domain == target or domain.endswith("." + target)


def _references(result: CheckResult) -> list[tuple[SourceReference, bool]]:
    refs: list[tuple[SourceReference, bool]] = [(c, c.is_ours) for c in result.citations]
    refs.extend((s, False) for s in result.search_results)
    return refs


def rank_research_sources(
    results: Iterable[CheckResult],
    target_domain: Optional[str] = None,
    concept_names: Optional[dict[str, str]] = None,
    sort_field: str = "frequency",
    descending: bool = True,
) -> ResearchSourcesReport:
    """Aggregate cited/consulted domains across results.

    Frequency counts the checks a domain appeared in, not its raw occurrences.
    """
    if sort_field not in SORT_FIELDS:
        raise ValueError(f"Unknown sort field: {sort_field}")

    concept_names = concept_names or {}
    sources: dict[str, ResearchSource] = {}
    total_checks = 0

    for result in results:
        total_checks += 1
        seen_in_check = set()

        for ref, is_ours in _references(result):
            domain = normalize_domain(ref.domain) or normalize_domain(ref.url)
            if not domain:
                continue

            source = sources.setdefault(domain, ResearchSource(domain=domain))
            source.is_ours = source.is_ours or is_ours or _is_target(domain, target_domain)

            if ref.url and ref.url not in source.sample_urls and len(source.sample_urls) < MAX_SAMPLES:
                source.sample_urls.append(ref.url)
            if ref.title and ref.title not in source.sample_titles and len(source.sample_titles) < MAX_SAMPLES:
                source.sample_titles.append(ref.title)

            if domain in seen_in_check:
                continue
            seen_in_check.add(domain)

            source.frequency += 1
            if source.last_seen is None or result.checked_at > source.last_seen:
                source.last_seen = result.checked_at
            concept = concept_names.get(result.concept_id or "", result.concept_id)
            if concept and concept not in source.concepts:
                source.concepts.append(concept)

    sort_keys = {
        "domain": lambda s: s.domain,
        "frequency": lambda s: (s.frequency, s.domain),
        # Every ranked source has been seen at least once
        "last_seen": lambda s: (s.last_seen, s.domain),
        "concepts": lambda s: (len(s.concepts), s.domain),
    }
    ranked = sorted(sources.values(), key=sort_keys[sort_field], reverse=descending)

    return ResearchSourcesReport(
        sources=ranked,
        total_checks=total_checks,
        unique_domains=len(sources),
        your_domain_appearances=sum(s.frequency for s in sources.values() if s.is_ours),
    )
