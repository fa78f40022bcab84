"""
Demo Data Generator
===================

Generates realistic sample concepts and check results for the visibility
dashboard when the collaborator API is not configured (demo mode).
"""

import random
import uuid
from datetime import datetime, timedelta
from typing import Optional

from .batch.orchestrator import QueuedQuestion
from .connectors.memory import Checker, InMemoryVisibilityAPI
from .models import (
    PROVIDERS,
    CheckResult,
    Citation,
    Concept,
    FunnelStage,
    MentionedBrand,
    Provider,
    Question,
    SourceReference,
    utcnow,
)

DEMO_ACCOUNT_ID = "demo"
DEMO_DOMAIN = "worksuite.com"
DEMO_BRAND = "Worksuite"

DEMO_CONCEPTS = [
    ("freelancer management", [
        ("What is the best freelancer management system?", FunnelStage.TOP, None),
        ("How do companies manage large freelance workforces?", FunnelStage.TOP, "research"),
        ("Which freelancer management platforms integrate with SAP?", FunnelStage.MIDDLE, "integrations"),
        ("Worksuite vs Upwork Enterprise for managing contractors", FunnelStage.BOTTOM, "comparisons"),
    ]),
    ("contractor payments", [
        ("How do I pay international contractors compliantly?", FunnelStage.TOP, "research"),
        ("What are the fees for global contractor payment platforms?", FunnelStage.MIDDLE, None),
        ("Best tool to consolidate contractor invoices", FunnelStage.BOTTOM, None),
    ]),
    ("contractor compliance", [
        ("What is worker misclassification risk?", FunnelStage.TOP, "research"),
        ("How to classify independent contractors in the UK (IR35)?", FunnelStage.MIDDLE, None),
        ("Which platforms automate contractor classification checks?", FunnelStage.BOTTOM, "comparisons"),
    ]),
    ("vendor management", [
        ("What is the difference between VMS and FMS?", FunnelStage.TOP, None),
        ("Top vendor management systems for enterprises", FunnelStage.MIDDLE, "comparisons"),
    ]),
]

COMPETITORS = [
    ("Upwork", "Freelance marketplace"),
    ("Deel", "Global payroll"),
    ("SAP Fieldglass", "Vendor management"),
    ("Beeline", "Vendor management"),
    ("Remote", "Employer of record"),
    ("Papaya Global", "Global payroll"),
]

SOURCE_SITES = [
    ("g2.com", "Best Freelancer Management Systems"),
    ("capterra.com", "Contractor Management Software Reviews"),
    ("forbes.com", "How Enterprises Are Scaling Freelance Talent"),
    ("gartner.com", "Market Guide for Contingent Workforce Management"),
    ("reddit.com", "What do you use to pay contractors?"),
    ("hbr.org", "The Rise of the On-Demand Workforce"),
    ("gov.uk", "Off-payroll working rules (IR35)"),
    ("upwork.com", "Upwork Enterprise Overview"),
    ("deel.com", "Contractor Payments Guide"),
]

# Likelihood that a provider cites the demo domain
CITATION_PROPENSITY = {
    Provider.CHATGPT: 0.45,
    Provider.CLAUDE: 0.35,
    Provider.GEMINI: 0.25,
    Provider.PERPLEXITY: 0.6,
}


def generate_concepts(rng: Optional[random.Random] = None) -> list[Concept]:
    """Generate sample concepts with their questions"""
    rng = rng or random.Random()
    now = utcnow()
    concepts = []

    for i, (phrase, questions) in enumerate(DEMO_CONCEPTS):
        concept_id = f"kw-{i + 1}"
        concepts.append(Concept(
            id=concept_id,
            phrase=phrase,
            questions=[
                Question(
                    id=f"{concept_id}-q{j + 1}",
                    text=text,
                    funnel_stage=stage,
                    group_id=group,
                    created_at=now - timedelta(days=rng.randint(60, 120)),
                )
                for j, (text, stage, group) in enumerate(questions)
            ],
        ))

    return concepts


def make_check_result(
    concept_id: str,
    question_id: Optional[str],
    question: str,
    provider: Provider,
    checked_at: datetime,
    rng: random.Random,
    target_domain: str = DEMO_DOMAIN,
    brand_name: str = DEMO_BRAND,
    propensity_shift: float = 0.0,
) -> CheckResult:
    """Generate a single plausible check result"""
    propensity = min(1.0, max(0.0, CITATION_PROPENSITY[provider] + propensity_shift))
    cited = rng.random() < propensity
    mentioned = cited or rng.random() < propensity / 2

    sites = rng.sample(SOURCE_SITES, k=rng.randint(2, 5))
    citations = [
        Citation(position=pos + 1, url=f"https://www.{domain}/article/{pos + 1}", domain=domain, title=title)
        for pos, (domain, title) in enumerate(sites)
    ]
    citation_position = None
    if cited:
        citation_position = rng.randint(1, len(citations) + 1)
        citations.insert(citation_position - 1, Citation(
            position=citation_position,
            url=f"https://{target_domain}/blog/{question_id or 'guide'}",
            domain=target_domain,
            title=f"{brand_name} Guide",
            is_ours=True,
        ))
        citations = [c.model_copy(update={"position": idx + 1}) for idx, c in enumerate(citations)]

    brands = [MentionedBrand(title=t, category=c) for t, c in rng.sample(COMPETITORS, k=rng.randint(1, 3))]
    if mentioned:
        brands.insert(0, MentionedBrand(title=brand_name, category="Freelancer management"))

    return CheckResult(
        id=uuid.UUID(int=rng.getrandbits(128)).hex,
        concept_id=concept_id,
        question_id=question_id,
        question=question,
        provider=provider,
        checked_at=checked_at,
        domain_cited=cited,
        citation_position=citation_position,
        citation_url=citations[citation_position - 1].url if citation_position else None,
        total_citations=len(citations),
        brand_mentioned=mentioned,
        mentioned_brands=brands,
        response_snippet=f"When evaluating options for '{question}', teams usually compare {brands[0].title} and others.",
        citations=citations,
        search_results=[
            SourceReference(url=f"https://{domain}/search", domain=domain, title=title)
            for domain, title in rng.sample(SOURCE_SITES, k=2)
        ],
        fan_out_queries=[f"{question} 2026", f"{question} reviews"],
    )


def generate_check_results(
    concepts: list[Concept],
    days: int = 60,
    checks_per_question: int = 6,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> list[CheckResult]:
    """Generate check history spread over the last ``days`` days.

    Visibility improves slightly over time so the trend has a direction.
    """
    rng = rng or random.Random()
    now = now or utcnow()
    results = []

    for concept in concepts:
        for question in concept.questions:
            for provider in PROVIDERS:
                # Not every provider has been checked for every question
                if provider in (Provider.GEMINI, Provider.PERPLEXITY) and rng.random() < 0.4:
                    continue
                for _ in range(rng.randint(1, checks_per_question)):
                    age = timedelta(days=rng.uniform(0, days))
                    shift = 0.1 if age < timedelta(days=30) else -0.05
                    results.append(make_check_result(
                        concept.id,
                        question.id,
                        question.text,
                        provider,
                        now - age,
                        rng,
                        propensity_shift=shift,
                    ))

    return results


def simulated_checker(
    rng: Optional[random.Random] = None,
    failure_rate: float = 0.1,
    clock=utcnow,
) -> Checker:
    """Job runner stand-in: checks a question on a provider, failing now and then"""
    rng = rng or random.Random()

    def check(question: QueuedQuestion, provider: Provider) -> Optional[CheckResult]:
        if rng.random() < failure_rate:
            return None
        return make_check_result(
            question.concept_id,
            question.question_id,
            question.question,
            provider,
            clock(),
            rng,
            propensity_shift=0.1,
        )

    return check


def build_demo_api(
    seed: Optional[int] = 42,
    credits: int = 500,
    provider_costs: Optional[dict[Provider, int]] = None,
) -> InMemoryVisibilityAPI:
    """In-memory collaborator seeded with sample concepts, history and credits"""
    rng = random.Random(seed)
    concepts = generate_concepts(rng)
    return InMemoryVisibilityAPI(
        account_id=DEMO_ACCOUNT_ID,
        concepts=concepts,
        results=generate_check_results(concepts, rng=rng),
        credits=credits,
        checker=simulated_checker(rng),
        provider_costs=provider_costs,
    )
