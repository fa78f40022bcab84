import pytest

from visibility.analytics.sources import normalize_domain, rank_research_sources
from visibility.models import SourceReference

from builders import make_concept, make_question, make_result


@pytest.mark.parametrize("value, expected", [
    ("https://www.G2.com/categories/fms", "g2.com"),
    ("www.capterra.com", "capterra.com"),
    ("forbes.com/advisor", "forbes.com"),
    ("http://user@blog.example.com:8080/x", "blog.example.com"),
    ("", None),
    (None, None),
])
def test_normalize_domain(value, expected):
    assert normalize_domain(value) == expected


def test_sources_are_ranked_by_checks_they_appear_in():
    payroll = make_concept("c1", "Payroll", [make_question("a", id="q1")])
    contractors = make_concept("c2", "Contractors", [make_question("b", id="q2")])
    first = make_result(payroll.questions[0], days_ago=3, domains=("www.g2.com", "g2.com", "worksuite.com"))
    second = make_result(contractors.questions[0], days_ago=1, domains=("g2.com",))
    third = make_result(
        payroll.questions[0],
        days_ago=2,
        domains=("forbes.com",),
    ).model_copy(update={"search_results": [SourceReference(url="https://blog.worksuite.com/post")]})

    report = rank_research_sources(
        [first, second, third],
        target_domain="https://worksuite.com",
        concept_names={"c1": "Payroll", "c2": "Contractors"},
    )

    assert report.total_checks == 3
    assert report.unique_domains == 4
    top = report.sources[0]
    assert top.domain == "g2.com"
    assert top.frequency == 2
    assert top.last_seen == second.checked_at
    assert top.concepts == ["Payroll", "Contractors"]
    assert top.sample_urls == ["https://www.g2.com/page", "https://g2.com/page"]

    ours = {s.domain for s in report.sources if s.is_ours}
    assert ours == {"worksuite.com", "blog.worksuite.com"}
    assert report.your_domain_appearances == 2


def test_sort_fields():
    concept = make_concept("c1", "Payroll", [make_question("a", id="q1")])
    question = concept.questions[0]
    results = [
        make_result(question, days_ago=5, domains=("b.com", "a.com")),
        make_result(question, days_ago=1, domains=("b.com",)),
    ]

    by_domain = rank_research_sources(results, sort_field="domain", descending=False)
    by_recency = rank_research_sources(results, sort_field="last_seen")

    assert [s.domain for s in by_domain.sources] == ["a.com", "b.com"]
    assert [s.domain for s in by_recency.sources] == ["b.com", "a.com"]
    with pytest.raises(ValueError):
        rank_research_sources(results, sort_field="popularity")
