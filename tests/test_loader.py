import asyncio

from structlog.testing import capture_logs

from visibility.connectors.memory import InMemoryVisibilityAPI
from visibility.loader import ResultLoader

from builders import make_concept, make_question, make_result


def test_failed_concept_fetch_yields_no_results():
    payroll = make_concept("c1", "Payroll", [make_question("a", id="q1")])
    broken = make_concept("c2", "Broken", [make_question("b", id="q2")])
    api = InMemoryVisibilityAPI(
        concepts=[payroll, broken],
        results=[make_result(payroll.questions[0]), make_result(broken.questions[0])],
    )
    api.failing_concepts.add("c2")

    with capture_logs() as logs:
        results = asyncio.run(ResultLoader(api).fetch_all([payroll, broken]))

    assert [r.concept_id for r in results] == ["c1"]
    failures = [e for e in logs if e["event"] == "concept_results_fetch_failed"]
    assert len(failures) == 1
    assert failures[0]["concept_id"] == "c2"


def test_fetch_respects_limit():
    concept = make_concept("c1", "Payroll", [make_question("a", id="q1")])
    question = concept.questions[0]
    api = InMemoryVisibilityAPI(
        concepts=[concept],
        results=[make_result(question, days_ago=d) for d in range(5)],
    )

    results = asyncio.run(ResultLoader(api, limit=3).fetch_concept(concept))

    assert len(results) == 3
    assert results[0].checked_at > results[-1].checked_at
