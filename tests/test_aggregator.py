from visibility.analytics.aggregator import aggregate, dedupe_results, latest_result
from visibility.models import Provider

from builders import make_concept, make_question, make_result


def test_latest_result_per_provider():
    concept = make_concept("c1", "payroll", [make_question("Best payroll tool?", id="q1")])
    question = concept.questions[0]
    older = make_result(question, cited=True, days_ago=10)
    newer = make_result(question, cited=False, days_ago=1)
    claude = make_result(question, Provider.CLAUDE, cited=True, days_ago=3)

    aggregation = aggregate([concept], [newer, older, claude])
    row = aggregation.rows[0]

    assert row.latest[Provider.CHATGPT] is newer
    assert row.latest[Provider.CLAUDE] is claude
    assert row.latest[Provider.GEMINI] is None
    assert row.history[Provider.CHATGPT] == [older, newer]
    assert row.stats[Provider.CHATGPT].total == 2
    assert row.stats[Provider.CHATGPT].cited == 1
    assert row.last_checked_at == newer.checked_at


def test_latest_result_of_nothing():
    assert latest_result([]) is None


def test_every_question_gets_a_row():
    concept = make_concept("c1", "payroll", [
        make_question("checked", id="q1"),
        make_question("never checked", id="q2"),
    ])
    aggregation = aggregate([concept], [make_result(concept.questions[0])])

    assert [row.text for row in aggregation.rows] == ["checked", "never checked"]
    assert all(result is None for result in aggregation.rows[1].latest.values())


def test_orphaned_results_count_in_summary_but_not_rows():
    concept = make_concept("c1", "payroll", [make_question("kept", id="q1")])
    kept = make_result(concept.questions[0], cited=True)
    deleted_question = make_question("deleted", id="gone")
    orphan = make_result(deleted_question, cited=True)

    aggregation = aggregate([concept], [kept, orphan])

    assert aggregation.orphaned_results == 1
    assert sum(row.stats[Provider.CHATGPT].total for row in aggregation.rows) == 1
    assert aggregation.summary.unique_checks == 2
    assert aggregation.summary.total_questions == 1


def test_results_join_by_composite_key_without_ids():
    concept = make_concept("c1", "payroll", [make_question("No id here")])
    question = concept.questions[0]
    assert question.key == "c1:No id here"

    result = make_result(question, cited=True)
    aggregation = aggregate([concept], [result])

    assert aggregation.rows[0].latest[Provider.CHATGPT] is result
    assert aggregation.orphaned_results == 0


def test_legacy_results_join_a_question_that_gained_an_id():
    concept = make_concept("c1", "payroll", [make_question("Best payroll tool?", id="q1")])
    legacy = make_question("Best payroll tool?")
    legacy = legacy.model_copy(update={"concept_id": "c1"})
    result = make_result(legacy)

    aggregation = aggregate([concept], [result])

    assert aggregation.rows[0].latest[Provider.CHATGPT] is result


def test_id_identity_survives_text_edits():
    concept = make_concept("c1", "payroll", [make_question("Edited wording", id="q1")])
    before_edit = make_question("Original wording", id="q1")
    result = make_result(before_edit)

    aggregation = aggregate([concept], [result])

    assert aggregation.rows[0].latest[Provider.CHATGPT] is result


def test_refetched_duplicates_do_not_double_count():
    concept = make_concept("c1", "payroll", [make_question("q", id="q1")])
    first = make_result(concept.questions[0], cited=True, id="dup")
    again = make_result(concept.questions[0], cited=True, id="dup")

    aggregation = aggregate([concept], [first, again])

    assert aggregation.rows[0].stats[Provider.CHATGPT].total == 1
    assert aggregation.summary.unique_checks == 1
    assert dedupe_results([first, again]) == [first]


def test_summary_uses_latest_result_per_pair():
    concept = make_concept("c1", "payroll", [
        make_question("a", id="q1"),
        make_question("b", id="q2"),
    ])
    a, b = concept.questions
    results = [
        make_result(a, cited=False, mentioned=True, days_ago=5),
        make_result(a, cited=True, days_ago=1),
        make_result(b, cited=False, days_ago=2),
        make_result(b, Provider.CLAUDE, cited=True, mentioned=True, days_ago=2),
    ]

    summary = aggregate([concept], results).summary

    assert summary.total_concepts == 1
    assert summary.total_questions == 2
    assert summary.unique_checks == 3
    assert summary.average_visibility == 2 / 3 * 100
    assert summary.mention_rate == 1 / 3 * 100
    assert summary.provider_stats[Provider.CHATGPT].citation_rate == 50
    assert summary.provider_stats[Provider.GEMINI].citation_rate is None
