import pytest

from visibility.analytics.aggregator import aggregate
from visibility.analytics.consistency import mean_score, pair_consistency, score_rows
from visibility.models import Provider

from builders import make_concept, make_question, make_result


@pytest.mark.parametrize("total", [2, 3, 4, 5, 7, 10])
def test_pair_consistency_is_between_50_and_100(total):
    for positive in range(total + 1):
        score = pair_consistency(total, positive)
        assert 50 <= score <= 100
        assert (score == 100) == (positive in (0, total))


def test_pair_consistency_is_symmetric():
    assert pair_consistency(4, 3) == pair_consistency(4, 1) == 75
    assert pair_consistency(4, 2) == 50
    assert pair_consistency(3, 2) == 67
    assert pair_consistency(3, 1) == 67


def test_pair_consistency_undefined_below_two_checks():
    assert pair_consistency(0, 0) is None
    assert pair_consistency(1, 1) is None
    assert pair_consistency(1, 0) is None


def test_mean_score_skips_missing_scores():
    assert mean_score([None, None]) is None
    assert mean_score([]) is None
    assert mean_score([100, None, 50]) == 75
    # Halves round up
    assert mean_score([67, 100]) == 84


def test_single_question_two_providers_scenario():
    question = make_question("What is the best FMS?", id="q1")
    concept = make_concept("c1", "fms", [question])
    results = [
        make_result(question, Provider.CHATGPT, cited=True, days_ago=3),
        make_result(question, Provider.CHATGPT, cited=True, days_ago=2),
        make_result(question, Provider.CHATGPT, cited=False, days_ago=1),
        make_result(question, Provider.CLAUDE, cited=True, days_ago=1),
    ]

    row = aggregate([concept], results).rows[0]
    report = score_rows([row], [Provider.CHATGPT, Provider.CLAUDE])

    assert report.providers[Provider.CHATGPT].citation == 67
    assert report.providers[Provider.CLAUDE].citation is None
    assert report.citation == 67

    assert round(row.stats[Provider.CHATGPT].citation_rate) == 67
    assert row.stats[Provider.CLAUDE].citation_rate == 100


def test_rollups_only_cover_rows_passed_in():
    stable = make_question("stable question", id="q1")
    flaky = make_question("flaky question", id="q2")
    concept = make_concept("c1", "fms", [stable, flaky])
    results = [
        make_result(stable, cited=True, days_ago=2),
        make_result(stable, cited=True, days_ago=1),
        make_result(flaky, cited=True, days_ago=2),
        make_result(flaky, cited=False, days_ago=1),
    ]
    rows = aggregate([concept], results).rows

    assert score_rows(rows, [Provider.CHATGPT]).citation == 75
    assert score_rows(rows[:1], [Provider.CHATGPT]).citation == 100
    assert score_rows(rows[1:], [Provider.CHATGPT]).citation == 50


def test_mention_consistency_is_scored_separately():
    question = make_question("q", id="q1")
    concept = make_concept("c1", "fms", [question])
    results = [
        make_result(question, cited=True, mentioned=False, days_ago=2),
        make_result(question, cited=True, mentioned=True, days_ago=1),
    ]
    report = score_rows(aggregate([concept], results).rows, [Provider.CHATGPT])

    assert report.citation == 100
    assert report.mention == 50


def test_no_qualifying_provider_gives_none():
    question = make_question("q", id="q1")
    concept = make_concept("c1", "fms", [question])
    report = score_rows(aggregate([concept], [make_result(question)]).rows, [Provider.CHATGPT, Provider.GEMINI])

    assert report.citation is None
    assert report.mention is None
    assert report.providers[Provider.GEMINI].questions_scored == 0
