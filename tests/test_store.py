import asyncio

import pytest

from database import DatabaseConnection, SqlCheckResultStore
from visibility.models import Citation, MentionedBrand, Provider

from builders import make_concept, make_question, make_result


@pytest.fixture
def db():
    db = DatabaseConnection("sqlite://")
    db.create_tables()
    yield db
    db.close()


@pytest.fixture
def concept():
    return make_concept("c1", "Payroll", [make_question("Best payroll tool?", id="q1")])


def test_append_is_idempotent(db, concept):
    store = SqlCheckResultStore(db, account_id="acct")
    results = [make_result(concept.questions[0], days_ago=d) for d in range(3)]

    assert store.append(results) == 3
    assert store.append(results + [results[0]]) == 0
    assert store.count() == 3


def test_results_are_scoped_to_the_account(db, concept):
    mine = SqlCheckResultStore(db, account_id="acct")
    theirs = SqlCheckResultStore(db, account_id="other")
    mine.append([make_result(concept.questions[0])])

    assert theirs.count() == 0
    assert theirs.list_for_concept("c1") == []


def test_most_recent_first_with_limit(db, concept):
    store = SqlCheckResultStore(db, account_id="acct")
    results = [make_result(concept.questions[0], days_ago=d) for d in (5, 1, 3)]
    store.append(results)

    listed = store.list_for_concept("c1", limit=2)

    assert [r.id for r in listed] == [results[1].id, results[2].id]
    assert asyncio.run(store.list_results("c1", limit=1))[0].id == results[1].id


def test_nested_fields_survive_storage(db, concept):
    store = SqlCheckResultStore(db, account_id="acct")
    result = make_result(
        concept.questions[0],
        Provider.PERPLEXITY,
        cited=True,
        days_ago=2,
        domains=("worksuite.com", "g2.com"),
    ).model_copy(update={
        "mentioned_brands": [MentionedBrand(title="Worksuite", category="FMS")],
        "fan_out_queries": ["best fms 2026"],
        "citation_position": 1,
    })
    store.append([result])

    stored = store.list_for_concept("c1")[0]

    assert stored == result
    assert stored.checked_at.tzinfo is not None
    assert isinstance(stored.citations[0], Citation)
