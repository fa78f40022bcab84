import asyncio
import csv
import json

import pytest

from visibility.config import VisibilityConfig
from visibility.connectors.memory import InMemoryVisibilityAPI
from visibility.dashboard import VisibilityDashboard
from visibility.demo_data import DEMO_DOMAIN, build_demo_api
from visibility.errors import VisibilityError
from visibility.export import export_results
from visibility.models import Provider
from visibility.view import SortField, SortSpec, ViewFilters

from builders import NOW, make_concept, make_question, make_result


def make_config(**overrides):
    values = dict(
        demo_mode=True,
        target_domain=DEMO_DOMAIN,
        page_size=5,
        default_providers=[Provider.CHATGPT, Provider.CLAUDE],
    )
    values.update(overrides)
    config = VisibilityConfig(**values)
    config.batch.poll_interval = 0.001
    return config


def test_view_requires_loaded_data():
    dashboard = VisibilityDashboard(InMemoryVisibilityAPI(), make_config())

    with pytest.raises(VisibilityError):
        dashboard.view()


def test_demo_api_charges_configured_provider_cost():
    api = build_demo_api(provider_costs={provider: 3 for provider in Provider})

    async def scenario():
        preview = await api.preview([Provider.CHATGPT])
        ticket = await api.start([Provider.CHATGPT])
        return preview, ticket

    preview, ticket = asyncio.run(scenario())

    assert preview.total_credits == 36
    assert ticket.estimated_credits == 36
    assert ticket.credit_balance == 464


def test_demo_dashboard_round_trip():
    api = build_demo_api(seed=7)
    notifications = []
    dashboard = VisibilityDashboard(api, make_config(), on_notify=notifications.append)

    async def scenario():
        await dashboard.mount()
        before = len(dashboard.results)

        first_page = dashboard.view(sort=SortSpec(SortField.LAST_CHECKED, descending=True))
        second_page = dashboard.view(page=2)
        filtered = dashboard.view(filters=ViewFilters(group_id="research"))

        await dashboard.start_batch()
        while dashboard.poller.is_polling:
            await asyncio.sleep(0.001)
        await dashboard.unmount()
        return before, first_page, second_page, filtered

    before, first_page, second_page, filtered = asyncio.run(scenario())

    assert first_page.page == 1
    assert second_page.page == 2
    assert filtered.page == 1
    assert all(row.group_id == "research" for row in filtered.rows)
    assert len(notifications) == 1
    # The finished run triggered a reload that picked up the new results
    assert len(dashboard.results) > before
    assert dashboard.sources().sources


def test_trend_series_respects_active_providers():
    concept = make_concept("c1", "Payroll", [make_question("a", id="q1")])
    question = concept.questions[0]
    api = InMemoryVisibilityAPI(
        concepts=[concept],
        results=[
            make_result(question, Provider.CHATGPT, cited=True, days_ago=1),
            make_result(question, Provider.GEMINI, cited=True, days_ago=1),
        ],
    )
    dashboard = VisibilityDashboard(api, make_config(default_providers=[Provider.CHATGPT]))
    asyncio.run(dashboard.load())

    series = dashboard.trend_series(now=NOW)

    assert sum(point.total_checks for point in series) == 1


def test_export_formats(tmp_path):
    concept = make_concept("c1", "Payroll", [make_question("a", id="q1")])
    api = InMemoryVisibilityAPI(concepts=[concept], results=[make_result(concept.questions[0], cited=True)])

    csv_path = asyncio.run(export_results(api, tmp_path / "results.csv"))
    json_path = asyncio.run(export_results(api, tmp_path / "results.json"))

    with open(csv_path, newline="") as f:
        rows = list(csv.DictReader(f))
    assert rows[0]["keywordId"] == "c1"
    assert rows[0]["domainCited"] == "True"

    payload = json.loads(json_path.read_text())
    assert payload["results"][0]["llmProvider"] == "chatgpt"
