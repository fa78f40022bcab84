import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from structlog.testing import capture_logs

from visibility.connectors.http_client import VisibilityAPIClient
from visibility.errors import APIError, BatchRunAlreadyActiveError, InsufficientCreditsError
from visibility.models import BatchRunStatus, Provider


def serve(routes, scenario):
    """Run ``scenario(client, calls)`` against an app built from ``routes``."""
    calls = []

    async def main():
        app = web.Application()
        for method, path, handler in routes:
            async def recorded(request, handler=handler):
                calls.append((request.method, request.path, dict(request.query)))
                return await handler(request)
            app.router.add_route(method, path, recorded)

        async with TestServer(app) as server:
            client = VisibilityAPIClient(str(server.make_url("/")), api_key="secret", retry_delay=0)
            try:
                return await scenario(client, calls)
            finally:
                await client.close()

    return asyncio.run(main()), calls


def test_concepts_and_results_are_parsed():
    async def keywords(request):
        assert request.headers["Authorization"] == "Bearer secret"
        return web.json_response({"keywords": [{
            "id": "c1",
            "phrase": "payroll",
            "relatedQuestions": [
                {"id": "q1", "question": "Best payroll tool?", "funnelStage": "middle"},
                "Legacy question",
                {"question": "  "},
            ],
        }]})

    async def results(request):
        return web.json_response({"results": [{
            "id": "r1",
            "keywordId": request.query["keywordId"],
            "questionId": "q1",
            "question": "Best payroll tool?",
            "llmProvider": "claude",
            "checkedAt": "2026-03-01T10:00:00Z",
            "domainCited": True,
            "citations": None,
        }]})

    async def scenario(client, calls):
        return await client.list_concepts(), await client.list_results("c1", limit=50)

    (concepts, results), calls = serve(
        [("GET", "/keywords", keywords), ("GET", "/llm-visibility/results", results)],
        scenario,
    )

    assert [q.text for q in concepts[0].questions] == ["Best payroll tool?", "Legacy question"]
    assert concepts[0].questions[1].key == "c1:Legacy question"
    assert results[0].provider == Provider.CLAUDE
    assert results[0].citations == []
    assert calls[1][2] == {"keywordId": "c1", "limit": "50"}


def test_unparseable_result_rows_are_skipped():
    def row(id, provider):
        return {
            "id": id,
            "keywordId": "c1",
            "questionId": "q1",
            "question": "Best payroll tool?",
            "llmProvider": provider,
            "checkedAt": "2026-03-01T10:00:00Z",
            "domainCited": True,
        }

    async def results(request):
        return web.json_response({"results": [row("r1", "chatgpt"), row("r2", "ai_overview"), row("r3", "claude")]})

    async def scenario(client, calls):
        return await client.list_results("c1")

    with capture_logs() as logs:
        results, _ = serve([("GET", "/llm-visibility/results", results)], scenario)

    assert [r.id for r in results] == ["r1", "r3"]
    skipped = [e for e in logs if e["event"] == "check_result_skipped"]
    assert len(skipped) == 1
    assert skipped[0]["result_id"] == "r2"
    assert skipped[0]["log_level"] == "warning"


def test_insufficient_credits_is_mapped():
    async def start(request):
        return web.json_response({"error": "Insufficient credits", "required": 12, "available": 3}, status=402)

    async def scenario(client, calls):
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await client.start([Provider.CHATGPT])
        return exc_info.value

    error, _ = serve([("POST", "/llm-visibility/batch-run", start)], scenario)

    assert str(error) == "Insufficient credits. Need 12, have 3"


def test_active_run_conflict_is_mapped():
    async def start(request):
        return web.json_response(
            {"error": "A batch run is already in progress", "runId": "run-1", "status": "processing"},
            status=409,
        )

    async def scenario(client, calls):
        with pytest.raises(BatchRunAlreadyActiveError) as exc_info:
            await client.start([Provider.CHATGPT], group_id="g1")
        return exc_info.value

    error, calls = serve([("POST", "/llm-visibility/batch-run", start)], scenario)

    assert error.run_id == "run-1"
    assert error.status == "processing"


def test_start_is_never_retried():
    async def start(request):
        return web.json_response({"error": "unavailable"}, status=503)

    async def scenario(client, calls):
        with pytest.raises(APIError) as exc_info:
            await client.start([Provider.CHATGPT])
        return exc_info.value

    error, calls = serve([("POST", "/llm-visibility/batch-run", start)], scenario)

    assert error.status == 503
    assert len(calls) == 1


def test_start_returns_ticket():
    async def start(request):
        body = await request.json()
        assert body == {"providers": ["chatgpt", "claude"], "retryFailedFromRunId": "old"}
        return web.json_response({
            "runId": "run-2",
            "totalQuestions": 4,
            "providers": body["providers"],
            "estimatedCredits": 8,
        })

    async def scenario(client, calls):
        return await client.start([Provider.CHATGPT, Provider.CLAUDE], retry_failed_from_run_id="old")

    ticket, _ = serve([("POST", "/llm-visibility/batch-run", start)], scenario)

    assert ticket.run_id == "run-2"
    assert ticket.initial_run().status == BatchRunStatus.PENDING


def test_status_is_retried_on_server_errors():
    attempts = []

    async def status(request):
        attempts.append(1)
        if len(attempts) < 3:
            return web.json_response({"error": "busy"}, status=503)
        return web.json_response({"run": {
            "runId": "run-1",
            "status": "processing",
            "totalQuestions": 10,
            "processedQuestions": 4,
            "progress": 0,
        }})

    async def scenario(client, calls):
        return await client.status("run-1")

    run, calls = serve([("GET", "/llm-visibility/batch-status", status)], scenario)

    assert len(calls) == 3
    assert calls[0][2] == {"runId": "run-1"}
    assert run.progress == 40


def test_status_gives_up_after_max_retries():
    async def status(request):
        return web.json_response({"error": "busy"}, status=500)

    async def scenario(client, calls):
        with pytest.raises(APIError):
            await client.status("run-1")

    _, calls = serve([("GET", "/llm-visibility/batch-status", status)], scenario)

    assert len(calls) == 3


def test_no_run_yet():
    async def empty(request):
        return web.json_response({"run": None})

    async def missing(request):
        return web.Response(status=404, text="Not found")

    async def scenario(client, calls):
        return await client.status()

    run, _ = serve([("GET", "/llm-visibility/batch-status", empty)], scenario)
    assert run is None

    run, _ = serve([("GET", "/llm-visibility/batch-status", missing)], scenario)
    assert run is None


def test_client_errors_are_not_retried():
    async def status(request):
        return web.json_response({"error": "Batch run not found"}, status=404)

    async def scenario(client, calls):
        with pytest.raises(APIError) as exc_info:
            await client.status("nope")
        return exc_info.value

    error, calls = serve([("GET", "/llm-visibility/batch-status", status)], scenario)

    assert error.status == 404
    assert len(calls) == 1


def test_preview_and_cancel():
    async def preview(request):
        assert request.query["providers"] == "chatgpt,gemini"
        return web.json_response({
            "totalQuestions": 5,
            "keywordCount": 2,
            "providers": ["chatgpt", "gemini"],
            "totalCredits": 10,
            "costPerProvider": {"chatgpt": 5, "gemini": 5},
            "creditBalance": 7,
        })

    async def cancel(request):
        return web.json_response({"success": True, "creditsRefunded": 10})

    async def scenario(client, calls):
        return (
            await client.preview([Provider.CHATGPT, Provider.GEMINI]),
            await client.cancel_scheduled("run-9"),
        )

    (preview_result, refunded), calls = serve(
        [("GET", "/llm-visibility/batch-run", preview), ("DELETE", "/llm-visibility/batch-run", cancel)],
        scenario,
    )

    assert preview_result.concept_count == 2
    assert preview_result.cost_per_provider[Provider.GEMINI] == 5
    assert not preview_result.has_credits
    assert refunded == 10
    assert calls[1] == ("DELETE", "/llm-visibility/batch-run", {"runId": "run-9"})


def test_export_streams_to_file(tmp_path):
    body = b"id,question\n" + b"".join(f"r{i},question {i}\n".encode() for i in range(20000))

    async def export(request):
        return web.Response(body=body, content_type="text/csv")

    async def scenario(client, calls):
        return await client.export_results(tmp_path / "out" / "results.csv")

    path, _ = serve([("GET", "/llm-visibility/export", export)], scenario)

    assert path.read_bytes() == body
