import asyncio

import pytest

from visibility.config import VisibilityConfig
from visibility.models import Provider
from visibility_tracker import build_parser, run_command


def run_cli(argv, **config_values):
    args = build_parser().parse_args(["--demo"] + argv)
    config = VisibilityConfig(demo_mode=True, **config_values)
    config.batch.poll_interval = 0.001
    asyncio.run(run_command(args, config))


def test_parser_reads_providers_and_schedule():
    args = build_parser().parse_args(["run", "--providers", "ChatGPT,gemini", "--at", "2030-01-01T09:00:00"])

    assert args.providers == [Provider.CHATGPT, Provider.GEMINI]
    assert args.at.tzinfo is not None


def test_parser_rejects_unknown_provider():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["summary", "--providers", "bard"])


def test_summary(capsys):
    run_cli(["summary", "--group", "research", "--sort", "last_checked", "--desc"])

    out = capsys.readouterr().out
    assert "Citation rate:" in out
    assert "Page 1 of 1" in out


def test_dry_run_reports_cost(capsys):
    run_cli(["run", "--providers", "chatgpt,claude", "--dry-run"])

    out = capsys.readouterr().out
    assert "12 questions across 4 concepts" in out
    assert "Total: 24 credits, balance 500" in out


def test_run_and_watch(capsys):
    run_cli(["run", "--providers", "chatgpt"])

    out = capsys.readouterr().out
    assert "Started run" in out
    assert "[success]" in out or "[partial_failure]" in out


def test_sources(capsys):
    run_cli(["sources", "--limit", "3"])

    out = capsys.readouterr().out
    assert "domains across" in out


def test_provider_credit_cost_prices_preview_and_run(capsys, monkeypatch):
    monkeypatch.setenv("PROVIDER_CREDIT_COST", "3")

    run_cli(["run", "--providers", "chatgpt,claude", "--dry-run"])
    preview = capsys.readouterr().out
    run_cli(["run", "--providers", "chatgpt"])
    started = capsys.readouterr().out

    assert "ChatGPT: 36 credits" in preview
    assert "Total: 72 credits, balance 500" in preview
    assert "12 questions, 36 credits" in started
