#!/usr/bin/env python3
"""LLM Visibility Tracker

Command line entry point for the visibility dashboard: account summary,
batch runs, research sources, export and archiving results to the database.
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from typing import Optional

import structlog

from database import SqlCheckResultStore, init_db
from visibility import __version__
from visibility.analytics.sources import SORT_FIELDS
from visibility.batch.poller import BatchNotification
from visibility.config import VisibilityConfig, get_config
from visibility.connectors.base import VisibilityAPI
from visibility.connectors.http_client import VisibilityAPIClient
from visibility.dashboard import VisibilityDashboard
from visibility.demo_data import DEMO_BRAND, DEMO_DOMAIN, build_demo_api
from visibility.errors import VisibilityError
from visibility.export import export_results
from visibility.models import FunnelStage, Provider, to_utc
from visibility.view import EMPTY_VALUE, SortField, SortSpec, ViewFilters, format_rate, format_score

logger = structlog.get_logger(__name__)


def setup_logging(log_level: str = "INFO"):
    """Configure structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(level=getattr(logging, log_level.upper(), logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _timestamp(value: str) -> datetime:
    try:
        return to_utc(datetime.fromisoformat(value))
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def _providers(value: str) -> list[Provider]:
    try:
        return [Provider(p.strip().lower()) for p in value.split(",") if p.strip()]
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Track how LLM assistants cite and mention your brand")
    parser.add_argument("--demo", action="store_true", help="Use generated demo data instead of the API")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    summary = sub.add_parser("summary", help="Show the visibility table and rollups")
    summary.add_argument("--concept", help="Concept id to filter by")
    summary.add_argument("--funnel", choices=[s.value for s in FunnelStage])
    summary.add_argument("--group", help="Group id, or 'ungrouped'")
    summary.add_argument("--providers", type=_providers, help="Comma separated providers")
    summary.add_argument("--search", default="", help="Only questions containing this text")
    summary.add_argument("--sort", choices=[f.value for f in SortField], default=SortField.QUESTION.value)
    summary.add_argument("--desc", action="store_true", help="Sort descending (last_checked: oldest first)")
    summary.add_argument("--page", type=int, default=1)

    run = sub.add_parser("run", help="Start a batch run and watch it finish")
    run.add_argument("--providers", type=_providers, help="Comma separated providers")
    run.add_argument("--group", help="Only questions in this group, or 'ungrouped'")
    run.add_argument("--retry", metavar="RUN_ID", help="Retry the failed checks of a previous run")
    run.add_argument("--dry-run", action="store_true", help="Only show what the run would cost")
    run.add_argument("--at", type=_timestamp, help="Schedule the run for an ISO 8601 time instead of starting now")

    sub.add_parser("watch", help="Resume watching the active batch run")

    cancel = sub.add_parser("cancel", help="Cancel a scheduled batch run and refund its credits")
    cancel.add_argument("run_id")

    export = sub.add_parser("export", help="Download every check result")
    export.add_argument("path", help="Destination file")

    sources = sub.add_parser("sources", help="Rank the websites LLMs cite")
    sources.add_argument("--sort", choices=SORT_FIELDS, default="frequency")
    sources.add_argument("--limit", type=int, default=20)

    sync = sub.add_parser("sync", help="Archive check results into the database")
    sync.add_argument("--database-url", help="Override DATABASE_URL")

    return parser


def build_api(config: VisibilityConfig, demo: bool) -> VisibilityAPI:
    if demo or config.demo_mode:
        if not config.target_domain:
            config.target_domain = DEMO_DOMAIN
        if not config.brand_name:
            config.brand_name = DEMO_BRAND
        logger.info("using_demo_data")
        return build_demo_api(provider_costs=config.batch.provider_costs())
    return VisibilityAPIClient.from_config(config)


def print_notification(notification: Optional[BatchNotification]) -> None:
    if notification is None:
        return
    print(f"[{notification.kind.value}] {notification.message}")
    if notification.can_retry:
        print(f"Retry the failed checks with: run --retry {notification.run_id}")


def print_summary(dashboard: VisibilityDashboard, args) -> None:
    filters = ViewFilters(
        concept_id=args.concept,
        funnel_stage=args.funnel,
        group_id=args.group,
        providers=args.providers or dashboard.filters.providers,
        search=args.search,
    )
    view = dashboard.view(filters=filters, sort=SortSpec(SortField(args.sort), args.desc), page=args.page)
    providers = filters.providers

    summary = view.summary
    print(f"Questions: {view.total_rows}   Unique checks: {summary.unique_checks}")
    print(f"Citation rate: {format_rate(summary.average_visibility)}   Mention rate: {format_rate(summary.mention_rate)}")
    print(f"Citation consistency: {format_score(view.consistency.citation)}   "
          f"Mention consistency: {format_score(view.consistency.mention)}")
    trend = view.trend.overall
    print(f"Trend: {trend.direction.value} ({trend.change:+d} pts)")
    print()

    header = f"{'Question':<60} {'Concept':<24}" + "".join(f" {p.label:>11}" for p in providers)
    print(header)
    print("-" * len(header))
    for row in view.rows:
        cells = []
        for provider in providers:
            latest = row.latest.get(provider)
            consistency = view.row_consistency[row.key][provider].citation
            if latest is None:
                cells.append(f" {EMPTY_VALUE:>11}")
            else:
                mark = "cited" if latest.domain_cited else "no"
                cells.append(f" {mark + ' ' + format_score(consistency):>11}")
        print(f"{row.text[:60]:<60} {row.concept_name[:24]:<24}" + "".join(cells))
    print()
    print(f"Page {view.page} of {view.page_count}")


async def watch_until_done(dashboard: VisibilityDashboard) -> None:
    poller = dashboard.poller
    while poller.is_polling:
        run = poller.run
        if run is not None:
            print(f"{run.status.value}: {run.processed_questions}/{run.total_questions} questions ({run.progress}%)")
        await asyncio.sleep(dashboard.config.batch.poll_interval)
    print_notification(poller.notification)


async def run_batch(dashboard: VisibilityDashboard, args) -> None:
    providers = args.providers or dashboard.filters.providers

    if args.dry_run:
        preview = await dashboard.api.preview(providers, group_id=args.group)
        print(f"{preview.total_questions} questions across {preview.concept_count} concepts")
        for provider, cost in preview.cost_per_provider.items():
            print(f"  {Provider(provider).label}: {cost} credits")
        print(f"Total: {preview.total_credits} credits, balance {preview.credit_balance}")
        if not preview.has_credits:
            print(f"Insufficient credits. Need {preview.total_credits}, have {preview.credit_balance}")
        return

    if args.retry:
        previous = await dashboard.api.status(args.retry)
        if previous is None:
            raise VisibilityError(f"Batch run not found: {args.retry}")
        ticket = await dashboard.retry_failed(args.providers, run=previous)
    else:
        ticket = await dashboard.start_batch(providers, group_id=args.group, scheduled_for=args.at)
        if ticket.scheduled_for is not None:
            print(f"Scheduled run {ticket.run_id} for {ticket.scheduled_for.isoformat()}: "
                  f"{ticket.total_questions} questions, {ticket.estimated_credits} credits")
            return

    print(f"Started run {ticket.run_id}: {ticket.total_questions} questions, "
          f"{ticket.estimated_credits} credits")
    await watch_until_done(dashboard)


async def sync_results(dashboard: VisibilityDashboard, database_url: Optional[str]) -> None:
    db = init_db(database_url=database_url or dashboard.config.database_url)
    try:
        store = SqlCheckResultStore(db, account_id=dashboard.config.api.account_id or "default")
        appended = store.append(dashboard.results)
        print(f"Archived {appended} new results ({store.count()} stored)")
    finally:
        db.close()


async def run_command(args, config: VisibilityConfig) -> None:
    api = build_api(config, args.demo)
    dashboard = VisibilityDashboard(api, config, on_notify=lambda n: logger.info("batch_notification", kind=n.kind.value))

    try:
        await dashboard.mount()

        if args.command == "summary":
            print_summary(dashboard, args)
            print_notification(dashboard.poller.notification)
        elif args.command == "run":
            await run_batch(dashboard, args)
        elif args.command == "watch":
            if not dashboard.poller.is_polling and dashboard.poller.notification is None:
                print("No active batch run")
            await watch_until_done(dashboard)
        elif args.command == "export":
            path = await export_results(api, args.path)
            print(f"Exported results to {path}")
        elif args.command == "sources":
            report = dashboard.sources(sort_field=args.sort)
            print(f"{report.unique_domains} domains across {report.total_checks} checks; "
                  f"your domain appeared {report.your_domain_appearances} times")
            for source in report.sources[: args.limit]:
                marker = "*" if source.is_ours else " "
                print(f"{marker} {source.domain:<32} {source.frequency:>5}  {', '.join(source.concepts)}")
        elif args.command == "cancel":
            refunded = await dashboard.cancel_scheduled(args.run_id)
            print(f"Cancelled run {args.run_id}, refunded {refunded} credits")
        elif args.command == "sync":
            await sync_results(dashboard, args.database_url)
    finally:
        await dashboard.unmount()
        if isinstance(api, VisibilityAPIClient):
            await api.close()


def main(argv: Optional[list[str]] = None):
    """Main entry point for the visibility tracker."""
    args = build_parser().parse_args(argv)

    config = get_config()
    setup_logging(args.log_level or config.log_level)
    logger.info("visibility_tracker_starting", version=__version__, command=args.command)
    config.log_configuration()

    if args.demo:
        config.demo_mode = True
    if not config.validate():
        logger.error("configuration_invalid")
        sys.exit(1)

    try:
        asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt_received")
    except VisibilityError as e:
        logger.error("visibility_error", error=str(e))
        print(str(e), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
