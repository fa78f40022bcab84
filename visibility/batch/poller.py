"""
Batch Status Poller
===================

Watches one batch run from the client side. Polling is an explicit asyncio
task owned by the view layer: it is cancelled when the view unmounts, when
the banner is dismissed, or when a newer run supersedes the displayed one.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

import structlog

from ..connectors.base import BatchRunAPI
from ..errors import BatchRunAlreadyActiveError, InvalidBatchRequestError
from ..models import BatchRun, BatchRunStatus, BatchRunTicket, Provider, utcnow

logger = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL = 3.0
DEFAULT_RECOVERY_LOOKBACK = timedelta(hours=2)


class NotificationKind(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"


@dataclass
class BatchNotification:
    """Banner shown once a run reaches a terminal state."""
    kind: NotificationKind
    run_id: str
    message: str
    successful_checks: int = 0
    failed_checks: int = 0
    credits_refunded: int = 0

    @property
    def can_retry(self) -> bool:
        return self.kind == NotificationKind.PARTIAL_FAILURE


def notification_for(run: BatchRun) -> BatchNotification:
    if run.status == BatchRunStatus.FAILED:
        return BatchNotification(
            kind=NotificationKind.FAILED,
            run_id=run.run_id,
            message=run.error_message or "Batch run failed",
            successful_checks=run.successful_checks,
            failed_checks=run.failed_checks,
            credits_refunded=run.credits_refunded,
        )

    if run.failed_checks == 0:
        return BatchNotification(
            kind=NotificationKind.SUCCESS,
            run_id=run.run_id,
            message=f"All {run.successful_checks} checks completed across {run.total_questions} questions",
            successful_checks=run.successful_checks,
        )

    return BatchNotification(
        kind=NotificationKind.PARTIAL_FAILURE,
        run_id=run.run_id,
        message=(
            f"{run.successful_checks} checks succeeded, {run.failed_checks} failed. "
            f"{run.credits_refunded} credits refunded."
        ),
        successful_checks=run.successful_checks,
        failed_checks=run.failed_checks,
        credits_refunded=run.credits_refunded,
    )


class BatchStatusPoller:
    """Polls the displayed batch run until it completes or fails."""

    def __init__(
        self,
        api: BatchRunAPI,
        on_refresh: Optional[Callable[[], Awaitable]] = None,
        on_notify: Optional[Callable[[BatchNotification], None]] = None,
        interval: float = DEFAULT_POLL_INTERVAL,
        recovery_lookback: timedelta = DEFAULT_RECOVERY_LOOKBACK,
        clock=utcnow,
    ):
        self.api = api
        self.on_refresh = on_refresh
        self.on_notify = on_notify
        self.interval = interval
        self.recovery_lookback = recovery_lookback
        self.clock = clock

        self.run: Optional[BatchRun] = None
        self.notification: Optional[BatchNotification] = None
        self._notified: set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self.logger = logger.bind(component="BatchStatusPoller")

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def can_start(self) -> bool:
        return not (self.run and self.run.is_active)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def watch(self, run: BatchRun) -> None:
        """Display ``run``, superseding any previous run, and poll it while unfinished."""
        await self.stop()
        self.run = run
        self.notification = None

        if run.is_terminal:
            await self._finish(run)
            return
        if run.status == BatchRunStatus.SCHEDULED:
            return

        self._task = asyncio.create_task(self._poll_loop(run.run_id))
        self.logger.info("batch_polling_started", run_id=run.run_id, interval=self.interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def dismiss(self) -> None:
        """Hide the banner and stop observing; the run itself is untouched."""
        await self.stop()
        self.notification = None
        self.run = None

    async def resume(self) -> Optional[BatchRun]:
        """Pick up the account's run after a reload.

        An active run is polled again. A run that completed with failures
        inside the look-back window is surfaced so it can still be retried.
        """
        try:
            run = await self.api.status()
        except Exception as e:
            self.logger.warning("batch_resume_failed", error=str(e))
            return None

        if run is None:
            return None

        if run.is_active:
            self.logger.info("batch_polling_resumed", run_id=run.run_id, status=run.status.value)
            await self.watch(run)
            return run

        if self._recently_completed_with_failures(run):
            self.run = run
            self.notification = notification_for(run)
            self._notified.add(run.run_id)
            return run

        return None

    def _recently_completed_with_failures(self, run: BatchRun) -> bool:
        if run.status != BatchRunStatus.COMPLETED or run.failed_checks <= 0:
            return False
        if run.completed_at is None:
            return False
        return self.clock() - run.completed_at <= self.recovery_lookback

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def start_run(
        self,
        providers: Iterable[Provider],
        group_id: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> BatchRunTicket:
        """Start a run and begin polling it.

        A run scheduled for later is only queued; the displayed run stays.

        Raises:
            BatchRunAlreadyActiveError: a run is known to be active, locally or by the orchestrator
            InsufficientCreditsError: surfaced from the orchestrator
        """
        if scheduled_for is None and not self.can_start:
            raise BatchRunAlreadyActiveError(run_id=self.run.run_id, status=self.run.status.value)

        ticket = await self._start(list(providers), group_id=group_id, scheduled_for=scheduled_for)

        if ticket.scheduled_for is not None:
            self.logger.info("batch_run_scheduled", run_id=ticket.run_id, scheduled_for=ticket.scheduled_for.isoformat())
            return ticket

        await self.watch(ticket.initial_run())
        return ticket

    async def retry_failed(
        self,
        providers: Optional[Iterable[Provider]] = None,
        run: Optional[BatchRun] = None,
    ) -> BatchRunTicket:
        """Start a run over the failed checks of ``run`` (default: the displayed run).

        The new run replaces the displayed one immediately.
        """
        run = run or self.run
        if run is None or not run.is_terminal or run.failed_checks <= 0:
            raise InvalidBatchRequestError("No failed checks to retry")

        ticket = await self._start(
            list(providers) if providers else list(run.providers),
            retry_failed_from_run_id=run.run_id,
        )
        self.logger.info("batch_retry_started", run_id=ticket.run_id, retry_of=run.run_id)
        await self.watch(ticket.initial_run())
        return ticket

    async def _start(self, providers: list[Provider], **kwargs) -> BatchRunTicket:
        try:
            return await self.api.start(providers, **kwargs)
        except BatchRunAlreadyActiveError as e:
            if e.run_id:
                await self._show_existing_run(e.run_id)
            raise

    async def _show_existing_run(self, run_id: str) -> None:
        try:
            existing = await self.api.status(run_id)
        except Exception as e:
            self.logger.warning("batch_status_lookup_failed", run_id=run_id, error=str(e))
            return
        if existing is not None:
            await self.watch(existing)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _poll_loop(self, run_id: str) -> None:
        while True:
            await asyncio.sleep(self.interval)

            try:
                run = await self.api.status(run_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.warning("batch_poll_error", run_id=run_id, error=str(e))
                continue

            if run is None:
                self.logger.warning("batch_run_missing", run_id=run_id)
                continue

            self.run = run
            self.logger.debug(
                "batch_poll_tick",
                run_id=run_id,
                status=run.status.value,
                progress=run.progress,
            )

            if run.is_terminal:
                await self._finish(run)
                return

    async def _finish(self, run: BatchRun) -> None:
        if self.on_refresh is not None:
            try:
                await self.on_refresh()
            except Exception as e:
                self.logger.warning("refresh_after_batch_failed", run_id=run.run_id, error=str(e))

        if run.run_id in self._notified:
            # Banner stays until dismissed
            self.notification = notification_for(run)
            return
        self._notified.add(run.run_id)
        self.notification = notification_for(run)
        self.logger.info(
            "batch_run_finished",
            run_id=run.run_id,
            status=run.status.value,
            notification=self.notification.kind.value,
        )
        if self.on_notify is not None:
            self.on_notify(self.notification)
