"""
Batch Run Orchestrator
======================

In-process orchestrator for batch visibility checks. Accepts a request to
check N questions x M providers, debits credits up front, and tracks the run
through ``scheduled -> pending -> processing -> completed | failed`` while an
external job runner reports each question's outcome.

At most one run per account may be pending or processing. The orchestrator
enforces that itself through an explicit single-slot register; callers are
never trusted to have checked.
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Optional

import structlog

from ..errors import (
    BatchRunAlreadyActiveError,
    BatchRunNotFoundError,
    InsufficientCreditsError,
    InvalidBatchRequestError,
    InvalidTransitionError,
)
from ..models import (
    BatchPreview,
    BatchRun,
    BatchRunStatus,
    BatchRunTicket,
    Concept,
    Provider,
    to_utc,
    utcnow,
)

logger = structlog.get_logger(__name__)

# Group filter value selecting questions that belong to no group
UNGROUPED = "ungrouped"

ALLOWED_TRANSITIONS: dict[BatchRunStatus, set[BatchRunStatus]] = {
    BatchRunStatus.SCHEDULED: {BatchRunStatus.PENDING},
    BatchRunStatus.PENDING: {BatchRunStatus.PROCESSING, BatchRunStatus.FAILED},
    BatchRunStatus.PROCESSING: {BatchRunStatus.COMPLETED, BatchRunStatus.FAILED},
    BatchRunStatus.COMPLETED: set(),
    BatchRunStatus.FAILED: set(),
}


class CheckStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class CreditLedger:
    """Per-account credit balances."""

    def __init__(self, balances: Optional[dict[str, int]] = None):
        self._balances: dict[str, int] = dict(balances or {})

    def balance(self, account_id: str) -> int:
        return self._balances.get(account_id, 0)

    def grant(self, account_id: str, credits: int) -> int:
        self._balances[account_id] = self.balance(account_id) + credits
        return self._balances[account_id]

    def debit(self, account_id: str, credits: int, description: str = "") -> int:
        available = self.balance(account_id)
        if available < credits:
            raise InsufficientCreditsError(required=credits, available=available)
        self._balances[account_id] = available - credits
        logger.info("credits_debited", account_id=account_id, credits=credits, description=description)
        return self._balances[account_id]

    def refund(self, account_id: str, credits: int, description: str = "") -> int:
        if credits > 0:
            self._balances[account_id] = self.balance(account_id) + credits
            logger.info("credits_refunded", account_id=account_id, credits=credits, description=description)
        return self.balance(account_id)


class ActiveRunRegister:
    """Single slot per account holding the id of its pending or processing run."""

    def __init__(self):
        self._slots: dict[str, str] = {}

    def holder(self, account_id: str) -> Optional[str]:
        return self._slots.get(account_id)

    def claim(self, account_id: str, run_id: str, status: Optional[str] = None) -> None:
        holder = self._slots.get(account_id)
        if holder is not None and holder != run_id:
            raise BatchRunAlreadyActiveError(run_id=holder, status=status)
        self._slots[account_id] = run_id

    def release(self, account_id: str, run_id: str) -> None:
        if self._slots.get(account_id) == run_id:
            del self._slots[account_id]


@dataclass
class QueuedQuestion:
    """A question of a run and the outcome of each of its provider checks."""
    concept_id: str
    question_key: str
    question: str
    question_id: Optional[str]
    checks: dict[Provider, CheckStatus]

    @property
    def processed(self) -> bool:
        return all(status != CheckStatus.PENDING for status in self.checks.values())


@dataclass
class _RunRecord:
    run_id: str
    account_id: str
    status: BatchRunStatus
    providers: list[Provider]
    questions: list[QueuedQuestion]
    estimated_credits: int
    costs: dict[Provider, int]
    created_at: datetime
    group_id: Optional[str] = None
    retry_failed_from_run_id: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    credits_refunded: int = 0

    def count(self, status: CheckStatus) -> int:
        # Checks are reported once their whole question is processed
        return sum(
            1 for q in self.questions if q.processed
            for s in q.checks.values() if s == status
        )

    def unrecovered_credits(self, statuses: Iterable[CheckStatus]) -> int:
        statuses = set(statuses)
        return sum(
            self.costs[provider]
            for q in self.questions
            for provider, status in q.checks.items()
            if status in statuses
        )

    def snapshot(self) -> BatchRun:
        return BatchRun(
            run_id=self.run_id,
            status=self.status,
            providers=list(self.providers),
            total_questions=len(self.questions),
            processed_questions=sum(1 for q in self.questions if q.processed),
            successful_checks=self.count(CheckStatus.SUCCEEDED),
            failed_checks=self.count(CheckStatus.FAILED),
            credits_refunded=self.credits_refunded,
            estimated_credits=self.estimated_credits,
            error_message=self.error_message,
            retry_failed_from_run_id=self.retry_failed_from_run_id,
            group_id=self.group_id,
            scheduled_for=self.scheduled_for,
            created_at=self.created_at,
            completed_at=self.completed_at,
        )


# account_id -> concepts with their questions
QuestionSource = Callable[[str], list[Concept]]


class BatchRunOrchestrator:
    """
    Accepts, tracks and settles batch check runs.

    The job runner that actually queries providers is external: it reads
    ``pending_questions`` and reports back through ``record_question`` or
    ``fail_run``.
    """

    def __init__(
        self,
        question_source: QuestionSource,
        ledger: Optional[CreditLedger] = None,
        provider_costs: Optional[dict[Provider, int]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.question_source = question_source
        self.ledger = ledger or CreditLedger()
        self.provider_costs = provider_costs or {provider: 1 for provider in Provider}
        self.clock = clock
        self.register = ActiveRunRegister()
        self._runs: dict[str, _RunRecord] = {}
        self._account_runs: dict[str, list[str]] = defaultdict(list)
        self.logger = logger.bind(component="BatchRunOrchestrator")

    # ------------------------------------------------------------------
    # Client-facing operations
    # ------------------------------------------------------------------

    def start(
        self,
        account_id: str,
        providers: Iterable,
        retry_failed_from_run_id: Optional[str] = None,
        group_id: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> BatchRunTicket:
        """Queue a run over all questions (or a group), or over a prior run's failed checks.

        Nothing is mutated unless every precondition holds.

        Raises:
            InvalidBatchRequestError: no valid provider, or nothing to check
            BatchRunAlreadyActiveError: another run is pending or processing
            BatchRunNotFoundError: retry source run unknown to this account
            InsufficientCreditsError: balance below the run's cost
        """
        providers = self._validate_providers(providers)
        now = self.clock()
        scheduled_for = to_utc(scheduled_for) if scheduled_for else None
        is_scheduled = scheduled_for is not None and scheduled_for > now

        if not is_scheduled:
            self._ensure_no_active_run(account_id)

        if retry_failed_from_run_id:
            questions = self._failed_questions(account_id, retry_failed_from_run_id, providers)
            if not questions:
                raise InvalidBatchRequestError("No failed items to retry")
        else:
            questions = self._all_questions(account_id, providers, group_id)
            if not questions:
                raise InvalidBatchRequestError("No questions found. Add questions to your keyword concepts first.")

        costs = dict(self.provider_costs)
        total_credits = sum(costs[p] for q in questions for p in q.checks)
        self.ledger.debit(
            account_id,
            total_credits,
            description=f"LLM batch run: {len(questions)} questions x {len(providers)} providers",
        )

        run = _RunRecord(
            run_id=uuid.uuid4().hex,
            account_id=account_id,
            status=BatchRunStatus.SCHEDULED if is_scheduled else BatchRunStatus.PENDING,
            providers=providers,
            questions=questions,
            estimated_credits=total_credits,
            costs=costs,
            created_at=now,
            group_id=group_id,
            retry_failed_from_run_id=retry_failed_from_run_id,
            scheduled_for=scheduled_for,
        )
        if not is_scheduled:
            self.register.claim(account_id, run.run_id, run.status.value)
        self._runs[run.run_id] = run
        self._account_runs[account_id].append(run.run_id)

        self.logger.info(
            "batch_run_created",
            run_id=run.run_id,
            account_id=account_id,
            status=run.status.value,
            questions=len(questions),
            providers=[p.value for p in providers],
            credits=total_credits,
            retry_of=retry_failed_from_run_id,
        )

        return BatchRunTicket(
            run_id=run.run_id,
            total_questions=len(questions),
            providers=providers,
            estimated_credits=total_credits,
            credit_balance=self.ledger.balance(account_id),
            scheduled_for=scheduled_for if is_scheduled else None,
        )

    def status(self, account_id: str, run_id: Optional[str] = None) -> Optional[BatchRun]:
        """Snapshot of a run, or of the account's active / most recent run."""
        if run_id:
            return self._get_run(account_id, run_id).snapshot()

        holder = self.register.holder(account_id)
        if holder:
            return self._runs[holder].snapshot()

        started = [
            self._runs[rid] for rid in self._account_runs.get(account_id, [])
            if self._runs[rid].status != BatchRunStatus.SCHEDULED
        ]
        if not started:
            return None
        return max(started, key=lambda r: r.created_at).snapshot()

    def preview(
        self,
        account_id: str,
        providers: Iterable,
        group_id: Optional[str] = None,
    ) -> BatchPreview:
        providers = self._validate_providers(providers)
        questions = self._all_questions(account_id, providers, group_id)
        cost_per_provider = {p: self.provider_costs[p] * len(questions) for p in providers}
        holder = self.register.holder(account_id)
        scheduled = [
            self._runs[rid] for rid in self._account_runs.get(account_id, [])
            if self._runs[rid].status == BatchRunStatus.SCHEDULED
        ]
        next_scheduled = min(scheduled, key=lambda r: r.scheduled_for) if scheduled else None

        return BatchPreview(
            total_questions=len(questions),
            concept_count=len({q.concept_id for q in questions}),
            providers=providers,
            total_credits=sum(cost_per_provider.values()),
            cost_per_provider=cost_per_provider,
            credit_balance=self.ledger.balance(account_id),
            active_run=self._runs[holder].snapshot() if holder else None,
            scheduled_run=next_scheduled.snapshot() if next_scheduled else None,
        )

    def cancel_scheduled(self, account_id: str, run_id: str) -> int:
        """Delete a future scheduled run and refund its credits; returns credits refunded."""
        run = self._get_run(account_id, run_id)
        if run.status != BatchRunStatus.SCHEDULED:
            raise InvalidBatchRequestError("Only future scheduled runs can be cancelled")

        del self._runs[run_id]
        self._account_runs[account_id].remove(run_id)
        self.ledger.refund(account_id, run.estimated_credits, description="Cancelled scheduled LLM batch run")

        self.logger.info("scheduled_run_cancelled", run_id=run_id, credits_refunded=run.estimated_credits)
        return run.estimated_credits

    # ------------------------------------------------------------------
    # Runner-facing operations
    # ------------------------------------------------------------------

    def activate_due_runs(self, now: Optional[datetime] = None) -> list[BatchRun]:
        """Move scheduled runs whose time has come to pending, one active run per account."""
        now = to_utc(now) if now else self.clock()
        activated = []
        for run in sorted(self._runs.values(), key=lambda r: r.scheduled_for or r.created_at):
            if run.status != BatchRunStatus.SCHEDULED or run.scheduled_for > now:
                continue
            if self.register.holder(run.account_id):
                continue
            self._transition(run, BatchRunStatus.PENDING)
            self.register.claim(run.account_id, run.run_id, run.status.value)
            activated.append(run.snapshot())
        return activated

    def begin_processing(self, run_id: str) -> BatchRun:
        run = self._require(run_id)
        self._transition(run, BatchRunStatus.PROCESSING)
        return run.snapshot()

    def pending_questions(self, run_id: str) -> list[QueuedQuestion]:
        run = self._require(run_id)
        return [q for q in run.questions if not q.processed]

    def record_check(
        self,
        run_id: str,
        question_key: str,
        provider,
        succeeded: bool,
        skipped: bool = False,
    ) -> BatchRun:
        """Resolve one question x provider check of a run.

        The run moves to processing on its first check and completes once
        every check is resolved.
        """
        run = self._require(run_id)
        if run.status == BatchRunStatus.PENDING:
            self._transition(run, BatchRunStatus.PROCESSING)
        if run.status != BatchRunStatus.PROCESSING:
            raise InvalidTransitionError(run_id, run.status.value, BatchRunStatus.PROCESSING.value)

        provider = Provider(provider)
        question = next((q for q in run.questions if q.question_key == question_key), None)
        if question is None or question.checks.get(provider) != CheckStatus.PENDING:
            raise InvalidBatchRequestError(
                f"No pending check for {question_key!r} on {provider.value} in run {run_id}"
            )

        if skipped:
            question.checks[provider] = CheckStatus.SKIPPED
        else:
            question.checks[provider] = CheckStatus.SUCCEEDED if succeeded else CheckStatus.FAILED

        if all(q.processed for q in run.questions):
            self._complete(run)

        return run.snapshot()

    def record_question(
        self,
        run_id: str,
        question_key: str,
        outcomes: dict[Provider, Optional[bool]],
    ) -> BatchRun:
        """Resolve every pending check of a question: True succeeded, False failed, None skipped.

        Providers missing from ``outcomes`` count as skipped.
        """
        run = self._require(run_id)
        question = next((q for q in run.questions if q.question_key == question_key), None)
        if question is None:
            raise InvalidBatchRequestError(f"No question {question_key!r} in run {run_id}")

        snapshot = run.snapshot()
        for provider, status in list(question.checks.items()):
            if status != CheckStatus.PENDING:
                continue
            outcome = outcomes.get(provider)
            snapshot = self.record_check(
                run_id, question_key, provider, succeeded=bool(outcome), skipped=outcome is None
            )
        return snapshot

    def fail_run(self, run_id: str, error_message: str) -> BatchRun:
        """Terminate a run; checks already recorded stay valid, the rest are refunded."""
        if not error_message or not error_message.strip():
            raise ValueError("error_message is required when failing a batch run")

        run = self._require(run_id)
        self._transition(run, BatchRunStatus.FAILED)
        run.error_message = error_message
        run.completed_at = self.clock()
        run.credits_refunded = run.unrecovered_credits(
            (CheckStatus.FAILED, CheckStatus.SKIPPED, CheckStatus.PENDING)
        )
        self.ledger.refund(run.account_id, run.credits_refunded, description=f"Failed LLM batch run {run_id}")
        self.register.release(run.account_id, run_id)

        self.logger.error(
            "batch_run_failed",
            run_id=run_id,
            error=error_message,
            credits_refunded=run.credits_refunded,
        )
        return run.snapshot()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _complete(self, run: _RunRecord) -> None:
        self._transition(run, BatchRunStatus.COMPLETED)
        run.completed_at = self.clock()
        run.credits_refunded = run.unrecovered_credits((CheckStatus.FAILED, CheckStatus.SKIPPED))
        self.ledger.refund(run.account_id, run.credits_refunded, description=f"Failed checks in LLM batch run {run.run_id}")
        self.register.release(run.account_id, run.run_id)

        self.logger.info(
            "batch_run_completed",
            run_id=run.run_id,
            successful_checks=run.count(CheckStatus.SUCCEEDED),
            failed_checks=run.count(CheckStatus.FAILED),
            credits_refunded=run.credits_refunded,
        )

    def _transition(self, run: _RunRecord, target: BatchRunStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[run.status]:
            raise InvalidTransitionError(run.run_id, run.status.value, target.value)
        self.logger.debug("batch_run_transition", run_id=run.run_id, from_status=run.status.value, to_status=target.value)
        run.status = target

    def _ensure_no_active_run(self, account_id: str) -> None:
        holder = self.register.holder(account_id)
        if holder:
            raise BatchRunAlreadyActiveError(run_id=holder, status=self._runs[holder].status.value)

    def _validate_providers(self, providers: Iterable) -> list[Provider]:
        valid: list[Provider] = []
        for value in providers or []:
            try:
                provider = Provider(value)
            except ValueError:
                raise InvalidBatchRequestError(f"Unknown provider: {value}")
            if provider not in valid:
                valid.append(provider)
        if not valid:
            raise InvalidBatchRequestError("At least one valid provider is required")
        return valid

    def _all_questions(
        self,
        account_id: str,
        providers: list[Provider],
        group_id: Optional[str],
    ) -> list[QueuedQuestion]:
        questions: list[QueuedQuestion] = []
        seen = set()
        for concept in self.question_source(account_id):
            for question in concept.questions:
                if group_id == UNGROUPED and question.group_id is not None:
                    continue
                if group_id and group_id != UNGROUPED and question.group_id != group_id:
                    continue
                if question.key in seen:
                    continue
                seen.add(question.key)
                questions.append(QueuedQuestion(
                    concept_id=concept.id,
                    question_key=question.key,
                    question=question.text,
                    question_id=question.id,
                    checks={p: CheckStatus.PENDING for p in providers},
                ))
        return questions

    def _failed_questions(
        self,
        account_id: str,
        run_id: str,
        providers: list[Provider],
    ) -> list[QueuedQuestion]:
        previous = self._get_run(account_id, run_id)
        questions = []
        for question in previous.questions:
            failed = [p for p, s in question.checks.items() if s == CheckStatus.FAILED and p in providers]
            if not failed:
                continue
            questions.append(QueuedQuestion(
                concept_id=question.concept_id,
                question_key=question.question_key,
                question=question.question,
                question_id=question.question_id,
                checks={p: CheckStatus.PENDING for p in failed},
            ))
        return questions

    def _get_run(self, account_id: str, run_id: str) -> _RunRecord:
        run = self._runs.get(run_id)
        if run is None or run.account_id != account_id:
            raise BatchRunNotFoundError(run_id)
        return run

    def _require(self, run_id: str) -> _RunRecord:
        run = self._runs.get(run_id)
        if run is None:
            raise BatchRunNotFoundError(run_id)
        return run
