"""
Visibility Data Model
=====================

Wire-level models shared with the collaborator APIs (concepts, check results,
batch runs). Payloads arrive in camelCase; every model also accepts its
snake_case field names so the core can build instances directly.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)


class Provider(str, Enum):
    """LLM providers a question can be checked against."""

    CHATGPT = "chatgpt"
    CLAUDE = "claude"
    GEMINI = "gemini"
    PERPLEXITY = "perplexity"

    @property
    def label(self) -> str:
        return PROVIDER_LABELS[self]


PROVIDERS: list[Provider] = list(Provider)

PROVIDER_LABELS: dict[Provider, str] = {
    Provider.CHATGPT: "ChatGPT",
    Provider.CLAUDE: "Claude",
    Provider.GEMINI: "Gemini",
    Provider.PERPLEXITY: "Perplexity",
}

DEFAULT_PROVIDERS: list[Provider] = [Provider.CHATGPT, Provider.CLAUDE]


class FunnelStage(str, Enum):
    """Position of a question in the buyer journey."""

    TOP = "top"
    MIDDLE = "middle"
    BOTTOM = "bottom"


FUNNEL_ORDER: dict[FunnelStage, int] = {
    FunnelStage.TOP: 0,
    FunnelStage.MIDDLE: 1,
    FunnelStage.BOTTOM: 2,
}


class BatchRunStatus(str, Enum):
    """Lifecycle of a batch run: scheduled -> pending -> processing -> completed | failed."""

    SCHEDULED = "scheduled"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (BatchRunStatus.PENDING, BatchRunStatus.PROCESSING)

    @property
    def is_terminal(self) -> bool:
        return self in (BatchRunStatus.COMPLETED, BatchRunStatus.FAILED)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (0.5 -> 1, -2.5 -> -2)."""
    return int(math.floor(value + 0.5))


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to timezone-aware UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def composite_question_key(concept_id: Optional[str], question_text: str) -> str:
    """Fallback identity for a question that has no stable id."""
    return f"{concept_id or ''}:{question_text}"


_WIRE_CONFIG = ConfigDict(populate_by_name=True, extra="ignore")


class Question(BaseModel):
    """A natural-language query attached to exactly one concept."""

    model_config = _WIRE_CONFIG

    id: Optional[str] = None
    text: str = Field(alias="question")
    funnel_stage: FunnelStage = Field(FunnelStage.TOP, alias="funnelStage")
    group_id: Optional[str] = Field(None, alias="groupId")
    created_at: Optional[datetime] = Field(None, alias="addedAt")
    concept_id: Optional[str] = Field(None, alias="conceptId")

    @field_validator("funnel_stage", mode="before")
    @classmethod
    def _default_stage(cls, value):
        return value or FunnelStage.TOP

    @property
    def composite_key(self) -> str:
        return composite_question_key(self.concept_id, self.text)

    @property
    def key(self) -> str:
        """Identity used to join results; stable across text edits when an id exists."""
        return self.id or self.composite_key


class Concept(BaseModel):
    """A tracked keyword/topic and its ordered questions."""

    model_config = _WIRE_CONFIG

    id: str
    phrase: str
    questions: list[Question] = Field(default_factory=list, alias="relatedQuestions")

    @field_validator("questions", mode="before")
    @classmethod
    def _coerce_questions(cls, value):
        if not value:
            return []
        coerced = []
        for item in value:
            # Legacy rows store bare question strings
            if isinstance(item, str):
                item = {"question": item}
            if isinstance(item, dict):
                text = item.get("question") or item.get("text")
                if not text or not str(text).strip():
                    continue
            coerced.append(item)
        return coerced

    @model_validator(mode="after")
    def _link_questions(self):
        self.questions = [
            q if q.concept_id == self.id else q.model_copy(update={"concept_id": self.id})
            for q in self.questions
        ]
        return self


class SourceReference(BaseModel):
    """A web source consulted by a provider while researching an answer."""

    model_config = _WIRE_CONFIG

    url: Optional[str] = None
    domain: Optional[str] = None
    title: Optional[str] = None


class Citation(SourceReference):
    """A source listed in an answer, ranked by position."""

    position: Optional[int] = None
    is_ours: bool = Field(False, alias="isOurs")


class MentionedBrand(BaseModel):
    model_config = _WIRE_CONFIG

    title: str
    category: Optional[str] = None


class CheckResult(BaseModel):
    """One immutable LLM query execution for a question and provider."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: str
    concept_id: Optional[str] = Field(None, alias="keywordId")
    question_id: Optional[str] = Field(None, alias="questionId")
    question: str
    provider: Provider = Field(alias="llmProvider")
    checked_at: datetime = Field(alias="checkedAt")
    domain_cited: bool = Field(False, alias="domainCited")
    citation_position: Optional[int] = Field(None, alias="citationPosition")
    citation_url: Optional[str] = Field(None, alias="citationUrl")
    total_citations: int = Field(0, alias="totalCitations")
    brand_mentioned: bool = Field(False, alias="brandMentioned")
    mentioned_brands: list[MentionedBrand] = Field(default_factory=list, alias="mentionedBrands")
    response_snippet: Optional[str] = Field(None, alias="responseSnippet")
    full_response: Optional[str] = Field(None, alias="fullResponse")
    citations: list[Citation] = Field(default_factory=list)
    search_results: list[SourceReference] = Field(default_factory=list, alias="searchResults")
    fan_out_queries: list[str] = Field(default_factory=list, alias="fanOutQueries")

    @field_validator("checked_at")
    @classmethod
    def _normalize_checked_at(cls, value: datetime) -> datetime:
        return to_utc(value)

    @field_validator(
        "mentioned_brands", "citations", "search_results", "fan_out_queries", mode="before"
    )
    @classmethod
    def _null_lists(cls, value):
        return value or []

    @field_validator("total_citations", mode="before")
    @classmethod
    def _null_count(cls, value):
        return value or 0

    @property
    def composite_key(self) -> str:
        return composite_question_key(self.concept_id, self.question)


class BatchRun(BaseModel):
    """Snapshot of an orchestrated batch run as reported by the orchestrator."""

    model_config = _WIRE_CONFIG

    run_id: str = Field(alias="runId")
    status: BatchRunStatus
    providers: list[Provider] = Field(default_factory=list)
    total_questions: int = Field(0, alias="totalQuestions")
    processed_questions: int = Field(0, alias="processedQuestions")
    successful_checks: int = Field(0, alias="successfulChecks")
    failed_checks: int = Field(0, alias="failedChecks")
    credits_refunded: int = Field(0, alias="creditsRefunded")
    estimated_credits: int = Field(0, alias="estimatedCredits")
    error_message: Optional[str] = Field(None, alias="errorMessage")
    retry_failed_from_run_id: Optional[str] = Field(None, alias="retryFailedFromRunId")
    group_id: Optional[str] = Field(None, alias="groupId")
    scheduled_for: Optional[datetime] = Field(None, alias="scheduledFor")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    completed_at: Optional[datetime] = Field(None, alias="completedAt")

    @field_validator("scheduled_for", "created_at", "completed_at")
    @classmethod
    def _normalize_times(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_utc(value) if value else value

    @computed_field
    @property
    def progress(self) -> int:
        """Percent of questions processed, always derived from the counters."""
        if self.total_questions <= 0:
            return 0
        return round_half_up(self.processed_questions / self.total_questions * 100)

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class BatchRunTicket(BaseModel):
    """Acknowledgement returned when a batch run is accepted."""

    model_config = _WIRE_CONFIG

    run_id: str = Field(alias="runId")
    total_questions: int = Field(alias="totalQuestions")
    providers: list[Provider]
    estimated_credits: int = Field(0, alias="estimatedCredits")
    credit_balance: Optional[int] = Field(None, alias="creditBalance")
    scheduled_for: Optional[datetime] = Field(None, alias="scheduledFor")

    def initial_run(self) -> BatchRun:
        """Local run state to display until the first status poll arrives."""
        return BatchRun(
            run_id=self.run_id,
            status=BatchRunStatus.SCHEDULED if self.scheduled_for else BatchRunStatus.PENDING,
            providers=self.providers,
            total_questions=self.total_questions,
            estimated_credits=self.estimated_credits,
            scheduled_for=self.scheduled_for,
        )


class BatchPreview(BaseModel):
    """Cost of a batch run before it is started."""

    model_config = _WIRE_CONFIG

    total_questions: int = Field(0, alias="totalQuestions")
    concept_count: int = Field(0, alias="keywordCount")
    providers: list[Provider] = Field(default_factory=list)
    total_credits: int = Field(0, alias="totalCredits")
    cost_per_provider: dict[Provider, int] = Field(default_factory=dict, alias="costPerProvider")
    credit_balance: int = Field(0, alias="creditBalance")
    active_run: Optional[BatchRun] = Field(None, alias="activeRun")
    scheduled_run: Optional[BatchRun] = Field(None, alias="scheduledRun")

    @property
    def has_credits(self) -> bool:
        return self.credit_balance >= self.total_credits
