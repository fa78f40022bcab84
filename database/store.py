"""SQL-backed check result store."""

import asyncio
from typing import Iterable, Optional

from sqlalchemy import func, select
import structlog

from database.connection import DatabaseConnection
from database.models import CheckResultRecord
from visibility.connectors.base import CheckResultsAPI
from visibility.models import CheckResult, to_utc

logger = structlog.get_logger(__name__)


def to_record(result: CheckResult, account_id: str) -> CheckResultRecord:
    """Map a check result onto a row; nested lists are stored as camelCase JSON."""
    payload = result.model_dump(by_alias=True, mode="json")
    return CheckResultRecord(
        id=result.id,
        account_id=account_id,
        keyword_id=result.concept_id,
        question_id=result.question_id,
        question=result.question,
        llm_provider=result.provider.value,
        checked_at=to_utc(result.checked_at).replace(tzinfo=None),
        domain_cited=result.domain_cited,
        citation_position=result.citation_position,
        citation_url=result.citation_url,
        total_citations=result.total_citations,
        brand_mentioned=result.brand_mentioned,
        response_snippet=result.response_snippet,
        full_response=result.full_response,
        mentioned_brands=payload["mentionedBrands"],
        citations=payload["citations"],
        search_results=payload["searchResults"],
        fan_out_queries=payload["fanOutQueries"],
    )


def from_record(record: CheckResultRecord) -> CheckResult:
    return CheckResult(
        id=record.id,
        concept_id=record.keyword_id,
        question_id=record.question_id,
        question=record.question,
        provider=record.llm_provider,
        checked_at=record.checked_at,
        domain_cited=record.domain_cited,
        citation_position=record.citation_position,
        citation_url=record.citation_url,
        total_citations=record.total_citations,
        brand_mentioned=record.brand_mentioned,
        response_snippet=record.response_snippet,
        full_response=record.full_response,
        mentioned_brands=record.mentioned_brands,
        citations=record.citations,
        search_results=record.search_results,
        fan_out_queries=record.fan_out_queries,
    )


class SqlCheckResultStore(CheckResultsAPI):
    """Append-only store of check results for one account."""

    def __init__(self, db: DatabaseConnection, account_id: str):
        self.db = db
        self.account_id = account_id
        self.logger = logger.bind(component="SqlCheckResultStore", account_id=account_id)

    def append(self, results: Iterable[CheckResult]) -> int:
        """Insert results whose ids are not stored yet; existing rows are never updated."""
        results = list(results)
        if not results:
            return 0

        with self.db.session() as session:
            existing = set(session.scalars(
                select(CheckResultRecord.id).where(CheckResultRecord.id.in_([r.id for r in results]))
            ))
            new = []
            for result in results:
                if result.id in existing:
                    continue
                existing.add(result.id)
                new.append(to_record(result, self.account_id))
            session.add_all(new)

        self.logger.info("check_results_appended", appended=len(new), skipped=len(results) - len(new))
        return len(new)

    def list_for_concept(self, concept_id: str, limit: Optional[int] = 200) -> list[CheckResult]:
        """Most recent results first."""
        query = (
            select(CheckResultRecord)
            .where(CheckResultRecord.account_id == self.account_id)
            .where(CheckResultRecord.keyword_id == concept_id)
            .order_by(CheckResultRecord.checked_at.desc(), CheckResultRecord.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)

        with self.db.session() as session:
            return [from_record(record) for record in session.scalars(query)]

    def count(self) -> int:
        with self.db.session() as session:
            return session.scalar(
                select(func.count()).select_from(CheckResultRecord)
                .where(CheckResultRecord.account_id == self.account_id)
            )

    async def list_results(self, concept_id: str, limit: int = 200) -> list[CheckResult]:
        return await asyncio.to_thread(self.list_for_concept, concept_id, limit)
