"""Database models for the check result store."""

from datetime import datetime, timezone
from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    Boolean,
    Text,
    Index,
    JSON,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CheckResultRecord(Base):
    """One LLM check of a question on a provider. Rows are append-only."""

    __tablename__ = "llm_visibility_checks"

    id = Column(String(64), primary_key=True)
    account_id = Column(String(64), nullable=False, index=True)
    keyword_id = Column(String(64), nullable=True)
    question_id = Column(String(64), nullable=True)
    question = Column(Text, nullable=False)
    llm_provider = Column(String(20), nullable=False)
    checked_at = Column(DateTime, nullable=False)  # naive UTC

    domain_cited = Column(Boolean, nullable=False, default=False)
    citation_position = Column(Integer, nullable=True)
    citation_url = Column(Text, nullable=True)
    total_citations = Column(Integer, nullable=False, default=0)
    brand_mentioned = Column(Boolean, nullable=False, default=False)
    response_snippet = Column(Text, nullable=True)
    full_response = Column(Text, nullable=True)

    # Lists of {title, category}, {position, url, domain, title, isOurs}, {url, domain, title}, str
    mentioned_brands = Column(JSON, nullable=True)
    citations = Column(JSON, nullable=True)
    search_results = Column(JSON, nullable=True)
    fan_out_queries = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc).replace(tzinfo=None))

    __table_args__ = (
        Index("idx_checks_keyword_checked", "account_id", "keyword_id", "checked_at"),
        Index("idx_checks_question_provider", "question_id", "llm_provider"),
    )

    def __repr__(self):
        return f"<CheckResultRecord(id={self.id}, provider={self.llm_provider}, cited={self.domain_cited})>"
