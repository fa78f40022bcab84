"""
Base contracts for the collaborators the visibility core reads from and drives
"""

from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..models import BatchPreview, BatchRun, BatchRunTicket, CheckResult, Concept, Provider


class ConceptsAPI(ABC):
    """Read access to the account's concepts and their questions"""

    @abstractmethod
    async def list_concepts(self) -> list[Concept]:
        """Return every concept with its embedded questions"""
        pass


class CheckResultsAPI(ABC):
    """Read access to stored check results"""

    @abstractmethod
    async def list_results(self, concept_id: str, limit: int = 200) -> list[CheckResult]:
        """Return up to ``limit`` most recent results across a concept's questions"""
        pass


class BatchRunAPI(ABC):
    """Client-facing contract of the batch run orchestrator"""

    @abstractmethod
    async def start(
        self,
        providers: list[Provider],
        retry_failed_from_run_id: Optional[str] = None,
        group_id: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> BatchRunTicket:
        """Queue a batch run, or schedule it when ``scheduled_for`` lies in the future.

        Raises:
            InsufficientCreditsError: balance below the run's cost
            BatchRunAlreadyActiveError: another run is pending or processing
        """
        pass

    @abstractmethod
    async def status(self, run_id: Optional[str] = None) -> Optional[BatchRun]:
        """Status of a run; without an id, the account's current or most recent run"""
        pass

    @abstractmethod
    async def preview(self, providers: list[Provider], group_id: Optional[str] = None) -> BatchPreview:
        """Questions, cost and balance for a run that has not been started"""
        pass

    @abstractmethod
    async def cancel_scheduled(self, run_id: str) -> int:
        """Delete a scheduled run that has not started; returns the credits refunded"""
        pass


class ExportAPI(ABC):
    """Downloadable export of every check result"""

    @abstractmethod
    async def export_results(self, destination: Path) -> Path:
        """Stream the export to ``destination`` and return the written path"""
        pass


class VisibilityAPI(ConceptsAPI, CheckResultsAPI, BatchRunAPI, ExportAPI):
    """All collaborator contracts behind one object"""

    @property
    @abstractmethod
    def source_name(self) -> str:
        """Return the name of the backing data source"""
        pass
