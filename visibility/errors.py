"""Errors raised by the visibility core and its collaborators."""

from typing import Optional


class VisibilityError(Exception):
    """Base class for all visibility errors."""


class APIError(VisibilityError):
    """Non-success response from a collaborator API."""

    def __init__(
        self,
        status: int,
        message: str,
        payload: Optional[dict] = None,
        retry_after: Optional[float] = None,
    ):
        self.status = status
        self.payload = payload or {}
        self.retry_after = retry_after
        super().__init__(f"{message} (status {status})")


class InsufficientCreditsError(VisibilityError):
    """A batch run needs more credits than the account holds."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits. Need {required}, have {available}")


class BatchRunAlreadyActiveError(VisibilityError):
    """Another batch run is pending or processing for the account."""

    def __init__(self, run_id: Optional[str] = None, status: Optional[str] = None):
        self.run_id = run_id
        self.status = status
        super().__init__("A batch run is already in progress")


class BatchRunNotFoundError(VisibilityError):
    """The batch run does not exist or belongs to another account."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Batch run not found: {run_id}")


class InvalidBatchRequestError(VisibilityError):
    """A batch run request failed validation."""


class InvalidTransitionError(VisibilityError):
    """A batch run was moved to a status its current status cannot reach."""

    def __init__(self, run_id: str, current: str, target: str):
        self.run_id = run_id
        self.current = current
        self.target = target
        super().__init__(f"Batch run {run_id} cannot move from {current} to {target}")
