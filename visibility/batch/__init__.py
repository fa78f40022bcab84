"""
Batch Runs
==========

In-process orchestrator for batch checks and the client-side status poller.
"""

from .orchestrator import (
    ALLOWED_TRANSITIONS,
    UNGROUPED,
    ActiveRunRegister,
    BatchRunOrchestrator,
    CreditLedger,
)
from .poller import BatchNotification, BatchStatusPoller, NotificationKind

__all__ = [
    "ALLOWED_TRANSITIONS",
    "UNGROUPED",
    "ActiveRunRegister",
    "BatchRunOrchestrator",
    "CreditLedger",
    "BatchNotification",
    "BatchStatusPoller",
    "NotificationKind",
]
