"""
Collaborator connectors for the visibility core
"""

from .base import BatchRunAPI, CheckResultsAPI, ConceptsAPI, ExportAPI, VisibilityAPI
from .http_client import VisibilityAPIClient
from .memory import InMemoryVisibilityAPI

__all__ = [
    "BatchRunAPI",
    "CheckResultsAPI",
    "ConceptsAPI",
    "ExportAPI",
    "VisibilityAPI",
    "VisibilityAPIClient",
    "InMemoryVisibilityAPI",
]
