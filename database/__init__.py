"""Database package for the check result store."""

from database.models import Base, CheckResultRecord
from database.connection import DatabaseConnection, get_session, init_db, get_db
from database.store import SqlCheckResultStore

__all__ = [
    "Base",
    "CheckResultRecord",
    "DatabaseConnection",
    "get_session",
    "init_db",
    "get_db",
    "SqlCheckResultStore",
]
