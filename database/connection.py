"""Database connection management with connection pooling."""

import os
from contextlib import contextmanager
from typing import Generator, Optional
from sqlalchemy import create_engine, event, pool, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import OperationalError
import structlog

from database.models import Base

logger = structlog.get_logger(__name__)


class DatabaseConnection:
    """Manages database connections with pooling and health checks."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        pool_size: int = 10,
        max_overflow: int = 20,
        pool_timeout: int = 30,
        pool_recycle: int = 3600,
        echo: bool = False,
    ):
        """Initialize database connection.

        Args:
            database_url: SQLAlchemy URL; SQLite file by default
            pool_size: Number of connections to maintain (server databases)
            max_overflow: Max connections beyond pool_size (server databases)
            pool_timeout: Seconds to wait for connection
            pool_recycle: Recycle connections after N seconds
            echo: Echo SQL statements (for debugging)
        """
        self.database_url = database_url or os.getenv("DATABASE_URL", "sqlite:///visibility.db")
        url = make_url(self.database_url)
        self.is_sqlite = url.get_backend_name() == "sqlite"

        if self.is_sqlite:
            in_memory = url.database in (None, "", ":memory:")
            # One shared connection keeps an in-memory database alive across sessions
            self.engine = create_engine(
                self.database_url,
                poolclass=pool.StaticPool if in_memory else pool.QueuePool,
                connect_args={"check_same_thread": False},
                echo=echo,
            )
        else:
            self.engine = create_engine(
                self.database_url,
                poolclass=pool.QueuePool,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_recycle=pool_recycle,
                pool_pre_ping=True,  # Verify connections before using
                echo=echo,
            )

        # Create session factory
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

        # Register connection event listeners
        self._register_event_listeners()

        logger.info(
            "database_connection_initialized",
            backend=url.get_backend_name(),
            pool=type(self.engine.pool).__name__,
        )

    def _register_event_listeners(self):
        """Register event listeners for connection lifecycle."""

        @event.listens_for(self.engine, "connect")
        def receive_connect(dbapi_conn, connection_record):
            """Called when a new DB connection is created."""
            logger.debug("database_connection_created")

        @event.listens_for(self.engine, "checkout")
        def receive_checkout(dbapi_conn, connection_record, connection_proxy):
            """Called when a connection is retrieved from the pool."""
            logger.debug("database_connection_checkout")

    def create_tables(self):
        """Create all database tables."""
        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("database_tables_created")
        except Exception as e:
            logger.error("database_tables_creation_failed", error=str(e))
            raise

    def drop_tables(self):
        """Drop all database tables (use with caution!)."""
        try:
            Base.metadata.drop_all(bind=self.engine)
            logger.info("database_tables_dropped")
        except Exception as e:
            logger.error("database_tables_drop_failed", error=str(e))
            raise

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Provide a transactional session scope.

        Usage:
            with db.session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def health_check(self) -> bool:
        """Check if database connection is healthy."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except OperationalError as e:
            logger.error("database_health_check_failed", error=str(e))
            return False

    def close(self):
        """Close all database connections."""
        self.engine.dispose()
        logger.info("database_connection_closed")


# Global database connection instance
_db_connection: Optional[DatabaseConnection] = None


def init_db(database_url: Optional[str] = None, **kwargs) -> DatabaseConnection:
    """Initialize global database connection and create missing tables."""
    global _db_connection
    _db_connection = DatabaseConnection(database_url=database_url, **kwargs)
    _db_connection.create_tables()
    return _db_connection


def get_db() -> DatabaseConnection:
    """Get global database connection instance."""
    if _db_connection is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _db_connection


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Get a database session from global connection."""
    db = get_db()
    with db.session() as session:
        yield session
