"""
Infrastructure layer: SQLAlchemy engine and transactional sessions.
"""
from contextlib import contextmanager
from typing import Iterator, Optional
import logging

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from harvest_ledger.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ledger tables."""


class Database:
    """
    Owns the engine and hands out transactional sessions.

    Every multi-step ledger mutation runs inside a single ``session_scope``
    so it commits or rolls back as a unit.
    """

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        self.url = url or settings.database_url
        connect_args = {}
        if self.url.startswith("sqlite"):
            # Writers wait for each other instead of failing immediately
            connect_args = {"check_same_thread": False, "timeout": 30}

        self.engine: Engine = create_engine(
            self.url,
            echo=settings.database_echo if echo is None else echo,
            connect_args=connect_args,
            future=True,
        )
        if self.url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        self._session_factory = sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
        )

    def create_all(self) -> None:
        """Create every ledger table that does not exist yet."""
        # Imported for its side effect of registering the mappers
        from harvest_ledger.infrastructure import tables  # noqa: F401

        Base.metadata.create_all(self.engine)
        logger.info("Ledger schema ready")

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """
        Provide a transactional scope around a series of operations.

        Commits on success, rolls back on any exception and re-raises it.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# Singleton instance
_database: Optional[Database] = None


def get_database() -> Database:
    """
    Get or create the process-wide database instance.

    Returns:
        Database instance
    """
    global _database
    if _database is None:
        _database = Database()
        _database.create_all()
    return _database
