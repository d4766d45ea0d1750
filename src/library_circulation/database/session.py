"""
Database session management for the Library Circulation server.

Every circulation operation runs inside exactly one ``session_scope``: the
scope commits when the block finishes and rolls back on any exception, so a
borrow or return either lands in full (loan record and copy count together)
or not at all.

Connection handling:
- File-backed SQLite gets a real connection pool, one connection per session,
  with a busy timeout so concurrent writers wait instead of failing at once
- In-memory SQLite uses ``StaticPool`` (the database lives in one connection)
- Other databases get a sized pool with pre-ping
"""

import logging
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from ..config import get_config
from ..errors import ConcurrencyConflictError, RepositoryException
from .schema import Base

T = TypeVar("T")

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS = 30


class DatabaseManager:
    """
    Owns the engine and session factory for one database.

    Construct one per process (or per test) and hand it to the services that
    need it.
    """

    def __init__(self, database_url: str | None = None):
        """
        Initialize the database manager.

        Args:
            database_url: SQLAlchemy database URL. If None, uses the configured
                SQLite file.
        """
        if database_url is None:
            config = get_config()
            db_path = config.database_path

            if not db_path.is_absolute():
                db_path = Path.cwd() / db_path

            db_path.parent.mkdir(exist_ok=True, parents=True)

            database_url = f"sqlite:///{db_path}"
            logger.info("Using SQLite database at: %s", db_path)

        self.database_url = database_url
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None

    @property
    def is_memory_database(self) -> bool:
        return self.database_url in ("sqlite://", "sqlite:///:memory:")

    @property
    def engine(self) -> Engine:
        """Get or create the database engine."""
        if self._engine is None:
            if self.database_url.startswith("sqlite"):
                if self.is_memory_database:
                    self._engine = create_engine(
                        self.database_url,
                        poolclass=StaticPool,
                        connect_args={"check_same_thread": False},
                        echo=False,
                    )
                else:
                    self._engine = create_engine(
                        self.database_url,
                        connect_args={
                            "check_same_thread": False,
                            "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
                        },
                        echo=False,
                    )

                @event.listens_for(self._engine, "connect")
                def set_sqlite_pragma(dbapi_connection, connection_record):  # noqa: ARG001
                    cursor = dbapi_connection.cursor()
                    cursor.execute("PRAGMA foreign_keys=ON")
                    cursor.close()
            else:
                self._engine = create_engine(
                    self.database_url,
                    pool_size=10,
                    max_overflow=20,
                    pool_pre_ping=True,
                    isolation_level="READ COMMITTED",
                    echo=False,
                )

            logger.info("Database engine created: %s", self._engine.url)

        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                autocommit=False,
                # Repositories flush explicitly so both halves of a
                # circulation operation reach the database in order
                autoflush=False,
                expire_on_commit=False,
            )
        return self._session_factory

    def create_session(self) -> Session:
        """Create a new database session. Prefer ``session_scope``."""
        return self.session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope for database operations.

        ```python
        with db_manager.session_scope() as session:
            book = BookRepository(session).decrement_available(book_id)
        # committed here, or rolled back if the block raised
        ```

        Raises:
            ConcurrencyConflictError: if the commit lost a race
            Any other error raised inside the block, after rollback
        """
        session = self.create_session()
        try:
            yield session
            session.commit()
            logger.debug("Database transaction committed successfully")
        except SQLAlchemyError as e:
            session.rollback()
            if is_conflict(e):
                logger.info("Write conflict, transaction rolled back: %s", e)
                raise ConcurrencyConflictError(f"Concurrent update detected: {e!s}") from e
            logger.exception("Database error, rolling back")
            raise
        except Exception:
            session.rollback()
            logger.debug("Transaction rolled back")
            raise
        finally:
            session.close()

    def init_database(self, drop_existing: bool = False) -> None:
        """
        Initialize the database schema.

        Args:
            drop_existing: If True, drop all tables before creating
        """
        engine = self.engine

        if drop_existing:
            logger.warning("Dropping all existing tables...")
            Base.metadata.drop_all(bind=engine)

        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialization complete")

    def verify_connection(self) -> bool:
        """Verify the database connection is working (health check)."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database connection verified")
            return True
        except SQLAlchemyError:
            logger.exception("Database connection failed")
            return False

    def close(self) -> None:
        """Dispose of the engine and its connections."""
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._engine = None
        self._session_factory = None


def is_conflict(error: BaseException) -> bool:
    """Whether a database error means another writer got there first."""
    if isinstance(error, StaleDataError):
        return True
    if isinstance(error, OperationalError):
        message = str(error.orig if error.orig is not None else error).lower()
        return "locked" in message or "deadlock" in message or "could not serialize" in message
    return False


def safe_flush(session: Session, operation: str) -> None:
    """
    Flush pending changes with circulation-appropriate error handling.

    Args:
        session: The database session
        operation: Description of the operation (for error messages)

    Raises:
        ConcurrencyConflictError: On a stale row version or a locked database
        RepositoryException: On any other database failure
    """
    try:
        session.flush()
    except SQLAlchemyError as e:
        if is_conflict(e):
            raise ConcurrencyConflictError(
                f"Database operation '{operation}' lost a concurrent update"
            ) from e
        raise RepositoryException(f"Database operation '{operation}' failed: {e!s}") from e


def safe_query(session: Session, query_func: Callable[[Session], T], error_msg: str) -> T:
    """
    Execute a query with circulation-appropriate error handling.

    Args:
        session: The database session
        query_func: Function that performs the query
        error_msg: Error message for the caller

    Returns:
        Query result

    Raises:
        ConcurrencyConflictError: If the database is locked by another writer
        RepositoryException: If the query fails for any other reason
    """
    try:
        return query_func(session)
    except SQLAlchemyError as e:
        if is_conflict(e):
            raise ConcurrencyConflictError(f"{error_msg}: database busy") from e
        logger.exception("Query failed")
        raise RepositoryException(f"{error_msg}: Database query failed") from e
