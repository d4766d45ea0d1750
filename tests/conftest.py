"""Test configuration and fixtures for the Library Circulation server.

1. Isolated databases - each test gets its own SQLite file under ``tmp_path``
2. A controllable clock - time-dependent rules (due dates, fines) are tested
   by moving a frozen clock forward instead of sleeping
3. Catalog helpers - books are created through the real catalog store
"""

from collections.abc import Generator
from datetime import datetime, timedelta
from pathlib import Path

import logfire
import pytest
from sqlalchemy.orm import Session

from library_circulation.config import CirculationConfig, reset_config
from library_circulation.database.book_repository import BookCreateSchema, BookRepository
from library_circulation.database.session import DatabaseManager
from library_circulation.service import CirculationService

START = datetime(2024, 3, 1, 10, 30)


def pytest_configure(config):  # noqa: ARG001
    # Spans are recorded locally only
    logfire.configure(send_to_logfire=False, console=False)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: int = 0, hours: int = 0, minutes: int = 0) -> datetime:
        self.now += timedelta(days=days, hours=hours, minutes=minutes)
        return self.now


# === Configuration Fixtures ===


@pytest.fixture
def test_db_path(tmp_path: Path) -> Path:
    return tmp_path / "test_circulation.db"


@pytest.fixture
def test_config(test_db_path: Path) -> Generator[CirculationConfig, None, None]:
    """Configuration pointing at the per-test database, with fast retries."""
    reset_config()
    config = CirculationConfig(
        database_path=test_db_path,
        conflict_retry_attempts=5,
        conflict_retry_backoff_seconds=0.01,
        lock_timeout_seconds=5.0,
    )
    yield config
    reset_config()


# === Database Fixtures ===


@pytest.fixture
def db_manager(test_config: CirculationConfig) -> Generator[DatabaseManager, None, None]:
    manager = DatabaseManager(test_config.get_database_url())
    manager.init_database()
    yield manager
    manager.close()


@pytest.fixture
def test_db_session(db_manager: DatabaseManager) -> Generator[Session, None, None]:
    """A raw session for repository tests; committed if the test passes."""
    session = db_manager.create_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# === Service Fixtures ===


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def service(db_manager: DatabaseManager, test_config: CirculationConfig, clock: FrozenClock):
    return CirculationService(db_manager, test_config, clock=clock)


@pytest.fixture
def make_book(db_manager: DatabaseManager):
    """Factory adding a book to the catalog in its own committed transaction."""

    def _make_book(
        title: str = "The Pragmatic Programmer",
        total_copies: int = 1,
        genre: str | None = "Technology",
        **kwargs,
    ):
        with db_manager.session_scope() as session:
            return BookRepository(session).create(
                BookCreateSchema(
                    title=title,
                    author=kwargs.pop("author", "Test Author"),
                    genre=genre,
                    total_copies=total_copies,
                    **kwargs,
                )
            )

    return _make_book


@pytest.fixture
def get_book(db_manager: DatabaseManager):
    """Read a book's current state straight from the database."""

    def _get_book(book_id: str):
        with db_manager.session_scope() as session:
            return BookRepository(session).get_by_id(book_id)

    return _get_book
