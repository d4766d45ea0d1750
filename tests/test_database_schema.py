"""Tests for the circulation database schema and session handling."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError

from library_circulation.database.schema import Book, BorrowRecord, LoanStatusEnum
from library_circulation.database.session import DatabaseManager
from library_circulation.errors import BookNotFoundError


def _book(**overrides) -> Book:
    data = {"id": "book_schema0001", "title": "Schema", "author": "Someone", "total_copies": 1, "available_copies": 1}
    data.update(overrides)
    return Book(**data)


def _loan(**overrides) -> BorrowRecord:
    now = datetime(2024, 3, 1)
    data = {
        "id": "loan_schema0001",
        "user_id": "user-1",
        "book_id": "book_schema0001",
        "borrowed_at": now,
        "due_at": now + timedelta(days=14),
    }
    data.update(overrides)
    return BorrowRecord(**data)


class TestSchema:
    def test_tables_and_indexes(self, db_manager):
        inspector = inspect(db_manager.engine)

        assert {"books", "borrow_records", "borrowers"} <= set(inspector.get_table_names())
        index_names = {index["name"] for index in inspector.get_indexes("borrow_records")}
        assert {"idx_loan_user_status", "idx_loan_due_status"} <= index_names

    def test_loan_defaults(self, test_db_session):
        test_db_session.add(_book())
        loan = _loan()
        test_db_session.add(loan)
        test_db_session.flush()

        assert loan.status == LoanStatusEnum.BORROWED
        assert loan.renewed_count == 0
        assert loan.version_id == 1
        assert loan.created_at is not None

    @pytest.mark.parametrize(
        "overrides",
        [{"renewed_count": 3}, {"id": "checkout_1"}, {"book_id": "book_missing0001"}],
    )
    def test_loan_constraints(self, test_db_session, overrides):
        test_db_session.add(_book())
        test_db_session.add(_loan(**overrides))

        with pytest.raises(IntegrityError):
            test_db_session.flush()
        test_db_session.rollback()

    def test_book_needs_at_least_one_copy(self, test_db_session):
        test_db_session.add(_book(total_copies=0, available_copies=0))
        with pytest.raises(IntegrityError):
            test_db_session.flush()
        test_db_session.rollback()


class TestSessionScope:
    def test_commits_on_success(self, db_manager):
        with db_manager.session_scope() as session:
            session.add(_book())

        with db_manager.session_scope() as session:
            assert session.get(Book, "book_schema0001") is not None

    def test_rolls_back_on_error(self, db_manager):
        with pytest.raises(BookNotFoundError):
            with db_manager.session_scope() as session:
                session.add(_book())
                session.flush()
                raise BookNotFoundError("abort")

        with db_manager.session_scope() as session:
            assert session.get(Book, "book_schema0001") is None

    def test_in_memory_database(self):
        manager = DatabaseManager("sqlite:///:memory:")
        manager.init_database()
        try:
            assert manager.is_memory_database
            assert manager.verify_connection() is True
            with manager.session_scope() as session:
                session.add(_book())
            with manager.session_scope() as session:
                assert session.get(Book, "book_schema0001") is not None
        finally:
            manager.close()
