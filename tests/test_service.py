"""Tests for the circulation service (borrow, return, renew, reserve)."""

from datetime import timedelta
from decimal import Decimal

import pytest

from library_circulation.database.loan_repository import LoanRepository
from library_circulation.database.schema import BorrowRecord as BorrowDB
from library_circulation.database.schema import LoanStatusEnum
from library_circulation.errors import (
    ActiveLoansExistError,
    AlreadyBorrowedError,
    BookNotFoundError,
    BorrowLimitExceededError,
    LoanNotFoundError,
    MaxRenewalsExceededError,
    NoActiveLoanError,
    NoCopiesAvailableError,
    NotOwnerError,
    NotRenewableError,
)
from library_circulation.models.loan import LoanStatus


class TestBorrow:
    def test_borrow_takes_a_copy(self, service, make_book, get_book, clock):
        book = make_book(total_copies=2)

        record = service.borrow(book.id, "user-1", notes="Research")

        assert record.status == LoanStatus.BORROWED
        assert record.book_title == book.title
        assert record.due_at == clock.now + timedelta(days=14)
        assert record.notes == "Research"
        assert get_book(book.id).available_copies == 1

    def test_copy_count_changes_use_the_service_clock(self, service, make_book, get_book, clock):
        book = make_book(total_copies=2)

        record = service.borrow(book.id, "user-1")
        assert get_book(book.id).updated_at == record.borrowed_at

        clock.advance(days=3)
        returned = service.return_book(book.id, "user-1")
        assert get_book(book.id).updated_at == returned.returned_at == clock.now

    def test_unknown_or_withdrawn_book(self, service, make_book):
        with pytest.raises(BookNotFoundError):
            service.borrow("book_doesnotexist", "user-1")

        book = make_book()
        service.withdraw_book(book.id)
        with pytest.raises(BookNotFoundError):
            service.borrow(book.id, "user-1")

    def test_no_copies_left(self, service, make_book):
        book = make_book(total_copies=1)
        service.borrow(book.id, "user-1")

        with pytest.raises(NoCopiesAvailableError):
            service.borrow(book.id, "user-2")

    def test_at_most_one_active_loan_per_book(self, service, make_book, get_book):
        book = make_book(total_copies=3)
        service.borrow(book.id, "user-1")

        with pytest.raises(AlreadyBorrowedError):
            service.borrow(book.id, "user-1")

        assert get_book(book.id).available_copies == 2
        assert len(service.get_active_loans("user-1")) == 1

    def test_borrow_limit(self, service, make_book):
        books = [make_book(title=f"Book {i}") for i in range(6)]
        for book in books[:5]:
            service.borrow(book.id, "user-1")

        with pytest.raises(BorrowLimitExceededError):
            service.borrow(books[5].id, "user-1")

        # Returning one frees a slot
        service.return_book(books[0].id, "user-1")
        assert service.borrow(books[5].id, "user-1").book_id == books[5].id

    def test_overdue_loans_count_towards_the_limit(self, service, make_book, clock):
        books = [make_book(title=f"Book {i}") for i in range(6)]
        for book in books[:5]:
            service.borrow(book.id, "user-1")

        clock.advance(days=30)
        with pytest.raises(BorrowLimitExceededError):
            service.borrow(books[5].id, "user-1")

    def test_borrow_again_after_return(self, service, make_book):
        book = make_book()
        service.borrow(book.id, "user-1")
        service.return_book(book.id, "user-1")

        assert service.borrow(book.id, "user-1").status == LoanStatus.BORROWED


class TestReturn:
    def test_return_puts_copy_back(self, service, make_book, get_book, clock):
        book = make_book(total_copies=1)
        service.borrow(book.id, "user-1")
        clock.advance(days=3)

        record = service.return_book(book.id, "user-1")

        assert record.status == LoanStatus.RETURNED
        assert record.returned_at == clock.now
        assert record.fine_amount == Decimal("0.00")
        assert get_book(book.id).available_copies == 1

    def test_no_active_loan(self, service, make_book):
        book = make_book()
        with pytest.raises(NoActiveLoanError):
            service.return_book(book.id, "user-1")

        service.borrow(book.id, "user-1")
        with pytest.raises(NoActiveLoanError):
            service.return_book(book.id, "user-2")

    def test_double_return(self, service, make_book, get_book):
        book = make_book(total_copies=2)
        service.borrow(book.id, "user-1")
        service.return_book(book.id, "user-1")

        with pytest.raises(NoActiveLoanError):
            service.return_book(book.id, "user-1")
        assert get_book(book.id).available_copies == 2

    def test_unknown_book(self, service):
        with pytest.raises(BookNotFoundError):
            service.return_book("book_doesnotexist", "user-1")

    def test_withdrawn_book_can_still_come_back(self, service, make_book, get_book, db_manager):
        book = make_book()
        service.borrow(book.id, "user-1")

        with pytest.raises(ActiveLoansExistError):
            service.withdraw_book(book.id)

        service.return_book(book.id, "user-1")
        withdrawn = service.withdraw_book(book.id)

        assert withdrawn.is_active is False
        assert get_book(book.id).available_copies == 1


class TestFines:
    def test_on_time_return_is_free(self, service, make_book, clock):
        book = make_book()
        service.borrow(book.id, "user-1")
        clock.advance(days=14)

        assert service.return_book(book.id, "user-1").fine_amount == Decimal("0.00")

    def test_three_days_late(self, service, make_book, clock):
        book = make_book()
        service.borrow(book.id, "user-1")
        clock.advance(days=17)

        assert service.return_book(book.id, "user-1").fine_amount == Decimal("3.00")

    def test_partial_days_are_not_charged(self, service, make_book, clock):
        book = make_book()
        service.borrow(book.id, "user-1")
        clock.advance(days=16, hours=23)

        assert service.return_book(book.id, "user-1").fine_amount == Decimal("2.00")

    def test_twenty_day_old_loan(self, service, make_book, clock):
        book = make_book()
        service.borrow(book.id, "user-1")
        clock.advance(days=20)

        loans = service.get_active_loans("user-1")
        assert loans[0].status == LoanStatus.OVERDUE
        assert loans[0].fine_amount == Decimal("6.00")

        assert service.return_book(book.id, "user-1").fine_amount == Decimal("6.00")

    def test_renewed_loan_fine_runs_from_new_due_date(self, service, make_book, clock):
        book = make_book()
        record = service.borrow(book.id, "user-1")
        clock.advance(days=10)
        service.renew(record.id, "user-1")
        clock.advance(days=20)  # day 30, due on day 28

        assert service.return_book(book.id, "user-1").fine_amount == Decimal("2.00")


class TestRenew:
    def test_renew_twice_then_refused(self, service, make_book, clock):
        book = make_book()
        record = service.borrow(book.id, "user-1")

        first = service.renew(record.id, "user-1")
        assert first.status == LoanStatus.RENEWED
        assert first.due_at == record.due_at + timedelta(days=14)

        second = service.renew(record.id, "user-1")
        assert second.renewed_count == 2
        assert second.due_at == record.due_at + timedelta(days=28)

        with pytest.raises(MaxRenewalsExceededError):
            service.renew(record.id, "user-1")

    def test_other_user_cannot_renew(self, service, make_book):
        book = make_book()
        record = service.borrow(book.id, "user-1")

        with pytest.raises(NotOwnerError):
            service.renew(record.id, "user-2")

    def test_unknown_loan(self, service):
        with pytest.raises(LoanNotFoundError):
            service.renew("loan_doesnotexist", "user-1")

    def test_overdue_loan_is_not_renewable(self, service, make_book, clock):
        book = make_book()
        record = service.borrow(book.id, "user-1")
        clock.advance(days=15)

        with pytest.raises(NotRenewableError):
            service.renew(record.id, "user-1")

    def test_renew_does_not_touch_availability(self, service, make_book, get_book):
        book = make_book(total_copies=2)
        record = service.borrow(book.id, "user-1")
        service.renew(record.id, "user-1")

        assert get_book(book.id).available_copies == 1


class TestReserve:
    def test_reserve_is_acknowledged_only(self, service, make_book, get_book):
        book = make_book()
        ack = service.reserve(book.id, "user-1")

        assert ack.implemented is False
        assert ack.book_id == book.id
        assert get_book(book.id).available_copies == 1

    def test_reserve_unknown_book(self, service):
        with pytest.raises(BookNotFoundError):
            service.reserve("book_doesnotexist", "user-1")


class TestAtomicity:
    def test_failed_borrow_leaves_nothing_behind(self, service, make_book, get_book, db_manager, monkeypatch):
        book = make_book(total_copies=1)

        def fail(self, book_id):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(
            "library_circulation.database.book_repository.BookRepository.decrement_available", fail
        )
        with pytest.raises(RuntimeError):
            service.borrow(book.id, "user-1")

        assert get_book(book.id).available_copies == 1
        with db_manager.session_scope() as session:
            assert session.query(BorrowDB).count() == 0

    def test_failed_return_keeps_loan_open(self, service, make_book, get_book, monkeypatch):
        book = make_book(total_copies=1)
        service.borrow(book.id, "user-1")

        def fail(self, book_id):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(
            "library_circulation.database.book_repository.BookRepository.increment_available", fail
        )
        with pytest.raises(RuntimeError):
            service.return_book(book.id, "user-1")
        monkeypatch.undo()

        assert get_book(book.id).available_copies == 0
        assert len(service.get_active_loans("user-1")) == 1


class TestLazyOverdue:
    def test_reading_active_loans_persists_overdue(self, service, make_book, clock, db_manager):
        book = make_book()
        record = service.borrow(book.id, "user-1")
        clock.advance(days=16)

        service.get_active_loans("user-1")

        with db_manager.session_scope() as session:
            row = session.get(BorrowDB, record.id)
            assert row.status == LoanStatusEnum.OVERDUE
            assert row.fine_amount == Decimal("2.00")

    def test_lagging_status_is_not_double_counted(self, service, make_book, clock, test_config, db_manager):
        book = make_book()
        service.borrow(book.id, "user-1")
        clock.advance(days=16)

        # Stored status still says "borrowed"
        stats = service.get_user_stats("user-1")
        assert stats.total_borrows == 1
        assert stats.overdue_borrows == 1
        assert stats.active_borrows == 0
        assert stats.returned_books == 0
        assert stats.total_fines == Decimal("2.00")

        with db_manager.session_scope() as session:
            assert LoanRepository(session, test_config, clock()).overdue_count() == 1


class TestScenario:
    def test_two_users_one_copy(self, service, make_book, get_book, clock):
        """Two users share a single-copy book over a month."""
        book = make_book(title="Designing Data-Intensive Applications", total_copies=1)

        alice = service.borrow(book.id, "alice")
        with pytest.raises(NoCopiesAvailableError):
            service.borrow(book.id, "bob")

        clock.advance(days=10)
        service.renew(alice.id, "alice")

        clock.advance(days=21)  # day 31, due on day 28
        returned = service.return_book(book.id, "alice")
        assert returned.fine_amount == Decimal("3.00")
        assert get_book(book.id).available_copies == 1

        bob = service.borrow(book.id, "bob")
        assert bob.due_at == clock.now + timedelta(days=14)
        assert get_book(book.id).available_copies == 0

        clock.advance(days=14)
        assert service.return_book(book.id, "bob").fine_amount == Decimal("0.00")
        assert get_book(book.id).available_copies == 1

        assert service.get_user_stats("alice").total_fines == Decimal("3.00")
        assert service.get_user_stats("bob").total_fines == Decimal("0.00")
        assert service.active_borrowings_count() == 0
