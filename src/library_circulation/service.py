"""
Circulation service for the Library Circulation server.

The service is the public API of the engine. It composes the catalog store
and the loan ledger into the operations a library actually performs:

- borrow: check the rules, open a loan, take a copy off the shelf
- return: close the loan, finalize the fine, put the copy back
- renew: push the due date out (ledger only)
- reserve: acknowledged but not queued

Every write operation follows the same shape:

    in-process locks (sorted) -> retry on conflict -> one transaction

so the rule checks and the two writes either all happen against a consistent
view of the database or none of them do. Read operations share the same
transaction scope and clock handling but take no locks.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import TypeVar

from .concurrency import LockRegistry, book_key, retry_on_conflict, user_key
from .config import CirculationConfig, get_config
from .database.book_repository import BookCreateSchema, BookRepository
from .database.loan_repository import LoanRepository
from .database.repository import PaginatedResponse, PaginationParams
from .database.session import DatabaseManager
from .errors import (
    AlreadyBorrowedError,
    BorrowLimitExceededError,
    NoActiveLoanError,
    NoCopiesAvailableError,
)
from .models.book import Book
from .models.loan import BorrowRecord, LoanStatus, ReservationAck
from .models.stats import AdminStats, PopularBook, UserStats
from .observability import traced

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CirculationService:
    """
    Borrow, return and renew books against one database.

    Args:
        db_manager: Database to work against
        config: Loan policy and concurrency settings (defaults to ``get_config()``)
        clock: Returns the current time; injected so tests can move time
        locks: Shared lock registry, when several services serve one database
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        config: CirculationConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
        locks: LockRegistry | None = None,
    ):
        self.db_manager = db_manager
        self.config = config or get_config()
        self.clock = clock
        self.locks = locks or LockRegistry(timeout=self.config.lock_timeout_seconds)

    # === Circulation ===

    @traced("borrow")
    def borrow(self, book_id: str, user_id: str, notes: str | None = None) -> BorrowRecord:
        """
        Lend one copy of a book to a user.

        Raises:
            BookNotFoundError: If the book is absent or withdrawn
            NoCopiesAvailableError: If every copy is out
            AlreadyBorrowedError: If the user already holds this book
            BorrowLimitExceededError: If the user is at the loan limit
            ConcurrencyConflictError: If the operation kept losing races
        """
        with self.locks.hold(user_key(user_id), book_key(book_id)):
            record = self._with_retry("borrow", lambda: self._borrow(book_id, user_id, notes))

        logger.info("User %s borrowed book %s (loan %s)", user_id, book_id, record.id)
        return record

    def _borrow(self, book_id: str, user_id: str, notes: str | None) -> BorrowRecord:
        now = self.clock()
        with self.db_manager.session_scope() as session:
            books = BookRepository(session, now)
            loans = LoanRepository(session, self.config, now)

            # Written first so the limit check below reads a settled count
            loans.claim_borrower(user_id)

            book = books.get_active_for_update(book_id)
            if not book.is_available:
                raise NoCopiesAvailableError(f"No copies of '{book.title}' are available")

            if loans.find_active_for(user_id, book_id) is not None:
                raise AlreadyBorrowedError(f"You have already borrowed '{book.title}'")

            if loans.count_active_for(user_id) >= self.config.max_active_loans:
                raise BorrowLimitExceededError(
                    f"Borrowing limit reached ({self.config.max_active_loans} books)"
                )

            record = loans.create(user_id, book_id, notes)
            books.decrement_available(book_id)
            return loans.to_model(record)

    @traced("return")
    def return_book(self, book_id: str, user_id: str) -> BorrowRecord:
        """
        Take back the user's copy of a book.

        Withdrawn books can still be returned.

        Raises:
            BookNotFoundError: If the book does not exist
            NoActiveLoanError: If the user holds no open loan of the book
            ConcurrencyConflictError: If the operation kept losing races
        """
        with self.locks.hold(user_key(user_id), book_key(book_id)):
            record = self._with_retry("return", lambda: self._return(book_id, user_id))

        if record.fine_amount > 0:
            logger.info(
                "User %s returned book %s late, fine %s", user_id, book_id, record.fine_amount
            )
        else:
            logger.info("User %s returned book %s", user_id, book_id)
        return record

    def _return(self, book_id: str, user_id: str) -> BorrowRecord:
        now = self.clock()
        with self.db_manager.session_scope() as session:
            books = BookRepository(session, now)
            loans = LoanRepository(session, self.config, now)

            book = books.get_existing(book_id, for_update=True)

            active = loans.find_active_for(user_id, book_id)
            if active is None:
                raise NoActiveLoanError(f"No active borrow record found for '{book.title}'")

            record = loans.mark_returned(active.id)
            books.increment_available(book_id)
            return loans.to_model(record)

    @traced("renew")
    def renew(self, borrow_id: str, user_id: str) -> BorrowRecord:
        """
        Extend one of the user's loans.

        Raises:
            LoanNotFoundError: If the loan does not exist
            NotOwnerError: If the loan belongs to someone else
            NotRenewableError: If the loan is overdue or returned
            MaxRenewalsExceededError: If no renewals are left
        """
        with self.locks.hold(user_key(user_id)):
            record = self._with_retry("renew", lambda: self._renew(borrow_id, user_id))

        logger.info("User %s renewed loan %s, now due %s", user_id, borrow_id, record.due_at)
        return record

    def _renew(self, borrow_id: str, user_id: str) -> BorrowRecord:
        now = self.clock()
        with self.db_manager.session_scope() as session:
            loans = LoanRepository(session, self.config, now)
            record = loans.renew(borrow_id, user_id)
            return loans.to_model(record)

    @traced("reserve")
    def reserve(self, book_id: str, user_id: str) -> ReservationAck:
        """
        Acknowledge a reservation request.

        Only checks that the book is in circulation; no hold is recorded.

        Raises:
            BookNotFoundError: If the book is absent or withdrawn
        """
        with self.db_manager.session_scope() as session:
            BookRepository(session).get_active(book_id)

        logger.info("User %s asked to reserve book %s (holds not implemented)", user_id, book_id)
        return ReservationAck(book_id=book_id, user_id=user_id)

    # === User views ===

    @traced("active_loans")
    def get_active_loans(self, user_id: str) -> list[BorrowRecord]:
        """The user's open loans, soonest due first, with lagging statuses refreshed."""
        with self.locks.hold(user_key(user_id)):
            return self._with_retry("active_loans", lambda: self._active_loans(user_id))

    def _active_loans(self, user_id: str) -> list[BorrowRecord]:
        now = self.clock()
        with self.db_manager.session_scope() as session:
            loans = LoanRepository(session, self.config, now)
            records = loans.list_active_for(user_id)
            for record in records:
                loans.refresh_status(record)
            return [loans.to_model(record) for record in records]

    @traced("history")
    def get_borrow_history(
        self,
        user_id: str,
        status: LoanStatus | None = None,
        pagination: PaginationParams | None = None,
    ) -> PaginatedResponse[BorrowRecord]:
        """The user's loans, newest first, optionally filtered by logical status."""
        with self.db_manager.session_scope() as session:
            return LoanRepository(session, self.config, self.clock()).history_for(
                user_id, status=status, pagination=pagination
            )

    @traced("user_stats")
    def get_user_stats(self, user_id: str) -> UserStats:
        with self.db_manager.session_scope() as session:
            return LoanRepository(session, self.config, self.clock()).user_stats(user_id)

    # === Library-wide statistics ===

    def active_borrowings_count(self) -> int:
        with self.db_manager.session_scope() as session:
            return LoanRepository(session, self.config, self.clock()).active_count()

    def overdue_borrowings_count(self) -> int:
        with self.db_manager.session_scope() as session:
            return LoanRepository(session, self.config, self.clock()).overdue_count()

    def total_fines(self):
        """Final fines of returned loans plus fines accrued on open overdue loans."""
        with self.db_manager.session_scope() as session:
            return LoanRepository(session, self.config, self.clock()).total_fines()

    def recent_borrows(self, limit: int = 10) -> list[BorrowRecord]:
        with self.db_manager.session_scope() as session:
            loans = LoanRepository(session, self.config, self.clock())
            return [loans.to_model(record) for record in loans.recent_active(limit)]

    def popular_books(self, limit: int = 5) -> list[PopularBook]:
        with self.db_manager.session_scope() as session:
            return LoanRepository(session, self.config, self.clock()).popular_books(limit)

    @traced("admin_stats")
    def admin_stats(self, recent_limit: int = 10, popular_limit: int = 5) -> AdminStats:
        """All library-wide figures, read in one transaction at one instant."""
        now = self.clock()
        with self.db_manager.session_scope() as session:
            loans = LoanRepository(session, self.config, now)
            return AdminStats(
                timestamp=now,
                active_borrowings=loans.active_count(),
                overdue_borrowings=loans.overdue_count(),
                total_fines=loans.total_fines(),
                recent_borrows=[loans.to_model(r) for r in loans.recent_active(recent_limit)],
                popular_books=loans.popular_books(popular_limit),
            )

    # === Catalog ===

    def add_book(self, data: BookCreateSchema) -> Book:
        """Add a book to the catalog with all copies on the shelf."""
        with self.db_manager.session_scope() as session:
            book = BookRepository(session, self.clock()).create(data)

        logger.info("Added book %s (%s, %d copies)", book.id, book.title, book.total_copies)
        return book

    def get_book(self, book_id: str) -> Book | None:
        """Any catalogued book, withdrawn ones included."""
        with self.db_manager.session_scope() as session:
            return BookRepository(session).get_by_id(book_id)

    def withdraw_book(self, book_id: str) -> Book:
        """
        Take a book out of circulation.

        Raises:
            BookNotFoundError: If the book is absent or already withdrawn
            ActiveLoansExistError: If copies are still on loan
        """
        with self.locks.hold(book_key(book_id)):
            with self.db_manager.session_scope() as session:
                book = BookRepository(session, self.clock()).deactivate(book_id)

        logger.info("Withdrew book %s", book_id)
        return book

    def _with_retry(self, operation: str, work: Callable[[], T]) -> T:
        return retry_on_conflict(
            work,
            attempts=self.config.conflict_retry_attempts,
            backoff=self.config.conflict_retry_backoff_seconds,
            operation=operation,
        )
