"""
Loan repository (the loan ledger) for the Library Circulation server.

The ledger owns borrow records and applies the per-record state machine from
``models.loan``. It also answers the read-side questions the circulation
service needs: does this user already hold this book, how many loans are
open, what does the user's history look like, and the aggregate statistics.

Every "active" or "overdue" question is asked with the logical definitions:

- active:  not returned (``returned_at`` unset and status not ``returned``)
- overdue: active and the due date is in the past

The stored ``status`` column is never trusted on its own. When a record is
touched and its stored status lags (still ``borrowed`` or ``renewed`` after
the due date), ``refresh_status`` writes ``overdue`` and the accrued fine
back as a side effect.

A repository instance is bound to one session and one ``now``: the whole
circulation transaction sees a single consistent clock reading.
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import and_, desc, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from ..config import CirculationConfig
from ..errors import (
    ConcurrencyConflictError,
    LoanNotFoundError,
    MaxRenewalsExceededError,
    NotOwnerError,
    NotRenewableError,
    NotReturnableError,
    RepositoryException,
)
from ..models.loan import (
    CENTS,
    RENEWABLE_STATUSES,
    as_status,
    calculate_fine,
    effective_status,
    extend_due_date,
    is_active,
    is_overdue,
)
from ..models.loan import BorrowRecord as BorrowModel
from ..models.loan import LoanStatus
from ..models.stats import GenreCount, PopularBook, UserStats
from .repository import BaseRepository, PaginatedResponse, PaginationParams
from .schema import Book as BookDB
from .schema import Borrower as BorrowerDB
from .schema import BorrowRecord as BorrowDB
from .schema import LoanStatusEnum
from .session import is_conflict, safe_flush, safe_query

logger = logging.getLogger(__name__)

FAVORITE_GENRE_LIMIT = 5


def active_clause():
    """SQL form of the logical "active" definition."""
    return and_(BorrowDB.returned_at.is_(None), BorrowDB.status != LoanStatusEnum.RETURNED)


def closed_clause():
    return or_(BorrowDB.returned_at.is_not(None), BorrowDB.status == LoanStatusEnum.RETURNED)


def overdue_clause(now: datetime):
    """SQL form of the logical "overdue" definition."""
    return and_(active_clause(), BorrowDB.due_at < now)


def _money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS)


class LoanRepository(BaseRepository[BorrowDB, BorrowModel]):
    """
    Repository for borrow records.

    Mutating methods flush but never commit; the circulation service commits
    the surrounding transaction once the catalog side has been updated too.
    """

    def __init__(self, session: Session, config: CirculationConfig, now: datetime):
        super().__init__(session)
        self.config = config
        self.now = now

    @property
    def model_class(self):
        return BorrowDB

    def to_model(self, db_obj: BorrowDB) -> BorrowModel:
        """
        Convert a record to its response model using the logical status.

        Open overdue loans report the fine accrued so far; returned loans
        report their final fine.
        """
        status = effective_status(db_obj.status, db_obj.due_at, db_obj.returned_at, self.now)

        if status == LoanStatus.RETURNED:
            fine = _money(db_obj.fine_amount)
        elif status == LoanStatus.OVERDUE:
            fine = calculate_fine(db_obj.due_at, self.now, self.config.daily_fine)
        else:
            fine = Decimal("0.00")

        return BorrowModel(
            id=db_obj.id,
            user_id=db_obj.user_id,
            book_id=db_obj.book_id,
            book_title=db_obj.book.title if db_obj.book is not None else None,
            borrowed_at=db_obj.borrowed_at,
            due_at=db_obj.due_at,
            returned_at=db_obj.returned_at,
            renewed_count=db_obj.renewed_count,
            status=status,
            fine_amount=fine,
            fine_paid=db_obj.fine_paid,
            notes=db_obj.notes,
        )

    # === State machine ===

    def create(self, user_id: str, book_id: str, notes: str | None = None) -> BorrowDB:
        """
        Open a new loan due one loan period from now.

        The caller is responsible for having taken the copy off the shelf in
        the same transaction.
        """
        record = BorrowDB(
            id=self._generate_loan_id(),
            user_id=user_id,
            book_id=book_id,
            borrowed_at=self.now,
            due_at=self.now + timedelta(days=self.config.loan_period_days),
            renewed_count=0,
            status=LoanStatusEnum.BORROWED,
            fine_amount=Decimal("0.00"),
            fine_paid=False,
            notes=notes,
            created_at=self.now,
            updated_at=self.now,
        )
        self.session.add(record)
        safe_flush(self.session, "create borrow record")

        logger.debug("Loan %s opened for user %s, due %s", record.id, user_id, record.due_at)
        return record

    def get_or_raise(self, record_id: str) -> BorrowDB:
        """
        Raises:
            LoanNotFoundError: If the record does not exist
        """
        record = self.get_row(record_id)
        if record is None:
            raise LoanNotFoundError(f"Borrow record {record_id} not found")
        return record

    def renew(self, record_id: str, requesting_user_id: str) -> BorrowDB:
        """
        Extend a loan by one renewal period.

        Raises:
            LoanNotFoundError: If the record does not exist
            NotOwnerError: If the requester does not hold the loan
            NotRenewableError: If the loan is overdue or returned
            MaxRenewalsExceededError: If the renewal cap is used up
        """
        record = self.get_or_raise(record_id)

        if record.user_id != requesting_user_id:
            raise NotOwnerError("You can only renew your own borrows")

        status = effective_status(record.status, record.due_at, record.returned_at, self.now)
        if status not in RENEWABLE_STATUSES:
            raise NotRenewableError(f"Loan cannot be renewed while {status.value}")

        if record.renewed_count >= self.config.max_renewals:
            raise MaxRenewalsExceededError(
                f"Maximum renewals exceeded ({self.config.max_renewals} allowed)"
            )

        record.due_at = extend_due_date(record.due_at, self.config.renewal_period_days)
        record.renewed_count += 1
        record.status = LoanStatusEnum.RENEWED
        record.updated_at = self.now
        safe_flush(self.session, "renew borrow record")

        logger.debug("Loan %s renewed (%d), due %s", record.id, record.renewed_count, record.due_at)
        return record

    def mark_returned(self, record_id: str) -> BorrowDB:
        """
        Close a loan and finalize its fine.

        The fine is always derived fresh from the due date and the return
        stamp, replacing any estimate written while the loan was overdue.

        Raises:
            LoanNotFoundError: If the record does not exist
            NotReturnableError: If the loan was already returned
        """
        record = self.get_or_raise(record_id)

        if not is_active(record.status, record.returned_at):
            raise NotReturnableError(f"Borrow record {record_id} has already been returned")

        record.returned_at = self.now
        record.status = LoanStatusEnum.RETURNED
        record.fine_amount = calculate_fine(record.due_at, self.now, self.config.daily_fine)
        record.updated_at = self.now
        safe_flush(self.session, "return borrow record")

        logger.debug("Loan %s returned, fine %s", record.id, record.fine_amount)
        return record

    def refresh_status(self, record: BorrowDB) -> BorrowDB:
        """
        Bring a lagging stored status up to date.

        Only ever moves an open loan to ``overdue`` (with the fine accrued so
        far); returned loans are final and left untouched.
        """
        if not is_overdue(record.status, record.due_at, record.returned_at, self.now):
            return record

        accrued = calculate_fine(record.due_at, self.now, self.config.daily_fine)
        stored = as_status(record.status)

        if stored != LoanStatus.OVERDUE or _money(record.fine_amount) != accrued:
            record.status = LoanStatusEnum.OVERDUE
            record.fine_amount = accrued
            record.updated_at = self.now
            safe_flush(self.session, "refresh overdue status")
            logger.debug("Loan %s marked overdue, accrued fine %s", record.id, accrued)

        return record

    def claim_borrower(self, user_id: str) -> BorrowerDB:
        """
        Write the user's borrower row before their loans are counted.

        The write holds the database write lock (or the row lock) for the
        rest of the transaction, and the version bump makes any concurrent
        borrow for the same user that read the row earlier fail. Counts taken
        after this call cannot be overtaken by another borrow for this user.

        Raises:
            ConcurrencyConflictError: If another transaction wrote the row first
        """
        query = select(BorrowerDB).where(BorrowerDB.user_id == user_id).with_for_update()
        borrower = safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to load borrower",
        )

        if borrower is None:
            borrower = BorrowerDB(user_id=user_id, borrow_count=0, created_at=self.now)
            self.session.add(borrower)

        borrower.borrow_count += 1
        borrower.last_borrowed_at = self.now

        try:
            self.session.flush()
        except IntegrityError as e:
            # Both transactions inserted the first row for this user
            raise ConcurrencyConflictError(f"Borrower {user_id} registered concurrently") from e
        except SQLAlchemyError as e:
            if is_conflict(e):
                raise ConcurrencyConflictError(
                    f"Borrower {user_id} is borrowing in another transaction"
                ) from e
            raise RepositoryException(f"Failed to claim borrower {user_id}: {e!s}") from e

        return borrower

    # === Lookups ===

    def find_active_for(self, user_id: str, book_id: str) -> BorrowDB | None:
        """The user's open loan of this book, if any."""
        query = (
            select(BorrowDB)
            .where(
                and_(
                    BorrowDB.user_id == user_id,
                    BorrowDB.book_id == book_id,
                    active_clause(),
                )
            )
            .order_by(desc(BorrowDB.borrowed_at))
        )
        return safe_query(
            self.session,
            lambda s: s.execute(query).scalars().first(),
            "Failed to find active loan",
        )

    def count_active_for(self, user_id: str) -> int:
        """Number of open loans the user holds, overdue ones included."""
        return (
            safe_query(
                self.session,
                lambda s: s.execute(
                    select(func.count())
                    .select_from(BorrowDB)
                    .where(and_(BorrowDB.user_id == user_id, active_clause()))
                ).scalar(),
                "Failed to count active loans",
            )
            or 0
        )

    def list_active_for(self, user_id: str) -> list[BorrowDB]:
        """The user's open loans, soonest due first."""
        query = (
            select(BorrowDB)
            .where(and_(BorrowDB.user_id == user_id, active_clause()))
            .options(joinedload(BorrowDB.book))
            .order_by(BorrowDB.due_at)
        )
        return list(
            safe_query(
                self.session,
                lambda s: s.execute(query).unique().scalars().all(),
                "Failed to list active loans",
            )
        )

    def history_for(
        self,
        user_id: str,
        status: LoanStatus | None = None,
        pagination: PaginationParams | None = None,
    ) -> PaginatedResponse[BorrowModel]:
        """
        The user's loans, newest first.

        Args:
            user_id: Borrower
            status: Only loans whose logical status matches
            pagination: Pagination parameters
        """
        query = select(BorrowDB).where(BorrowDB.user_id == user_id)

        if status == LoanStatus.RETURNED:
            query = query.where(closed_clause())
        elif status == LoanStatus.OVERDUE:
            query = query.where(overdue_clause(self.now))
        elif status is not None:
            query = query.where(
                and_(
                    active_clause(),
                    BorrowDB.due_at >= self.now,
                    BorrowDB.status == LoanStatusEnum(status.value),
                )
            )

        query = query.order_by(desc(BorrowDB.borrowed_at), BorrowDB.id)
        return self._paginate(query, pagination)

    def recent_active(self, limit: int = 10) -> list[BorrowDB]:
        """Open loans across all users, newest first."""
        query = (
            select(BorrowDB)
            .where(active_clause())
            .options(joinedload(BorrowDB.book))
            .order_by(desc(BorrowDB.borrowed_at))
            .limit(limit)
        )
        return list(
            safe_query(
                self.session,
                lambda s: s.execute(query).unique().scalars().all(),
                "Failed to get recent loans",
            )
        )

    # === Statistics ===

    def active_count(self) -> int:
        """All open loans, overdue included."""
        return self._count(active_clause(), "Failed to count active loans")

    def overdue_count(self) -> int:
        return self._count(overdue_clause(self.now), "Failed to count overdue loans")

    def total_fines(self, user_id: str | None = None) -> Decimal:
        """
        Final fines of returned loans plus fines accrued on open overdue loans.

        Each loan contributes once: closed loans through their stored final
        fine, open loans through a fresh calculation (their stored estimate is
        ignored because it may be stale).
        """
        closed = closed_clause()
        overdue = overdue_clause(self.now)
        if user_id is not None:
            closed = and_(closed, BorrowDB.user_id == user_id)
            overdue = and_(overdue, BorrowDB.user_id == user_id)

        final_fines = safe_query(
            self.session,
            lambda s: s.execute(select(func.sum(BorrowDB.fine_amount)).where(closed)).scalar(),
            "Failed to sum fines",
        )

        due_dates = safe_query(
            self.session,
            lambda s: s.execute(select(BorrowDB.due_at).where(overdue)).scalars().all(),
            "Failed to get overdue loans",
        )
        accrued = sum(
            (calculate_fine(due_at, self.now, self.config.daily_fine) for due_at in due_dates),
            Decimal("0.00"),
        )

        return _money(final_fines) + accrued

    def user_stats(self, user_id: str) -> UserStats:
        """Per-user summary; active, overdue and returned partition the total."""
        user_clause = BorrowDB.user_id == user_id

        total = self._count(user_clause, "Failed to count user loans")
        open_loans = self._count(and_(user_clause, active_clause()), "Failed to count user loans")
        overdue = self._count(
            and_(user_clause, overdue_clause(self.now)), "Failed to count overdue user loans"
        )

        return UserStats(
            total_borrows=total,
            active_borrows=open_loans - overdue,
            overdue_borrows=overdue,
            returned_books=total - open_loans,
            total_fines=self.total_fines(user_id),
            favorite_genres=self.favorite_genres(user_id),
        )

    def favorite_genres(self, user_id: str, limit: int = FAVORITE_GENRE_LIMIT) -> list[GenreCount]:
        """Genres the user borrows from most, by number of loans."""
        query = (
            select(BookDB.genre, func.count(BorrowDB.id).label("borrow_count"))
            .select_from(BorrowDB)
            .join(BookDB, BorrowDB.book_id == BookDB.id)
            .where(BorrowDB.user_id == user_id)
            .group_by(BookDB.genre)
            .order_by(desc("borrow_count"), BookDB.genre)
            .limit(limit)
        )
        rows = safe_query(
            self.session, lambda s: s.execute(query).all(), "Failed to get favorite genres"
        )
        return [GenreCount(genre=genre or "Unknown", count=count) for genre, count in rows]

    def popular_books(self, limit: int = 5) -> list[PopularBook]:
        """Books with the most loans, all time."""
        query = (
            select(
                BookDB.id,
                BookDB.title,
                BookDB.author,
                BookDB.available_copies,
                func.count(BorrowDB.id).label("borrow_count"),
            )
            .select_from(BorrowDB)
            .join(BookDB, BorrowDB.book_id == BookDB.id)
            .group_by(BookDB.id, BookDB.title, BookDB.author, BookDB.available_copies)
            .order_by(desc("borrow_count"), BookDB.title)
            .limit(limit)
        )
        rows = safe_query(
            self.session, lambda s: s.execute(query).all(), "Failed to get popular books"
        )
        return [
            PopularBook(
                rank=rank,
                book_id=row.id,
                title=row.title,
                author=row.author,
                borrow_count=row.borrow_count,
                currently_available=row.available_copies > 0,
            )
            for rank, row in enumerate(rows, start=1)
        ]

    def _count(self, clause, error_msg: str) -> int:
        return (
            safe_query(
                self.session,
                lambda s: s.execute(select(func.count()).select_from(BorrowDB).where(clause)).scalar(),
                error_msg,
            )
            or 0
        )

    def _generate_loan_id(self) -> str:
        return f"loan_{uuid.uuid4().hex[:12]}"
