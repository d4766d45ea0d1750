"""
Book repository (the catalog store) for the Library Circulation server.

The catalog store is the single source of truth for availability. It exposes
exactly two ways to change a copy count:

- ``decrement_available``: a copy leaves the shelf (borrow)
- ``increment_available``: a copy comes back (return)

Both check ``0 <= available_copies <= total_copies`` before touching the row
and flush the new count immediately, inside the caller's transaction. No
other code path writes ``available_copies``.

Creating and withdrawing books is catalog management; the methods here exist
so that circulation has something to circulate and so that a withdrawn book
can never strand an open loan.
"""

import json
import logging
import uuid
from datetime import datetime

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import (
    ActiveLoansExistError,
    AlreadyFullError,
    BookNotFoundError,
    DuplicateError,
    NoCopiesAvailableError,
)
from ..models.book import Book as BookModel
from .repository import BaseRepository
from .schema import Book as BookDB
from .schema import BorrowRecord as BorrowDB
from .schema import LoanStatusEnum
from .session import safe_flush, safe_query

logger = logging.getLogger(__name__)


class BookCreateSchema(BaseModel):
    """Schema for adding a book to the catalog."""

    title: str = Field(..., min_length=1, max_length=500)
    author: str = Field(..., min_length=1, max_length=200)
    isbn: str | None = Field(None, pattern=r"^\d{13}$")
    genre: str | None = None
    published_year: int | None = None
    description: str | None = None
    location: str | None = None
    tags: list[str] = Field(default_factory=list)
    total_copies: int = Field(default=1, ge=1)
    available_copies: int | None = Field(None, ge=0)  # defaults to total_copies

    @model_validator(mode="after")
    def validate_copies(self) -> "BookCreateSchema":
        if self.available_copies is not None and self.available_copies > self.total_copies:
            raise ValueError("Available copies cannot exceed total copies")
        return self


class BookRepository(BaseRepository[BookDB, BookModel]):
    """
    Repository for catalog data and copy-count mutation.

    Methods return ORM rows where the circulation service needs to keep
    working with them inside its transaction, and Pydantic models where the
    result goes straight back to a caller.

    Pass ``now`` to stamp row changes with the same clock reading as the
    rest of the transaction; without it the wall clock is used.
    """

    def __init__(self, session: Session, now: datetime | None = None):
        super().__init__(session)
        self.now = now

    @property
    def model_class(self):
        return BookDB

    def to_model(self, db_obj: BookDB) -> BookModel:
        return BookModel.model_validate(db_obj, from_attributes=True)

    def get_active(self, book_id: str, for_update: bool = False) -> BookDB:
        """
        Get a book that is still in circulation.

        Args:
            book_id: Book ID
            for_update: Lock the row for the rest of the transaction

        Raises:
            BookNotFoundError: If the book is absent or inactive
        """
        book = self.get_row(book_id, for_update=for_update)
        if book is None or not book.is_active:
            raise BookNotFoundError(f"Book {book_id} not found")
        return book

    def get_active_for_update(self, book_id: str) -> BookDB:
        """``get_active`` holding the row lock until the transaction ends."""
        return self.get_active(book_id, for_update=True)

    def get_existing(self, book_id: str, for_update: bool = False) -> BookDB:
        """Like ``get_active`` but also finds withdrawn books."""
        book = self.get_row(book_id, for_update=for_update)
        if book is None:
            raise BookNotFoundError(f"Book {book_id} not found")
        return book

    def decrement_available(self, book_id: str) -> BookDB:
        """
        Take one copy off the shelf.

        Raises:
            BookNotFoundError: If the book is absent or inactive
            NoCopiesAvailableError: If no copies are left
            ConcurrencyConflictError: If another writer changed the row first
        """
        book = self.get_active_for_update(book_id)

        if book.available_copies <= 0:
            raise NoCopiesAvailableError(f"No copies of '{book.title}' are available")

        book.available_copies -= 1
        book.updated_at = self._timestamp()
        safe_flush(self.session, "decrement available copies")

        logger.debug(
            "Book %s availability %d/%d", book.id, book.available_copies, book.total_copies
        )
        return book

    def increment_available(self, book_id: str) -> BookDB:
        """
        Put one copy back on the shelf.

        Withdrawn books still accept returns, so this looks the book up
        whether or not it is active.

        Raises:
            BookNotFoundError: If the book does not exist
            AlreadyFullError: If every copy is already on the shelf
            ConcurrencyConflictError: If another writer changed the row first
        """
        book = self.get_existing(book_id, for_update=True)

        if book.available_copies >= book.total_copies:
            raise AlreadyFullError(f"All copies of '{book.title}' are already on the shelf")

        book.available_copies += 1
        book.updated_at = self._timestamp()
        safe_flush(self.session, "increment available copies")

        logger.debug(
            "Book %s availability %d/%d", book.id, book.available_copies, book.total_copies
        )
        return book

    def create(self, data: BookCreateSchema) -> BookModel:
        """
        Add a book to the catalog.

        Raises:
            DuplicateError: If the ISBN is already catalogued
        """
        available = data.available_copies
        book = BookDB(
            id=self._generate_book_id(),
            title=data.title,
            author=data.author,
            isbn=data.isbn,
            genre=data.genre.strip().title() if data.genre else None,
            published_year=data.published_year,
            description=data.description,
            location=data.location,
            tags=json.dumps(data.tags) if data.tags else None,
            total_copies=data.total_copies,
            available_copies=data.total_copies if available is None else available,
            is_active=True,
            created_at=self._timestamp(),
            updated_at=self._timestamp(),
        )
        self.session.add(book)

        try:
            self.session.flush()
        except IntegrityError as e:
            raise DuplicateError(f"A book with ISBN {data.isbn} already exists") from e

        return self.to_model(book)

    def deactivate(self, book_id: str) -> BookModel:
        """
        Withdraw a book from circulation (soft delete).

        Loan history keeps pointing at the row; the book just stops being
        borrowable.

        Raises:
            BookNotFoundError: If the book is absent or already inactive
            ActiveLoansExistError: If copies of the book are still on loan
        """
        book = self.get_active(book_id, for_update=True)

        open_loans = safe_query(
            self.session,
            lambda s: s.execute(
                select(func.count())
                .select_from(BorrowDB)
                .where(
                    and_(
                        BorrowDB.book_id == book_id,
                        BorrowDB.returned_at.is_(None),
                        BorrowDB.status != LoanStatusEnum.RETURNED,
                    )
                )
            ).scalar(),
            "Failed to count open loans for book",
        )

        if open_loans:
            raise ActiveLoansExistError(
                f"Cannot withdraw '{book.title}': {open_loans} copies are still on loan"
            )

        book.is_active = False
        book.updated_at = self._timestamp()
        safe_flush(self.session, "deactivate book")
        return self.to_model(book)

    def count_active(self) -> int:
        """Number of books currently in circulation."""
        return (
            safe_query(
                self.session,
                lambda s: s.execute(
                    select(func.count()).select_from(BookDB).where(BookDB.is_active.is_(True))
                ).scalar(),
                "Failed to count books",
            )
            or 0
        )

    def _timestamp(self) -> datetime:
        return self.now if self.now is not None else datetime.now()

    def _generate_book_id(self) -> str:
        return f"book_{uuid.uuid4().hex[:12]}"
