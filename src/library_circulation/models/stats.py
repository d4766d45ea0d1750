"""
Statistics models for the Library Circulation server.

Read-side aggregates over the loan ledger. Counts are built from the logical
loan definitions (see ``models.loan``), so a loan whose stored status lags is
still counted exactly once and in the right bucket.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from .loan import BorrowRecord


class GenreCount(BaseModel):
    """How many times a user borrowed from one genre."""

    genre: str = Field(..., description="Genre name, 'Unknown' when the book has none")
    count: int = Field(..., ge=0)


class UserStats(BaseModel):
    """
    Per-user circulation summary.

    ``active_borrows``, ``overdue_borrows`` and ``returned_books`` partition
    ``total_borrows``: an overdue loan is counted as overdue only.
    """

    total_borrows: int = Field(..., ge=0)
    active_borrows: int = Field(..., ge=0, description="Open loans that are not overdue")
    overdue_borrows: int = Field(..., ge=0)
    returned_books: int = Field(..., ge=0)
    total_fines: Decimal = Field(..., ge=Decimal("0"))
    favorite_genres: list[GenreCount] = Field(default_factory=list)


class PopularBook(BaseModel):
    """Entry in the popular books list."""

    rank: int = Field(..., description="Popularity rank (1 = most popular)", ge=1)
    book_id: str
    title: str
    author: str
    borrow_count: int = Field(..., ge=1)
    currently_available: bool


class AdminStats(BaseModel):
    """Library-wide circulation snapshot."""

    timestamp: datetime
    active_borrowings: int = Field(..., ge=0, description="Open loans, overdue included")
    overdue_borrowings: int = Field(..., ge=0)
    total_fines: Decimal = Field(..., ge=Decimal("0"))
    recent_borrows: list[BorrowRecord] = Field(default_factory=list)
    popular_books: list[PopularBook] = Field(default_factory=list)
