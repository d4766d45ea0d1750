"""
Library Circulation Models.

Pydantic models returned to callers of the circulation service:

- Book: catalog entry with its copy counts
- BorrowRecord: one loan, with its logical status and fine
- UserStats / AdminStats: read-side aggregates over the ledger
"""

from .book import Book
from .loan import BorrowRecord, LoanStatus, ReservationAck
from .stats import AdminStats, GenreCount, PopularBook, UserStats

__all__ = [
    "AdminStats",
    "Book",
    "BorrowRecord",
    "GenreCount",
    "LoanStatus",
    "PopularBook",
    "ReservationAck",
    "UserStats",
]
