"""
Database package for the Library Circulation server.

This package provides:
- SQLAlchemy schema definitions (schema.py)
- Session management and transaction scopes (session.py)
- The catalog store (book_repository.py) and loan ledger (loan_repository.py)

Repositories flush, the circulation service commits: one operation is one
transaction, whichever repositories it touches.
"""

from .book_repository import BookCreateSchema, BookRepository
from .loan_repository import LoanRepository
from .repository import (
    BaseRepository,
    DuplicateError,
    PaginatedResponse,
    PaginationParams,
    RepositoryException,
)
from .schema import Base, Book, Borrower, BorrowRecord, LoanStatusEnum
from .session import DatabaseManager, is_conflict, safe_flush, safe_query

__all__ = [
    "Base",
    "BaseRepository",
    "Book",
    "BookCreateSchema",
    "BookRepository",
    "BorrowRecord",
    "Borrower",
    "DatabaseManager",
    "DuplicateError",
    "LoanRepository",
    "LoanStatusEnum",
    "PaginatedResponse",
    "PaginationParams",
    "RepositoryException",
    "is_conflict",
    "safe_flush",
    "safe_query",
]
