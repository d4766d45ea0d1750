"""
Repository base for the Library Circulation server.

Repositories wrap one SQLAlchemy session and expose the catalog and ledger as
small, named operations. They never commit: the circulation service owns the
transaction and commits once both halves of an operation have been flushed.

This module provides the pieces every repository shares:

1. **Pagination**: ``PaginationParams`` in, ``PaginatedResponse`` out
2. **Lookup**: get-by-id returning ORM rows or Pydantic models
3. **Errors**: the data-access exceptions re-exported for callers
"""

from abc import ABC, abstractmethod
from typing import Generic, TypeVar

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..errors import DuplicateError, RepositoryException
from .schema import Base
from .session import safe_query

ModelType = TypeVar("ModelType", bound=Base)
ResponseSchemaType = TypeVar("ResponseSchemaType", bound=BaseModel)

__all__ = [
    "BaseRepository",
    "DuplicateError",
    "PaginatedResponse",
    "PaginationParams",
    "RepositoryException",
]


class PaginationParams(BaseModel):
    """Standard pagination parameters for list operations."""

    page: int = 1
    page_size: int = 20

    @property
    def offset(self) -> int:
        """Calculate offset for SQL queries."""
        return (self.page - 1) * self.page_size

    def validate_params(self) -> None:
        """Validate pagination parameters."""
        if self.page < 1:
            raise ValueError("Page must be >= 1")
        if self.page_size < 1 or self.page_size > 100:
            raise ValueError("Page size must be between 1 and 100")


class PaginatedResponse(BaseModel, Generic[ResponseSchemaType]):
    """Standard paginated response for list operations."""

    items: list[ResponseSchemaType]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_previous: bool


class BaseRepository(ABC, Generic[ModelType, ResponseSchemaType]):
    """
    Abstract base repository bound to one session.

    All queries go through ``safe_query`` so database failures surface as
    ``RepositoryException`` (or ``ConcurrencyConflictError`` when another
    writer holds the database).
    """

    def __init__(self, session: Session):
        """Initialize repository with database session."""
        self.session = session

    @property
    @abstractmethod
    def model_class(self) -> type[ModelType]:
        """Return the SQLAlchemy model class."""

    @abstractmethod
    def to_model(self, db_obj: ModelType) -> ResponseSchemaType:
        """Convert a database row to its Pydantic response model."""

    def get_row(self, id: str, for_update: bool = False) -> ModelType | None:
        """
        Get the ORM row by ID.

        Args:
            id: Entity ID
            for_update: Lock the row for the rest of the transaction where the
                backend supports ``SELECT ... FOR UPDATE``

        Returns:
            The row or None if not found
        """
        query = select(self.model_class).where(self.model_class.id == id)
        if for_update:
            query = query.with_for_update()

        return safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            f"Failed to get {self.model_class.__name__} by ID",
        )

    def get_by_id(self, id: str) -> ResponseSchemaType | None:
        """Get entity by ID as a Pydantic model, or None if not found."""
        db_obj = self.get_row(id)
        if db_obj is None:
            return None
        return self.to_model(db_obj)

    def _paginate(self, query, pagination: PaginationParams | None):
        """Helper to paginate a select over ``model_class``."""
        if not pagination:
            pagination = PaginationParams()

        pagination.validate_params()

        count_query = select(func.count()).select_from(query.subquery())
        total = (
            safe_query(
                self.session,
                lambda s: s.execute(count_query).scalar(),
                "Failed to count total for pagination",
            )
            or 0
        )

        page_query = query.offset(pagination.offset).limit(pagination.page_size)
        results = safe_query(
            self.session,
            lambda s: s.execute(page_query).unique().scalars().all(),
            "Failed to get paginated results",
        )

        return PaginatedResponse(
            items=[self.to_model(item) for item in results],
            total=total,
            page=pagination.page,
            page_size=pagination.page_size,
            total_pages=(total + pagination.page_size - 1) // pagination.page_size,
            has_next=pagination.page * pagination.page_size < total,
            has_previous=pagination.page > 1,
        )
