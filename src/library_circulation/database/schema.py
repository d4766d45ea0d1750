"""
SQLAlchemy database schema for the Library Circulation server.

Three tables carry all circulation state:

1. ``books`` - the catalog and its copy counts
2. ``borrow_records`` - the loan ledger
3. ``borrowers`` - one row per user, bumped by every borrow

All three tables use SQLAlchemy's ``version_id_col``: every UPDATE is issued as
``... WHERE id = :id AND version_id = :expected`` and bumps the counter, so a
writer working from a stale read fails with ``StaleDataError`` instead of
silently overwriting a concurrent change.

User identity is opaque to this system, so loans reference users by id only.
The ``borrowers`` row exists so that a user's loan limit is guarded by a
versioned write like the copy counts are.
"""

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship, validates

Base = declarative_base()


class LoanStatusEnum(str, enum.Enum):
    """Database enum for the persisted loan status.

    The stored value is advisory: a loan whose due date has passed may still
    read ``borrowed`` or ``renewed`` until it is next touched.
    """

    BORROWED = "borrowed"
    RENEWED = "renewed"
    OVERDUE = "overdue"
    RETURNED = "returned"


class Book(Base):
    """
    Books table - the catalog and copy counts.

    Circulation only ever changes ``available_copies`` and only through the
    catalog store primitives; descriptive fields are catalog data.
    """

    __tablename__ = "books"

    id = Column(String(50), primary_key=True)
    title = Column(String(500), nullable=False, index=True)
    author = Column(String(200), nullable=False)
    isbn = Column(String(13), nullable=True, unique=True)
    genre = Column(String(100), nullable=True, index=True)
    published_year = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)
    location = Column(String(100), nullable=True)
    tags = Column(Text, nullable=True)  # JSON array
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    version_id = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=True, default=datetime.now, onupdate=datetime.now)

    loans = relationship("BorrowRecord", back_populates="book")

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index("idx_book_active", "is_active"),
        Index("idx_book_availability", "available_copies"),
        CheckConstraint("id LIKE 'book_%'", name="check_book_id_format"),
        CheckConstraint("total_copies >= 1", name="check_total_copies_positive"),
        CheckConstraint("available_copies >= 0", name="check_available_copies_non_negative"),
        CheckConstraint(
            "available_copies <= total_copies", name="check_available_not_exceed_total"
        ),
    )

    @property
    def is_available(self) -> bool:
        return self.available_copies > 0


class BorrowRecord(Base):
    """
    Borrow records table - the loan ledger.

    ``user_id`` and ``book_id`` never change after insert. ``status`` and
    ``fine_amount`` may lag reality for open loans; the returned state and its
    fine are final.
    """

    __tablename__ = "borrow_records"

    id = Column(String(50), primary_key=True)
    user_id = Column(String(100), nullable=False)
    book_id = Column(String(50), ForeignKey("books.id"), nullable=False)
    borrowed_at = Column(DateTime, nullable=False)
    due_at = Column(DateTime, nullable=False)
    returned_at = Column(DateTime, nullable=True)
    renewed_count = Column(Integer, nullable=False, default=0)
    status = Column(Enum(LoanStatusEnum), nullable=False, default=LoanStatusEnum.BORROWED)
    fine_amount = Column(Numeric(10, 2), nullable=False, default=0)
    fine_paid = Column(Boolean, nullable=False, default=False)
    notes = Column(String(500), nullable=True)
    version_id = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=True, default=datetime.now, onupdate=datetime.now)

    book = relationship("Book", back_populates="loans")

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index("idx_loan_user_status", "user_id", "status"),
        Index("idx_loan_book_status", "book_id", "status"),
        Index("idx_loan_due_status", "due_at", "status"),
        Index("idx_loan_borrowed_at", "borrowed_at"),
        CheckConstraint("id LIKE 'loan_%'", name="check_loan_id_format"),
        CheckConstraint("renewed_count >= 0 AND renewed_count <= 2", name="check_renewal_limit"),
        CheckConstraint("fine_amount >= 0", name="check_fine_non_negative"),
    )

    @validates("user_id", "book_id")
    def validate_references(self, key, value):
        """References are fixed once the loan exists."""
        current = getattr(self, key)
        if current is not None and value != current:
            raise ValueError(f"{key} cannot change after the loan is created")
        return value


class Borrower(Base):
    """
    Borrowers table - one row per user who has ever borrowed.

    Nothing reads these columns for circulation rules. The row is written at
    the start of every borrow so that two transactions checking the same
    user's loan limit cannot both commit.
    """

    __tablename__ = "borrowers"

    user_id = Column(String(100), primary_key=True)
    borrow_count = Column(Integer, nullable=False, default=0)
    last_borrowed_at = Column(DateTime, nullable=True)
    version_id = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.now)

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (CheckConstraint("borrow_count >= 0", name="check_borrow_count_non_negative"),)
