"""
Loan models and policy for the Library Circulation server.

A loan (BorrowRecord) moves through a small state machine:

    (none) --create--> BORROWED
    BORROWED | RENEWED --renew--> RENEWED      (due date pushed out, count + 1)
    BORROWED | RENEWED --time passes--> OVERDUE (derived, not a real event)
    BORROWED | RENEWED | OVERDUE --return--> RETURNED (terminal, fine final)

OVERDUE is never scheduled. It is a function of the stored status, the due
date, the return stamp and the current time, computed by ``effective_status``
whenever a loan is read. The stored status is only a cache of that answer and
may lag; every "is this loan active / overdue" decision goes through the
functions below instead of trusting the column.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

CENTS = Decimal("0.01")


class LoanStatus(str, Enum):
    """Status of a loan."""

    BORROWED = "borrowed"
    RENEWED = "renewed"
    OVERDUE = "overdue"
    RETURNED = "returned"


OPEN_STATUSES = frozenset({LoanStatus.BORROWED, LoanStatus.RENEWED, LoanStatus.OVERDUE})
RENEWABLE_STATUSES = frozenset({LoanStatus.BORROWED, LoanStatus.RENEWED})


def as_status(status) -> LoanStatus:
    """Coerce a stored enum member or raw string into ``LoanStatus``."""
    return LoanStatus(getattr(status, "value", status))


def is_active(status, returned_at: datetime | None) -> bool:
    """An active loan has not been returned, whatever its stored status says."""
    return returned_at is None and as_status(status) in OPEN_STATUSES


def is_overdue(status, due_at: datetime, returned_at: datetime | None, now: datetime) -> bool:
    """An overdue loan is an active loan whose due date has passed."""
    return is_active(status, returned_at) and now > due_at


def effective_status(
    status, due_at: datetime, returned_at: datetime | None, now: datetime
) -> LoanStatus:
    """The status a loan logically has at ``now``."""
    if not is_active(status, returned_at):
        return LoanStatus.RETURNED
    if now > due_at:
        return LoanStatus.OVERDUE
    stored = as_status(status)
    # A stale OVERDUE can only come from a clock that moved backwards
    return LoanStatus.BORROWED if stored == LoanStatus.OVERDUE else stored


def whole_days_between(start: datetime, end: datetime) -> int:
    """Complete 24-hour days from ``start`` to ``end``; 0 if ``end`` is not later."""
    if end <= start:
        return 0
    return (end - start).days


def calculate_fine(due_at: datetime, until: datetime, daily_fine: Decimal) -> Decimal:
    """
    Fine owed for a loan due at ``due_at`` and held until ``until``.

    One ``daily_fine`` per whole day past the due date. Returning exactly on
    the due date costs nothing.
    """
    days = whole_days_between(due_at, until)
    return (Decimal(days) * daily_fine).quantize(CENTS)


def extend_due_date(due_at: datetime, days: int) -> datetime:
    return due_at + timedelta(days=days)


class BorrowRecord(BaseModel):
    """
    Represents one loan of one book to one user.

    ``status`` is the logical status at the moment the model was built, not
    necessarily the stored value.
    """

    id: str = Field(
        ...,
        description="Opaque unique identifier of the loan",
        pattern=r"^loan_[a-zA-Z0-9]{6,}$",
        examples=["loan_0c4d2e91aa10"],
    )

    user_id: str = Field(..., description="Opaque identity of the borrower", min_length=1)

    book_id: str = Field(..., description="ID of the borrowed book")

    book_title: str | None = Field(None, description="Title of the borrowed book")

    borrowed_at: datetime = Field(..., description="When the loan was created")

    due_at: datetime = Field(..., description="When the book must be back")

    returned_at: datetime | None = Field(None, description="When the book came back")

    renewed_count: int = Field(default=0, description="Renewals used", ge=0, le=2)

    status: LoanStatus = Field(default=LoanStatus.BORROWED, description="Logical status")

    fine_amount: Decimal = Field(
        default=Decimal("0.00"),
        description="Final fine for returned loans, accrued fine for overdue ones",
        ge=Decimal("0"),
    )

    fine_paid: bool = Field(default=False, description="Whether the fine has been paid")

    notes: str | None = Field(None, description="Free-form notes", max_length=500)

    @property
    def is_active(self) -> bool:
        return is_active(self.status, self.returned_at)

    @property
    def is_overdue(self) -> bool:
        """Check against the wall clock whether the loan is overdue."""
        return is_overdue(self.status, self.due_at, self.returned_at, datetime.now())

    @property
    def loan_period_days(self) -> int:
        """Days between borrowing and the current due date."""
        return (self.due_at - self.borrowed_at).days

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "loan_0c4d2e91aa10",
                "user_id": "user-42",
                "book_id": "book_3f9a1c2e7b44",
                "borrowed_at": "2024-03-01T10:30:00",
                "due_at": "2024-03-15T10:30:00",
                "status": "borrowed",
                "renewed_count": 0,
                "fine_amount": "0.00",
                "fine_paid": False,
            }
        },
    )


class ReservationAck(BaseModel):
    """
    Acknowledgement returned by the reservation endpoint.

    Holds are not implemented: the request is validated against the catalog
    and acknowledged, but no queue entry is created.
    """

    book_id: str
    user_id: str
    implemented: bool = False
    message: str = "Book reserved successfully (feature coming soon)"
