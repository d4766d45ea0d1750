"""
Typed circulation failures.

Every failure a caller can see carries two machine-readable tags:

- ``kind``: the broad category (NotFound, PreconditionFailed, NotAuthorized,
  ConcurrencyConflict) so transports can map it to a status or error code
- ``code``: the specific rule that was violated, e.g. ``no_copies_available``

The circulation service raises these and never downgrades them to success.
Any exception raised inside a circulation transaction rolls the whole
transaction back, so a failure never leaves a half-applied borrow or return.
"""

NOT_FOUND = "NotFound"
PRECONDITION_FAILED = "PreconditionFailed"
NOT_AUTHORIZED = "NotAuthorized"
CONCURRENCY_CONFLICT = "ConcurrencyConflict"


class RepositoryException(Exception):
    """Base exception for data access failures that are not business rules."""


class DuplicateError(RepositoryException):
    """Raised when attempting to create a duplicate entity."""


class CirculationError(Exception):
    """Base class for all caller-visible circulation failures."""

    kind = PRECONDITION_FAILED
    code = "circulation_error"

    def to_dict(self) -> dict[str, str]:
        """Structured form used in transport error payloads."""
        return {"kind": self.kind, "code": self.code, "message": str(self)}


# === NotFound ===


class BookNotFoundError(CirculationError):
    """The book does not exist or has been deactivated."""

    kind = NOT_FOUND
    code = "book_not_found"


class LoanNotFoundError(CirculationError):
    """The borrow record does not exist."""

    kind = NOT_FOUND
    code = "loan_not_found"


# === PreconditionFailed ===


class NoCopiesAvailableError(CirculationError):
    code = "no_copies_available"


class AlreadyFullError(CirculationError):
    """Every copy of the book is already on the shelf."""

    code = "already_full"


class AlreadyBorrowedError(CirculationError):
    code = "already_borrowed"


class BorrowLimitExceededError(CirculationError):
    code = "borrow_limit_exceeded"


class NoActiveLoanError(CirculationError):
    code = "no_active_loan"


class MaxRenewalsExceededError(CirculationError):
    code = "max_renewals_exceeded"


class NotRenewableError(CirculationError):
    """The loan is overdue or returned and can no longer be renewed."""

    code = "not_renewable"


class NotReturnableError(CirculationError):
    """The loan has already been returned."""

    code = "not_returnable"


class ActiveLoansExistError(CirculationError):
    """A book with copies still out on loan cannot be deactivated."""

    code = "active_loans_exist"


# === NotAuthorized ===


class NotOwnerError(CirculationError):
    kind = NOT_AUTHORIZED
    code = "not_owner"


# === ConcurrencyConflict ===


class ConcurrencyConflictError(CirculationError):
    """A transaction lost a race and could not commit.

    Raised internally on a stale row version or a locked database and retried
    by the service; reaches the caller only once retries are exhausted.
    """

    kind = CONCURRENCY_CONFLICT
    code = "concurrency_conflict"
