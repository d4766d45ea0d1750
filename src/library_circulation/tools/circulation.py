"""
Circulation tools for the Library Circulation server.

Tools are the write side of the MCP surface:

1. borrow_book: lend a copy and open a loan
2. return_book: close the loan, finalize any fine, put the copy back
3. renew_loan: push a loan's due date out
4. reserve_book: acknowledged only, holds are not implemented

Each handler validates its arguments with a Pydantic schema, runs the
circulation service in a worker thread (the service blocks on locks and the
database) and turns the outcome into the MCP tool response shape. Typed
circulation failures become ``isError`` responses carrying ``kind``, ``code``
and ``message``; they are expected outcomes and logged at INFO.
"""

import asyncio
import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from ..errors import CirculationError
from ..models.loan import BorrowRecord
from ..service import CirculationService

logger = logging.getLogger(__name__)

BOOK_ID_PATTERN = r"^book_[a-zA-Z0-9]{6,}$"
LOAN_ID_PATTERN = r"^loan_[a-zA-Z0-9]{6,}$"


# =============================================================================
# INPUT SCHEMAS
# =============================================================================


class BorrowBookInput(BaseModel):
    """Input schema for the borrow_book tool."""

    user_id: str = Field(
        ...,
        description="Identity of the borrower",
        min_length=1,
        max_length=100,
        examples=["user-42"],
    )

    book_id: str = Field(
        ...,
        description="ID of the book to borrow",
        pattern=BOOK_ID_PATTERN,
        examples=["book_3f9a1c2e7b44"],
    )

    notes: str | None = Field(
        default=None,
        description="Optional notes about this loan (e.g., 'Book club selection')",
        max_length=500,
    )


class ReturnBookInput(BaseModel):
    """Input schema for the return_book tool."""

    user_id: str = Field(..., description="Identity of the borrower", min_length=1, max_length=100)

    book_id: str = Field(..., description="ID of the book being returned", pattern=BOOK_ID_PATTERN)


class RenewLoanInput(BaseModel):
    """Input schema for the renew_loan tool."""

    user_id: str = Field(
        ..., description="Identity of the borrower requesting the renewal", min_length=1, max_length=100
    )

    borrow_id: str = Field(
        ...,
        description="ID of the loan to renew",
        pattern=LOAN_ID_PATTERN,
        examples=["loan_0c4d2e91aa10"],
    )


class ReserveBookInput(BaseModel):
    """Input schema for the reserve_book tool."""

    user_id: str = Field(..., description="Identity of the requester", min_length=1, max_length=100)

    book_id: str = Field(..., description="ID of the book to reserve", pattern=BOOK_ID_PATTERN)


# =============================================================================
# RESPONSE HELPERS
# =============================================================================


def _error_response(text: str, kind: str, code: str, message: str) -> dict[str, Any]:
    return {
        "isError": True,
        "content": [{"type": "text", "text": text}],
        "data": {"error": {"kind": kind, "code": code, "message": message}},
    }


def _invalid_arguments(tool_name: str, error: ValidationError) -> dict[str, Any]:
    logger.warning("Invalid %s parameters: %s", tool_name, error)
    return _error_response(
        f"Invalid {tool_name} parameters: {error}",
        kind="InvalidParams",
        code="invalid_arguments",
        message=str(error),
    )


def _loan_data(record: BorrowRecord) -> dict[str, Any]:
    data = record.model_dump(mode="json")
    data["loan_period_days"] = record.loan_period_days
    return data


async def _call_service(tool_name: str, func, *args) -> tuple[Any, dict[str, Any] | None]:
    """
    Run a blocking service call off the event loop.

    Returns ``(result, None)`` on success and ``(None, error_response)`` on
    failure.
    """
    try:
        return await asyncio.to_thread(func, *args), None
    except CirculationError as e:
        logger.info("%s failed - %s: %s", tool_name, e.code, e)
        return None, _error_response(str(e), **e.to_dict())
    except Exception as e:
        logger.exception("Unexpected error in %s tool", tool_name)
        return None, _error_response(
            f"An unexpected error occurred: {e!s}",
            kind="Internal",
            code="internal_error",
            message=str(e),
        )


# =============================================================================
# TOOLS
# =============================================================================


def build_circulation_tools(service: CirculationService) -> list[dict[str, Any]]:
    """Tool definitions bound to one circulation service."""

    async def borrow_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            params = BorrowBookInput.model_validate(arguments)
        except ValidationError as e:
            return _invalid_arguments("borrow_book", e)

        record, error = await _call_service(
            "borrow_book", service.borrow, params.book_id, params.user_id, params.notes
        )
        if error:
            return error

        title = record.book_title or record.book_id
        return {
            "content": [
                {
                    "type": "text",
                    "text": (
                        f"Successfully borrowed '{title}'. "
                        f"Due date: {record.due_at.strftime('%B %d, %Y')}"
                    ),
                }
            ],
            "data": {"loan": _loan_data(record)},
        }

    async def return_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            params = ReturnBookInput.model_validate(arguments)
        except ValidationError as e:
            return _invalid_arguments("return_book", e)

        record, error = await _call_service(
            "return_book", service.return_book, params.book_id, params.user_id
        )
        if error:
            return error

        title = record.book_title or record.book_id
        message = f"Successfully returned '{title}'."
        if record.fine_amount > 0:
            days_late = int(record.fine_amount / service.config.daily_fine)
            message += f" Returned {days_late} day(s) late, fine: ${record.fine_amount:.2f}"
        else:
            message += " Returned on time."

        return {
            "content": [{"type": "text", "text": message}],
            "data": {"loan": _loan_data(record)},
        }

    async def renew_loan_handler(arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            params = RenewLoanInput.model_validate(arguments)
        except ValidationError as e:
            return _invalid_arguments("renew_loan", e)

        record, error = await _call_service(
            "renew_loan", service.renew, params.borrow_id, params.user_id
        )
        if error:
            return error

        remaining = service.config.max_renewals - record.renewed_count
        return {
            "content": [
                {
                    "type": "text",
                    "text": (
                        f"Loan renewed. New due date: {record.due_at.strftime('%B %d, %Y')} "
                        f"({remaining} renewal(s) left)"
                    ),
                }
            ],
            "data": {"loan": _loan_data(record)},
        }

    async def reserve_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            params = ReserveBookInput.model_validate(arguments)
        except ValidationError as e:
            return _invalid_arguments("reserve_book", e)

        ack, error = await _call_service(
            "reserve_book", service.reserve, params.book_id, params.user_id
        )
        if error:
            return error

        return {
            "content": [{"type": "text", "text": ack.message}],
            "data": {"reservation": ack.model_dump(mode="json")},
        }

    policy = service.config

    return [
        {
            "name": "borrow_book",
            "description": (
                f"Borrow a book. Opens a loan due in {policy.loan_period_days} days and takes "
                "one copy off the shelf. Fails if no copy is available, the user already holds "
                f"this book, or the user already has {policy.max_active_loans} active loans."
            ),
            "inputSchema": BorrowBookInput.model_json_schema(),
            "handler": borrow_book_handler,
        },
        {
            "name": "return_book",
            "description": (
                "Return a borrowed book. Closes the user's open loan of the book, calculates "
                f"the late fine ({policy.daily_fine} per full day overdue) and puts the copy back."
            ),
            "inputSchema": ReturnBookInput.model_json_schema(),
            "handler": return_book_handler,
        },
        {
            "name": "renew_loan",
            "description": (
                f"Renew a loan for another {policy.renewal_period_days} days. Only the borrower "
                f"can renew, up to {policy.max_renewals} renewals per loan, and never once the "
                "loan is overdue."
            ),
            "inputSchema": RenewLoanInput.model_json_schema(),
            "handler": renew_loan_handler,
        },
        {
            "name": "reserve_book",
            "description": (
                "Request a hold on a book. Currently acknowledged without creating a queue entry."
            ),
            "inputSchema": ReserveBookInput.model_json_schema(),
            "handler": reserve_book_handler,
        },
    ]
