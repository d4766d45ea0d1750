"""Library Circulation MCP tools (operations with side effects)."""

from .circulation import (
    BorrowBookInput,
    RenewLoanInput,
    ReserveBookInput,
    ReturnBookInput,
    build_circulation_tools,
)

__all__ = [
    "BorrowBookInput",
    "RenewLoanInput",
    "ReserveBookInput",
    "ReturnBookInput",
    "build_circulation_tools",
]
