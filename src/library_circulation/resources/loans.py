"""Loan Resources - a user's view of their borrowing

Resources:
- library://users/{user_id}/loans/active - Open loans, soonest due first
- library://users/{user_id}/loans/history - Loan history, newest first
"""

import asyncio
import logging
from typing import Any

from fastmcp.exceptions import ResourceError

from ..service import CirculationService

logger = logging.getLogger(__name__)


def build_loan_resources(service: CirculationService) -> list[dict[str, Any]]:
    """Loan resource definitions bound to one circulation service."""

    async def get_active_loans_handler(user_id: str) -> dict[str, Any]:
        """Open loans for a user, with overdue loans flagged and fines accrued so far."""
        try:
            logger.debug("MCP Resource Request - users/%s/loans/active", user_id)
            loans = await asyncio.to_thread(service.get_active_loans, user_id)
        except Exception as e:
            logger.exception("Error in users/loans/active resource")
            raise ResourceError(f"Failed to get active loans: {e!s}") from e

        return {
            "user_id": user_id,
            "count": len(loans),
            "overdue_count": sum(1 for loan in loans if loan.status == "overdue"),
            "loans": [loan.model_dump(mode="json") for loan in loans],
        }

    async def get_loan_history_handler(user_id: str) -> dict[str, Any]:
        """First page of a user's loan history."""
        try:
            logger.debug("MCP Resource Request - users/%s/loans/history", user_id)
            history = await asyncio.to_thread(service.get_borrow_history, user_id)
        except Exception as e:
            logger.exception("Error in users/loans/history resource")
            raise ResourceError(f"Failed to get loan history: {e!s}") from e

        return history.model_dump(mode="json")

    return [
        {
            "uri_template": "library://users/{user_id}/loans/active",
            "name": "Active Loans",
            "description": (
                "Books a user currently has out, soonest due first. Overdue loans are "
                "reported with status 'overdue' and the fine accrued so far."
            ),
            "mime_type": "application/json",
            "handler": get_active_loans_handler,
        },
        {
            "uri_template": "library://users/{user_id}/loans/history",
            "name": "Loan History",
            "description": "Most recent loans of a user, returned ones included, newest first.",
            "mime_type": "application/json",
            "handler": get_loan_history_handler,
        },
    ]
