"""Statistics Resources - Circulation Analytics

Read-only aggregates over the loan ledger. Every count uses the logical loan
definitions, so loans whose stored status lags are still counted once.

Resources:
- library://users/{user_id}/stats - Per-user borrowing summary
- library://admin/circulation - Library-wide circulation snapshot
- library://admin/popular/{limit} - Most borrowed books
"""

import asyncio
import logging
from typing import Any

from fastmcp.exceptions import ResourceError

from ..service import CirculationService

logger = logging.getLogger(__name__)

MAX_POPULAR_LIMIT = 50


def build_stats_resources(service: CirculationService) -> list[dict[str, Any]]:
    """Statistics resource definitions bound to one circulation service."""

    async def get_user_stats_handler(user_id: str) -> dict[str, Any]:
        """Totals, fines and favorite genres for one user."""
        try:
            logger.debug("MCP Resource Request - users/%s/stats", user_id)
            stats = await asyncio.to_thread(service.get_user_stats, user_id)
        except Exception as e:
            logger.exception("Error in users/stats resource")
            raise ResourceError(f"Failed to calculate user stats: {e!s}") from e

        return {"user_id": user_id, **stats.model_dump(mode="json")}

    async def get_circulation_stats_handler() -> dict[str, Any]:
        try:
            stats = await asyncio.to_thread(service.admin_stats)
        except Exception as e:
            logger.exception("Error in admin/circulation resource")
            raise ResourceError(f"Failed to calculate circulation stats: {e!s}") from e

        return stats.model_dump(mode="json")

    async def get_popular_books_handler(limit: str) -> dict[str, Any]:
        """
        Client requests library://admin/popular/{limit} to discover the most
        borrowed books of all time.
        """
        try:
            limit_int = int(limit)
        except ValueError as e:
            raise ResourceError(f"limit must be an integer, got {limit!r}") from e

        if not 1 <= limit_int <= MAX_POPULAR_LIMIT:
            raise ResourceError(f"limit must be between 1 and {MAX_POPULAR_LIMIT}")

        try:
            books = await asyncio.to_thread(service.popular_books, limit_int)
        except Exception as e:
            logger.exception("Error in admin/popular resource")
            raise ResourceError(f"Failed to calculate popular books: {e!s}") from e

        return {
            "limit": limit_int,
            "books": [book.model_dump(mode="json") for book in books],
        }

    return [
        {
            "uri_template": "library://users/{user_id}/stats",
            "name": "User Statistics",
            "description": (
                "Borrowing summary for one user: total, active, overdue and returned loans, "
                "total fines, and the five genres they borrow most."
            ),
            "mime_type": "application/json",
            "handler": get_user_stats_handler,
        },
        {
            "uri": "library://admin/circulation",
            "name": "Circulation Statistics",
            "description": (
                "Library-wide snapshot: active and overdue loan counts, total fines, "
                "recent loans and the most popular books."
            ),
            "mime_type": "application/json",
            "handler": get_circulation_stats_handler,
        },
        {
            "uri_template": "library://admin/popular/{limit}",
            "name": "Popular Books",
            "description": (
                "Most borrowed books of all time. URI format: library://admin/popular/{limit} "
                f"where limit is 1-{MAX_POPULAR_LIMIT}."
            ),
            "mime_type": "application/json",
            "handler": get_popular_books_handler,
        },
    ]
