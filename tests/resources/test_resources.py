"""Tests for loan and statistics resources."""

import pytest
from fastmcp.exceptions import ResourceError

from library_circulation.resources import build_all_resources


@pytest.fixture
def resources(service):
    return {
        resource.get("uri_template", resource.get("uri")): resource
        for resource in build_all_resources(service)
    }


def test_resource_uris(resources):
    assert set(resources) == {
        "library://users/{user_id}/loans/active",
        "library://users/{user_id}/loans/history",
        "library://users/{user_id}/stats",
        "library://admin/circulation",
        "library://admin/popular/{limit}",
    }
    for resource in resources.values():
        assert resource["mime_type"] == "application/json"


class TestLoanResources:
    async def test_active_loans(self, resources, service, make_book, clock):
        first = make_book(title="First")
        second = make_book(title="Second")
        service.borrow(first.id, "user-1")
        clock.advance(days=5)
        service.borrow(second.id, "user-1")
        clock.advance(days=11)  # first is 2 days late

        handler = resources["library://users/{user_id}/loans/active"]["handler"]
        result = await handler(user_id="user-1")

        assert result["count"] == 2
        assert result["overdue_count"] == 1
        assert [loan["book_title"] for loan in result["loans"]] == ["First", "Second"]
        assert result["loans"][0]["status"] == "overdue"
        assert result["loans"][0]["fine_amount"] == "2.00"

    async def test_history(self, resources, service, make_book):
        book = make_book()
        service.borrow(book.id, "user-1")
        service.return_book(book.id, "user-1")

        handler = resources["library://users/{user_id}/loans/history"]["handler"]
        result = await handler(user_id="user-1")

        assert result["total"] == 1
        assert result["items"][0]["status"] == "returned"


class TestStatsResources:
    async def test_user_stats(self, resources, service, make_book):
        book = make_book(genre="poetry")
        service.borrow(book.id, "user-1")

        handler = resources["library://users/{user_id}/stats"]["handler"]
        result = await handler(user_id="user-1")

        assert result["user_id"] == "user-1"
        assert result["total_borrows"] == 1
        assert result["active_borrows"] == 1
        assert result["favorite_genres"] == [{"genre": "Poetry", "count": 1}]

    async def test_circulation_snapshot(self, resources, service, make_book):
        book = make_book()
        service.borrow(book.id, "user-1")

        result = await resources["library://admin/circulation"]["handler"]()

        assert result["active_borrowings"] == 1
        assert result["overdue_borrowings"] == 0
        assert result["total_fines"] == "0.00"
        assert len(result["recent_borrows"]) == 1
        assert result["popular_books"][0]["book_id"] == book.id

    async def test_popular_books(self, resources, service, make_book):
        book = make_book()
        service.borrow(book.id, "user-1")

        handler = resources["library://admin/popular/{limit}"]["handler"]
        result = await handler(limit="3")

        assert result["limit"] == 3
        assert result["books"][0]["rank"] == 1

    @pytest.mark.parametrize("limit", ["0", "51", "many"])
    async def test_popular_books_rejects_bad_limits(self, resources, limit):
        handler = resources["library://admin/popular/{limit}"]["handler"]
        with pytest.raises(ResourceError):
            await handler(limit=limit)
