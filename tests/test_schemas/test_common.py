"""Tests for common schemas."""

import pytest
from pydantic import ValidationError

from timetiles.schemas.common import (
    Actor,
    HealthResponse,
    PaginatedResponse,
    PaginationParams,
)


class TestPaginationParams:
    """Test pagination parameter handling."""

    def test_default_values(self):
        """Test default pagination values."""
        params = PaginationParams()
        assert params.page == 1
        assert params.page_size == 20

    def test_offset_calculation(self):
        """Test offset calculation from page number."""
        assert PaginationParams(page=1, page_size=20).offset == 0
        assert PaginationParams(page=2, page_size=20).offset == 20
        assert PaginationParams(page=3, page_size=10).offset == 20

    @pytest.mark.parametrize("page,page_size", [(0, 20), (1, 0), (1, 101)])
    def test_bounds(self, page, page_size):
        with pytest.raises(ValidationError):
            PaginationParams(page=page, page_size=page_size)


class TestPaginatedResponse:
    """Test paginated response wrapper."""

    def test_pages_calculation(self):
        """Test total pages calculation."""
        response = PaginatedResponse[str](items=["a", "b"], total=100, page=1, page_size=20)
        assert response.pages == 5

    def test_pages_with_remainder(self):
        response = PaginatedResponse[str](items=["a"], total=21, page=1, page_size=20)
        assert response.pages == 2

    def test_empty_response(self):
        """Test empty response returns 0 pages."""
        response = PaginatedResponse[str](items=[], total=0, page=1, page_size=20)
        assert response.pages == 0


class TestActor:
    """Test the caller identity passed down from the auth layer."""

    def test_anonymous_default(self):
        actor = Actor()
        assert actor.id == "anonymous"
        assert actor.trust_level == 2

    @pytest.mark.parametrize("level", [-1, 6])
    def test_trust_level_range(self, level):
        """Test trust levels outside 0-5 are rejected."""
        with pytest.raises(ValidationError):
            Actor(id="x", trust_level=level)


def test_health_response_version_optional():
    health = HealthResponse(status="healthy", app="TimeTiles")
    assert health.version is None
