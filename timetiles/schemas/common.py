"""
Common Pydantic schemas shared across the application.

Provides:
- Pagination schemas (request params and response wrapper)
- Actor context supplied by the external auth layer
- Health response schema
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "PaginationParams",
    "PaginatedResponse",
    "Actor",
    "HealthResponse",
]


class PaginationParams(BaseModel):
    """Query parameters for paginated endpoints."""

    page: int = Field(default=1, ge=1, description="Page number (1-indexed)")
    page_size: int = Field(
        default=20,
        ge=1,
        le=100,
        description="Items per page (max 100)",
    )

    @property
    def offset(self) -> int:
        """Calculate SQL OFFSET from page number."""
        return (self.page - 1) * self.page_size


class PaginatedResponse[T](BaseModel):
    """
    Generic paginated response wrapper.

    Usage:
        @router.get("/datasets", response_model=PaginatedResponse[DatasetRead])
        async def list_datasets(...):
            return PaginatedResponse(
                items=datasets,
                total=total_count,
                page=pagination.page,
                page_size=pagination.page_size,
            )
    """

    items: list[T]
    total: int = Field(description="Total number of items across all pages")
    page: int = Field(description="Current page number")
    page_size: int = Field(description="Items per page")

    @property
    def pages(self) -> int:
        """Calculate total number of pages."""
        if self.total == 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "items": [],
                "total": 100,
                "page": 1,
                "page_size": 20,
            }
        }
    )


class Actor(BaseModel):
    """Caller identity. Authentication itself happens upstream."""

    id: str = Field(default="anonymous", description="Opaque actor identifier")
    trust_level: int = Field(default=2, ge=0, le=5, description="Quota trust level")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Health status")
    app: str = Field(description="Application name")
    version: str | None = Field(default=None, description="Application version")
