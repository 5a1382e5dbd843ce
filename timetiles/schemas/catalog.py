"""
Catalog request/response schemas for API endpoints.

Patterns:
- CatalogCreate: POST request body (slug generated from name when omitted)
- CatalogUpdate: PATCH request body (all optional)
- CatalogRead: Response body with UUID and timestamps
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "CatalogCreate",
    "CatalogUpdate",
    "CatalogRead",
]

SLUG_PATTERN = r"^[a-z0-9]+(?:-[a-z0-9]+)*$"


class CatalogCreate(BaseModel):
    """Schema for creating a new catalog."""

    name: str = Field(
        min_length=1,
        max_length=255,
        description="Human-readable catalog name",
    )
    slug: str | None = Field(
        default=None,
        min_length=1,
        max_length=100,
        pattern=SLUG_PATTERN,
        description="URL-friendly identifier (generated from name if omitted)",
    )
    description: str | None = Field(
        default=None,
        description="Catalog description",
    )
    is_public: bool = Field(default=True, description="Visible to anonymous readers")


class CatalogUpdate(BaseModel):
    """Schema for updating an existing catalog. All fields optional."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    slug: str | None = Field(default=None, min_length=1, max_length=100, pattern=SLUG_PATTERN)
    description: str | None = Field(default=None)
    is_public: bool | None = Field(default=None)


class CatalogRead(BaseModel):
    """Schema for catalog API responses."""

    model_config = ConfigDict(from_attributes=True)

    uuid: UUID = Field(description="Unique public identifier")
    name: str = Field(description="Catalog name")
    slug: str = Field(description="URL-friendly identifier")
    description: str | None = Field(description="Catalog description")
    is_public: bool = Field(description="Visible to anonymous readers")
    created_by: str | None = Field(default=None, description="Actor that created the catalog")
    created_at: datetime = Field(description="When catalog was created")
    updated_at: datetime = Field(description="Last update timestamp")
