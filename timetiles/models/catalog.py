"""
Catalog model - groups related datasets.

Design notes:
- Datasets always belong to a catalog (FK enforced)
- Aggregation queries filter by catalog ids
"""

from __future__ import annotations

from sqlalchemy import Column, Index, String, Text, UniqueConstraint
from sqlmodel import Field

from timetiles.models.base import BaseTableModel

__all__ = ["Catalog"]


class Catalog(BaseTableModel, table=True):
    """A named collection of datasets."""

    __tablename__ = "catalogs"
    __table_args__ = (
        UniqueConstraint("slug", name="uq_catalogs_slug"),
        Index("idx_catalogs_slug", "slug"),
    )

    name: str = Field(
        sa_column=Column(String(255), nullable=False),
        max_length=255,
    )
    slug: str = Field(
        sa_column=Column(String(100), nullable=False),
        max_length=100,
    )
    description: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )
    is_public: bool = Field(default=True)
    created_by: str | None = Field(
        default=None,
        sa_column=Column(String(255), nullable=True),
    )
