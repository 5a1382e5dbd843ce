"""
LocationCache model - shared, ownerless cache of geocoded addresses.

Design notes:
- Keyed by normalized address (unique)
- hit_count counts the rows served by the entry
- Entries older than the configured TTL are treated as misses and refreshed
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import Column, Float, Index, String, Text, UniqueConstraint
from sqlmodel import Field

from timetiles.models.base import BaseTableModel, JSONType, utc_now

__all__ = ["LocationCache"]


class LocationCache(BaseTableModel, table=True):
    """A resolved address."""

    __tablename__ = "location_cache"
    __table_args__ = (
        UniqueConstraint("normalized_address", name="uq_location_cache_normalized"),
        Index("idx_location_cache_normalized", "normalized_address"),
    )

    original_address: str = Field(sa_column=Column(Text, nullable=False))
    normalized_address: str = Field(sa_column=Column(String(1000), nullable=False))

    latitude: float = Field(sa_column=Column(Float, nullable=False))
    longitude: float = Field(sa_column=Column(Float, nullable=False))
    confidence: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    provider: str | None = Field(
        default=None,
        sa_column=Column(String(100), nullable=True),
    )
    formatted_address: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )
    components: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONType, nullable=False),
    )

    hit_count: int = Field(default=0)
    last_used_at: datetime = Field(
        default_factory=utc_now,
        sa_type=sa.DateTime(timezone=True),
    )
