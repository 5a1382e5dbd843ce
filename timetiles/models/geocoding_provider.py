"""
GeocodingProvider model - provider configuration plus live statistics.

Design notes:
- Lower priority value is tried first
- tags drive the tag-based selection strategy
- Statistics are updated best-effort after every external call
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import Column, Float, Index, String, UniqueConstraint
from sqlmodel import Field

from timetiles.models.base import BaseTableModel, JSONType
from timetiles.schemas.enums import GeocodingProviderType
from timetiles.schemas.jsonb_types import ProviderConfig

__all__ = ["GeocodingProvider"]


class GeocodingProvider(BaseTableModel, table=True):
    """A configured external geocoding service."""

    __tablename__ = "geocoding_providers"
    __table_args__ = (
        UniqueConstraint("name", name="uq_geocoding_providers_name"),
        Index("idx_geocoding_providers_enabled_priority", "enabled", "priority"),
    )

    name: str = Field(sa_column=Column(String(100), nullable=False))
    provider_type: GeocodingProviderType = Field(
        sa_column=Column(String(50), nullable=False),
    )
    enabled: bool = Field(default=True)
    priority: int = Field(default=10)
    rate_limit_per_second: float | None = Field(
        default=None,
        sa_column=Column(Float, nullable=True),
    )
    tags: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSONType, nullable=False),
    )
    config: dict[str, Any] = Field(
        default_factory=lambda: ProviderConfig().model_dump(mode="json"),
        sa_column=Column(JSONType, nullable=False),
    )

    # Statistics
    total_requests: int = Field(default=0)
    successful_requests: int = Field(default=0)
    failed_requests: int = Field(default=0)
    average_latency_ms: float = Field(default=0.0)
    last_used_at: datetime | None = Field(
        default=None,
        sa_type=sa.DateTime(timezone=True),
    )

    def get_config(self) -> ProviderConfig:
        return ProviderConfig.model_validate(self.config)

    @property
    def has_api_key(self) -> bool:
        return bool(self.get_config().api_key)
