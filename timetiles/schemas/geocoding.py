"""
Geocoding provider and lookup schemas.

Patterns:
- GeocodingProviderCreate / Update / Read: provider configuration
- GeocodeRequest / GeocodeResponse: one-off test lookup
- CacheStats: location cache summary
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from timetiles.schemas.enums import GeocodingProviderType
from timetiles.schemas.jsonb_types import ProviderConfig

__all__ = [
    "GeocodingProviderCreate",
    "GeocodingProviderUpdate",
    "GeocodingProviderRead",
    "GeocodeRequest",
    "GeocodeResponse",
    "CacheStats",
]


def _clean_tags(tags: list[str] | None) -> list[str] | None:
    if tags is None:
        return None
    return sorted({tag.strip().lower() for tag in tags if tag.strip()})


class GeocodingProviderCreate(BaseModel):
    """Schema for registering a geocoding provider."""

    name: str = Field(min_length=1, max_length=100, description="Unique provider name")
    provider_type: GeocodingProviderType
    enabled: bool = Field(default=True)
    priority: int = Field(default=10, ge=0, description="Lower values are tried first")
    rate_limit_per_second: float | None = Field(default=None, gt=0)
    tags: list[str] = Field(default_factory=list)
    config: ProviderConfig = Field(default_factory=ProviderConfig)

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v: list[str]) -> list[str]:
        return _clean_tags(v) or []


class GeocodingProviderUpdate(BaseModel):
    """Schema for updating a provider. All fields optional."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    enabled: bool | None = Field(default=None)
    priority: int | None = Field(default=None, ge=0)
    rate_limit_per_second: float | None = Field(default=None, gt=0)
    tags: list[str] | None = Field(default=None)
    config: ProviderConfig | None = Field(default=None)

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v: list[str] | None) -> list[str] | None:
        return _clean_tags(v)


class GeocodingProviderRead(BaseModel):
    """Provider configuration with live statistics. The API key is not echoed."""

    model_config = ConfigDict(from_attributes=True)

    uuid: UUID
    name: str
    provider_type: GeocodingProviderType
    enabled: bool
    priority: int
    rate_limit_per_second: float | None
    tags: list[str]
    has_api_key: bool = False
    total_requests: int
    successful_requests: int
    failed_requests: int
    average_latency_ms: float
    last_used_at: datetime | None
    created_at: datetime
    updated_at: datetime


class GeocodeRequest(BaseModel):
    address: str = Field(min_length=1, max_length=1000)


class GeocodeResponse(BaseModel):
    address: str
    normalized_address: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    confidence: float | None = None
    provider: str | None = None
    from_cache: bool = False
    error: str | None = None


class CacheStats(BaseModel):
    entries: int
    total_hits: int
    by_provider: dict[str, int]
