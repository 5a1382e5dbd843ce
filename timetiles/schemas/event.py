"""
Event and aggregation schemas.

Patterns:
- EventRead: materialized event with provenance
- EventFilters: shared filter set for listing, clustering and histograms
- ClusterRead / HistogramBucket: aggregation results
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from timetiles.schemas.enums import CoordinateSource, ValidationStatus

__all__ = [
    "EventRead",
    "BoundingBox",
    "EventFilters",
    "ClusterRead",
    "HistogramBucket",
]


class EventRead(BaseModel):
    """Schema for event API responses."""

    model_config = ConfigDict(from_attributes=True)

    uuid: UUID = Field(description="Unique public identifier")
    data: dict[str, Any] = Field(description="Original (transformed) row payload")
    title: str | None = Field(description="Detected title")
    description: str | None = Field(description="Detected description")
    event_timestamp: datetime | None = Field(description="Detected event time")
    latitude: float | None = Field(description="Resolved latitude")
    longitude: float | None = Field(description="Resolved longitude")
    coordinate_source: CoordinateSource = Field(description="Where the coordinates came from")
    coordinate_confidence: float | None = Field(description="0-1 confidence in the coordinates")
    validation_status: ValidationStatus | None = Field(description="Coordinate validation outcome")
    geocoding_info: dict[str, Any] | None = Field(description="Provider and addresses used")
    unique_id: str = Field(description="System-wide stable identity")
    source_id: str | None = Field(description="External id from the source")
    content_hash: str = Field(description="SHA-256 of the payload")
    version: int = Field(description="Bumped on each versioned update")
    created_at: datetime = Field(description="When the event was created")
    updated_at: datetime = Field(description="Last update timestamp")


class BoundingBox(BaseModel):
    """Map viewport in degrees."""

    west: float = Field(ge=-180, le=180)
    south: float = Field(ge=-90, le=90)
    east: float = Field(ge=-180, le=180)
    north: float = Field(ge=-90, le=90)

    @model_validator(mode="after")
    def check_order(self) -> BoundingBox:
        if self.south > self.north:
            raise ValueError("south must not be greater than north")
        return self

    @property
    def crosses_antimeridian(self) -> bool:
        return self.west > self.east


class EventFilters(BaseModel):
    """
    Filter set shared by listing and aggregation.

    field_filters combine AND across fields and OR across the values of one
    field: {"category": ["a", "b"], "status": ["open"]} means
    (category = a OR category = b) AND status = open.
    """

    catalog_ids: list[int] = Field(default_factory=list)
    dataset_ids: list[int] = Field(default_factory=list)
    start_date: datetime | None = None
    end_date: datetime | None = None
    field_filters: dict[str, list[str]] = Field(default_factory=dict)
    bounds: BoundingBox | None = None


class ClusterRead(BaseModel):
    """One marker on the map."""

    cluster_id: str = Field(description="Stable id derived from zoom and grid cell")
    latitude: float = Field(description="Mean latitude of the members")
    longitude: float = Field(description="Mean longitude of the members")
    count: int = Field(description="Number of member events")
    event_uuid: UUID | None = Field(default=None, description="Set for single-event clusters")
    title: str | None = Field(default=None, description="Set for single-event clusters")


class HistogramBucket(BaseModel):
    """Event count for one time interval [bucket_start, bucket_end)."""

    bucket_start: datetime
    bucket_end: datetime
    count: int
