"""
Event model - canonical geolocated record produced by an import.

Design notes:
- unique_id is unique system-wide; (dataset_id, content_hash) drives duplicate detection
- (longitude, latitude) index serves bounding-box queries
- data is indexed with GIN on PostgreSQL for arbitrary field filters
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import BigInteger, Column, Float, ForeignKey, Index, String, Text, UniqueConstraint
from sqlmodel import Field

from timetiles.models.base import BaseTableModel, JSONType
from timetiles.schemas.enums import CoordinateSource, ValidationStatus

__all__ = ["Event"]


class Event(BaseTableModel, table=True):
    """A materialized event with resolved coordinates and provenance."""

    __tablename__ = "events"
    __table_args__ = (
        UniqueConstraint("unique_id", name="uq_events_unique_id"),
        Index("idx_events_location", "longitude", "latitude"),
        Index("idx_events_dataset_hash", "dataset_id", "content_hash"),
        Index("idx_events_dataset", "dataset_id"),
        Index("idx_events_import_job", "import_job_id"),
        Index("idx_events_timestamp", "event_timestamp"),
        Index("idx_events_data", "data", postgresql_using="gin"),
    )

    dataset_id: int = Field(
        sa_column=Column(BigInteger, ForeignKey("datasets.id"), nullable=False),
    )
    import_job_id: int | None = Field(
        default=None,
        sa_column=Column(BigInteger, ForeignKey("import_jobs.id"), nullable=True),
    )

    # Payload
    data: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONType, nullable=False),
    )
    title: str | None = Field(
        default=None,
        sa_column=Column(String(500), nullable=True),
    )
    description: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )
    event_timestamp: datetime | None = Field(
        default=None,
        sa_type=sa.DateTime(timezone=True),
    )

    # Location
    latitude: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    longitude: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    coordinate_source: CoordinateSource = Field(
        default=CoordinateSource.NONE,
        sa_column=Column(String(20), nullable=False),
    )
    coordinate_confidence: float | None = Field(
        default=None,
        sa_column=Column(Float, nullable=True),
    )
    validation_status: ValidationStatus | None = Field(
        default=None,
        sa_column=Column(String(20), nullable=True),
    )
    # provider, original_address, normalized_address, confidence
    geocoding_info: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSONType, nullable=True),
    )

    # Identity
    unique_id: str = Field(sa_column=Column(String(512), nullable=False))
    source_id: str | None = Field(
        default=None,
        sa_column=Column(String(255), nullable=True),
    )
    content_hash: str = Field(sa_column=Column(String(64), nullable=False))

    # Versioning for the "version" duplicate strategy
    version: int = Field(default=1)
    previous_versions: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSONType, nullable=False),
    )
