"""
Dataset and schema-version request/response schemas for API endpoints.

Patterns:
- DatasetCreate: POST request body
- DatasetUpdate: PATCH request body (all optional)
- DatasetRead: Response body with UUID and timestamps
- SchemaVersionRead: Immutable schema lineage entry
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from timetiles.schemas.catalog import SLUG_PATTERN
from timetiles.schemas.jsonb_types import (
    FieldMappingOverrides,
    GeoFieldMapping,
    IdStrategyConfig,
    SchemaConfig,
    TransformRule,
)

__all__ = [
    "DatasetCreate",
    "DatasetUpdate",
    "DatasetRead",
    "SchemaVersionRead",
]


class DatasetCreate(BaseModel):
    """Schema for creating a new dataset."""

    catalog_uuid: UUID = Field(description="Catalog the dataset belongs to")
    name: str = Field(
        min_length=1,
        max_length=255,
        description="Human-readable dataset name",
    )
    slug: str | None = Field(
        default=None,
        min_length=1,
        max_length=100,
        pattern=SLUG_PATTERN,
        description="URL-friendly identifier (generated from name if omitted)",
    )
    description: str | None = Field(default=None, description="Dataset description")
    language: str = Field(
        default="en",
        min_length=2,
        max_length=10,
        description="Language used for field detection (ISO 639-1)",
    )
    id_strategy: IdStrategyConfig = Field(
        default_factory=IdStrategyConfig,
        description="Identity and duplicate strategy",
    )
    schema_config: SchemaConfig = Field(
        default_factory=SchemaConfig,
        description="Schema evolution policy",
    )
    geo_field_mapping: GeoFieldMapping = Field(
        default_factory=GeoFieldMapping,
        description="Location column overrides",
    )
    field_mapping: FieldMappingOverrides = Field(
        default_factory=FieldMappingOverrides,
        description="Title/description/timestamp column overrides",
    )


class DatasetUpdate(BaseModel):
    """Schema for updating an existing dataset. All fields optional."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    slug: str | None = Field(default=None, min_length=1, max_length=100, pattern=SLUG_PATTERN)
    description: str | None = Field(default=None)
    language: str | None = Field(default=None, min_length=2, max_length=10)
    id_strategy: IdStrategyConfig | None = Field(default=None)
    schema_config: SchemaConfig | None = Field(default=None)
    geo_field_mapping: GeoFieldMapping | None = Field(default=None)
    field_mapping: FieldMappingOverrides | None = Field(default=None)
    transforms: list[TransformRule] | None = Field(default=None)


class DatasetRead(BaseModel):
    """Schema for dataset API responses."""

    model_config = ConfigDict(from_attributes=True)

    uuid: UUID = Field(description="Unique public identifier")
    catalog_uuid: UUID | None = Field(default=None, description="Owning catalog")
    name: str = Field(description="Dataset name")
    slug: str = Field(description="URL-friendly identifier")
    description: str | None = Field(description="Dataset description")
    language: str = Field(description="Field detection language")
    event_count: int = Field(description="Number of live events")
    id_strategy: IdStrategyConfig = Field(description="Identity and duplicate strategy")
    schema_config: SchemaConfig = Field(description="Schema evolution policy")
    geo_field_mapping: GeoFieldMapping = Field(description="Location column overrides")
    field_mapping: FieldMappingOverrides = Field(description="Standard field overrides")
    transforms: list[TransformRule] = Field(description="Transforms applied to every import")
    created_at: datetime = Field(description="When dataset was created")
    updated_at: datetime = Field(description="Last update timestamp")


class SchemaVersionRead(BaseModel):
    """Schema for schema version API responses. Versions are immutable."""

    model_config = ConfigDict(from_attributes=True)

    uuid: UUID = Field(description="Unique public identifier")
    version_number: int = Field(description="1-based position in the lineage")
    schema_definition: dict[str, Any] = Field(description="Field paths with types, formats and enums")
    field_metadata: dict[str, Any] = Field(description="Per-field statistics")
    changes: dict[str, Any] = Field(description="Diff against the previous version")
    field_count_before: int = Field(description="Fields in the previous version")
    field_count_after: int = Field(description="Fields in this version")
    auto_approved: bool = Field(description="Created without operator approval")
    approved_by: str | None = Field(description="Approving actor")
    approved_at: datetime | None = Field(description="Approval time")
    created_at: datetime = Field(description="When the version was created")
