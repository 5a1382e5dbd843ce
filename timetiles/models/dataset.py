"""
Dataset model - a stream of events sharing one evolving schema.

Design notes:
- Never hard-deleted; soft delete only
- Identity/dedup, schema policy and geo/field mappings are typed JSON columns
- schema_lock_job_id is the per-dataset claim that serializes schema-version creation
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import BigInteger, Column, ForeignKey, Index, String, Text, UniqueConstraint
from sqlmodel import Field

from timetiles.models.base import BaseTableModel, JSONType
from timetiles.schemas.jsonb_types import (
    FieldMappingOverrides,
    GeoFieldMapping,
    IdStrategyConfig,
    SchemaConfig,
    TransformRule,
)

__all__ = ["Dataset"]


class Dataset(BaseTableModel, table=True):
    """A dataset inside a catalog. Owns a lineage of schema versions."""

    __tablename__ = "datasets"
    __table_args__ = (
        UniqueConstraint("slug", name="uq_datasets_slug"),
        Index("idx_datasets_slug", "slug"),
        Index("idx_datasets_catalog", "catalog_id"),
    )

    catalog_id: int = Field(
        sa_column=Column(BigInteger, ForeignKey("catalogs.id"), nullable=False),
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
    language: str = Field(default="en", max_length=10)

    # Denormalized count of live events
    event_count: int = Field(default=0)

    id_strategy: dict[str, Any] = Field(
        default_factory=lambda: IdStrategyConfig().model_dump(mode="json"),
        sa_column=Column(JSONType, nullable=False),
    )
    schema_config: dict[str, Any] = Field(
        default_factory=lambda: SchemaConfig().model_dump(mode="json"),
        sa_column=Column(JSONType, nullable=False),
    )
    geo_field_mapping: dict[str, Any] = Field(
        default_factory=lambda: GeoFieldMapping().model_dump(mode="json"),
        sa_column=Column(JSONType, nullable=False),
    )
    field_mapping: dict[str, Any] = Field(
        default_factory=lambda: FieldMappingOverrides().model_dump(mode="json"),
        sa_column=Column(JSONType, nullable=False),
    )
    # Transforms accepted at an approval gate, applied to later imports
    transforms: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSONType, nullable=False),
    )

    # Schema-version write lock
    schema_lock_job_id: int | None = Field(
        default=None,
        sa_column=Column(BigInteger, nullable=True),
    )
    schema_lock_acquired_at: datetime | None = Field(
        default=None,
        sa_type=sa.DateTime(timezone=True),
    )

    created_by: str | None = Field(
        default=None,
        sa_column=Column(String(255), nullable=True),
    )

    # Helper methods for typed access
    def get_id_strategy(self) -> IdStrategyConfig:
        return IdStrategyConfig.model_validate(self.id_strategy)

    def set_id_strategy(self, config: IdStrategyConfig) -> None:
        self.id_strategy = config.model_dump(mode="json")

    def get_schema_config(self) -> SchemaConfig:
        return SchemaConfig.model_validate(self.schema_config)

    def set_schema_config(self, config: SchemaConfig) -> None:
        self.schema_config = config.model_dump(mode="json")

    def get_geo_field_mapping(self) -> GeoFieldMapping:
        return GeoFieldMapping.model_validate(self.geo_field_mapping)

    def get_field_mapping(self) -> FieldMappingOverrides:
        return FieldMappingOverrides.model_validate(self.field_mapping)

    def get_transforms(self) -> list[TransformRule]:
        return [TransformRule.model_validate(t) for t in self.transforms or []]

    def set_transforms(self, rules: list[TransformRule]) -> None:
        self.transforms = [r.model_dump(mode="json") for r in rules]
