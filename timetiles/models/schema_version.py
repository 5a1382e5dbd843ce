"""
SchemaVersion model - immutable snapshot of a dataset's schema.

Design notes:
- Created only by the import pipeline, never edited through the API
- The highest version_number of a dataset is its current schema
- import_job_id references the import that triggered the version
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import BigInteger, Column, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlmodel import Field

from timetiles.models.base import BaseTableModel, JSONType

__all__ = ["SchemaVersion"]


class SchemaVersion(BaseTableModel, table=True):
    """One entry in a dataset's schema lineage."""

    __tablename__ = "schema_versions"
    __table_args__ = (
        UniqueConstraint("dataset_id", "version_number", name="uq_schema_versions_dataset_version"),
        Index("idx_schema_versions_dataset", "dataset_id"),
    )

    dataset_id: int = Field(
        sa_column=Column(BigInteger, ForeignKey("datasets.id"), nullable=False),
    )
    version_number: int = Field(
        sa_column=Column(Integer, nullable=False),
    )

    # {"properties": {path: {"type": ..., "format": ..., "enum": [...]}}, "required": [...]}
    schema_definition: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONType, nullable=False),
    )
    field_metadata: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONType, nullable=False),
    )
    # added / removed / type_changes / enum_changes summary
    changes: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONType, nullable=False),
    )
    field_count_before: int = Field(default=0)
    field_count_after: int = Field(default=0)

    # Approval
    auto_approved: bool = Field(default=False)
    approved_by: str | None = Field(
        default=None,
        sa_column=Column(String(255), nullable=True),
    )
    approved_at: datetime | None = Field(
        default=None,
        sa_type=sa.DateTime(timezone=True),
    )

    import_job_id: int | None = Field(
        default=None,
        sa_column=Column(BigInteger, ForeignKey("import_jobs.id", use_alter=True), nullable=True),
    )
