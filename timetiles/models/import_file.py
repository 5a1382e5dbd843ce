"""
ImportFile model - an uploaded or fetched source file.

Design notes:
- One ImportJob is created per sheet (CSV/JSON files have a single sheet 0)
- sheets holds [{"index", "name", "row_count"}] metadata captured at parse time
- The file body lives on disk at storage_path
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import BigInteger, Column, ForeignKey, Index, String, Text
from sqlmodel import Field

from timetiles.models.base import BaseTableModel, JSONType
from timetiles.schemas.enums import ImportFileStatus

__all__ = ["ImportFile"]


class ImportFile(BaseTableModel, table=True):
    """A source blob queued for import."""

    __tablename__ = "import_files"
    __table_args__ = (
        Index("idx_import_files_status", "status"),
        Index("idx_import_files_catalog", "catalog_id"),
        Index("idx_import_files_scheduled", "scheduled_import_id"),
    )

    file_name: str = Field(
        sa_column=Column(String(255), nullable=False),
    )
    original_name: str | None = Field(
        default=None,
        sa_column=Column(String(255), nullable=True),
    )
    storage_path: str = Field(
        sa_column=Column(String(1024), nullable=False),
    )
    mime_type: str | None = Field(
        default=None,
        sa_column=Column(String(100), nullable=True),
    )
    file_type: str = Field(
        default="csv",
        sa_column=Column(String(20), nullable=False),
    )
    file_size: int = Field(default=0)

    status: ImportFileStatus = Field(
        default=ImportFileStatus.PENDING,
        sa_column=Column(String(50), nullable=False),
    )

    catalog_id: int | None = Field(
        default=None,
        sa_column=Column(BigInteger, ForeignKey("catalogs.id"), nullable=True),
    )
    scheduled_import_id: int | None = Field(
        default=None,
        sa_column=Column(BigInteger, ForeignKey("scheduled_imports.id"), nullable=True),
    )
    source_url: str | None = Field(
        default=None,
        sa_column=Column(String(2048), nullable=True),
    )

    sheets: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSONType, nullable=False),
    )
    jobs_total: int = Field(default=0)
    jobs_completed: int = Field(default=0)
    jobs_failed: int = Field(default=0)

    error_message: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )
    created_by: str | None = Field(
        default=None,
        sa_column=Column(String(255), nullable=True),
    )
    # Trust level of the uploading actor, for quota checks during processing
    trust_level: int = Field(default=2)
    processing_completed_at: datetime | None = Field(
        default=None,
        sa_type=sa.DateTime(timezone=True),
    )
