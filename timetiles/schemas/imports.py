"""
Import file and import job response/request schemas.

Import files are created by upload or by the scheduler, never by a plain
POST body, so there is no Create schema for them. Jobs only accept
operator actions (approve / reject).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from timetiles.schemas.enums import ImportFileStatus, ImportStage
from timetiles.schemas.jsonb_types import (
    DetectedFieldMappings,
    DuplicateAnalysis,
    ImportJobProgress,
    ImportJobResults,
    RowError,
    SchemaValidationResult,
    TransformRule,
)

__all__ = [
    "ImportFileRead",
    "ImportJobRead",
    "ImportJobSummary",
    "ApproveRequest",
    "RejectRequest",
]


class ImportFileRead(BaseModel):
    """Schema for import file API responses."""

    model_config = ConfigDict(from_attributes=True)

    uuid: UUID = Field(description="Unique public identifier")
    file_name: str = Field(description="Stored file name")
    original_name: str | None = Field(description="Name of the uploaded file")
    file_type: str = Field(description="csv, xlsx or json")
    mime_type: str | None = Field(description="Content type reported by the source")
    file_size: int = Field(description="Size in bytes")
    status: ImportFileStatus = Field(description="Processing status")
    source_url: str | None = Field(description="URL for fetched files")
    sheets: list[dict[str, Any]] = Field(description="Per-sheet name and row count")
    jobs_total: int = Field(description="Import jobs created for this file")
    jobs_completed: int = Field(description="Jobs that completed")
    jobs_failed: int = Field(description="Jobs that failed")
    error_message: str | None = Field(description="File-level error")
    created_by: str | None = Field(description="Uploading actor")
    processing_completed_at: datetime | None = Field(description="When every job finished")
    created_at: datetime = Field(description="When the file was received")


class ImportJobSummary(BaseModel):
    """Compact job representation for list endpoints."""

    model_config = ConfigDict(from_attributes=True)

    uuid: UUID = Field(description="Unique public identifier")
    sheet_index: int = Field(description="Sheet of the import file")
    stage: ImportStage = Field(description="Current state-machine position")
    progress: ImportJobProgress = Field(description="Per-stage progress")
    retry_attempts: int = Field(description="Retries consumed in the current stage")
    error_message: str | None = Field(description="Terminal error")
    created_at: datetime = Field(description="When the job was created")
    updated_at: datetime = Field(description="Last update timestamp")


class ImportJobRead(ImportJobSummary):
    """Full job state for the admin surface."""

    last_successful_stage: ImportStage | None = Field(description="Resume point")
    next_retry_at: datetime | None = Field(description="When a scheduled retry is due")
    last_retry_error: str | None = Field(description="Error that caused the pending retry")
    detected_field_mappings: DetectedFieldMappings = Field(description="Detected standard fields")
    duplicates: DuplicateAnalysis = Field(description="Duplicate analysis")
    detected_schema: dict[str, Any] = Field(description="Schema inferred from this batch")
    schema_validation: SchemaValidationResult = Field(description="Diff and approval decision")
    results: ImportJobResults = Field(description="Materialization counters")
    errors: list[RowError] = Field(description="Row-level error log")
    transforms: list[TransformRule] = Field(description="Transforms applied to this job")
    approved_by: str | None = Field(description="Approving actor")
    approved_at: datetime | None = Field(description="Approval time")
    rejected_by: str | None = Field(description="Rejecting actor")
    rejection_reason: str | None = Field(description="Reason given at rejection")
    completed_at: datetime | None = Field(description="When the job reached a terminal stage")


class ApproveRequest(BaseModel):
    """Body for approving a job held at the approval gate."""

    transforms: list[TransformRule] | None = Field(
        default=None,
        description="Transforms to apply (defaults to none; suggestions are on schema_validation)",
    )


class RejectRequest(BaseModel):
    """Body for rejecting a job held at the approval gate."""

    reason: str = Field(min_length=1, max_length=2000, description="Why the changes were rejected")
