"""
ImportJob model - orchestration unit for one sheet of one import file.

Design notes:
- stage is the state-machine position; transitions live in services/stage_machine.py
- retry_attempts/next_retry_at are persisted so any worker can pick up a due retry
- last_successful_stage is the resume point after a crash or operator requeue
- claimed_by/claimed_until is a lease taken by the worker running a stage
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import BigInteger, Column, ForeignKey, Index, Integer, String, Text
from sqlmodel import Field

from timetiles.models.base import BaseTableModel, JSONType
from timetiles.schemas.enums import ImportStage
from timetiles.schemas.jsonb_types import (
    DetectedFieldMappings,
    DuplicateAnalysis,
    GeocodedAddress,
    ImportJobProgress,
    ImportJobResults,
    RowError,
    SchemaValidationResult,
    TransformRule,
)

__all__ = ["ImportJob"]


class ImportJob(BaseTableModel, table=True):
    """Import of one sheet into one dataset."""

    __tablename__ = "import_jobs"
    __table_args__ = (
        Index("idx_import_jobs_stage", "stage"),
        Index("idx_import_jobs_dataset", "dataset_id"),
        Index("idx_import_jobs_file", "import_file_id"),
        Index("idx_import_jobs_due", "stage", "next_retry_at"),
    )

    import_file_id: int = Field(
        sa_column=Column(BigInteger, ForeignKey("import_files.id"), nullable=False),
    )
    dataset_id: int = Field(
        sa_column=Column(BigInteger, ForeignKey("datasets.id"), nullable=False),
    )
    sheet_index: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))

    stage: ImportStage = Field(
        default=ImportStage.ANALYZE_DUPLICATES,
        sa_column=Column(String(50), nullable=False),
    )
    last_successful_stage: ImportStage | None = Field(
        default=None,
        sa_column=Column(String(50), nullable=True),
    )

    progress: dict[str, Any] = Field(
        default_factory=lambda: ImportJobProgress().model_dump(mode="json"),
        sa_column=Column(JSONType, nullable=False),
    )

    # Retry state
    retry_attempts: int = Field(default=0)
    next_retry_at: datetime | None = Field(
        default=None,
        sa_type=sa.DateTime(timezone=True),
    )
    last_retry_error: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )

    # Worker lease
    claimed_by: str | None = Field(
        default=None,
        sa_column=Column(String(100), nullable=True),
    )
    claimed_until: datetime | None = Field(
        default=None,
        sa_type=sa.DateTime(timezone=True),
    )

    # Stage outputs
    detected_field_mappings: dict[str, Any] = Field(
        default_factory=lambda: DetectedFieldMappings().model_dump(mode="json"),
        sa_column=Column(JSONType, nullable=False),
    )
    duplicates: dict[str, Any] = Field(
        default_factory=lambda: DuplicateAnalysis().model_dump(mode="json"),
        sa_column=Column(JSONType, nullable=False),
    )
    detected_schema: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONType, nullable=False),
    )
    schema_validation: dict[str, Any] = Field(
        default_factory=lambda: SchemaValidationResult().model_dump(mode="json"),
        sa_column=Column(JSONType, nullable=False),
    )
    # Keyed by normalized address
    geocoding_results: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONType, nullable=False),
    )
    results: dict[str, Any] = Field(
        default_factory=lambda: ImportJobResults().model_dump(mode="json"),
        sa_column=Column(JSONType, nullable=False),
    )
    errors: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSONType, nullable=False),
    )
    # Operator-approved transforms for this job
    transforms: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSONType, nullable=False),
    )

    schema_version_id: int | None = Field(
        default=None,
        sa_column=Column(BigInteger, ForeignKey("schema_versions.id"), nullable=True),
    )

    # Approval gate
    approved_by: str | None = Field(
        default=None,
        sa_column=Column(String(255), nullable=True),
    )
    approved_at: datetime | None = Field(
        default=None,
        sa_type=sa.DateTime(timezone=True),
    )
    rejected_by: str | None = Field(
        default=None,
        sa_column=Column(String(255), nullable=True),
    )
    rejection_reason: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )

    error_message: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_type=sa.DateTime(timezone=True),
    )

    # Helper methods for typed access
    def get_progress(self) -> ImportJobProgress:
        return ImportJobProgress.model_validate(self.progress)

    def set_progress(self, progress: ImportJobProgress) -> None:
        self.progress = progress.model_dump(mode="json")

    def get_field_mappings(self) -> DetectedFieldMappings:
        return DetectedFieldMappings.model_validate(self.detected_field_mappings)

    def set_field_mappings(self, mappings: DetectedFieldMappings) -> None:
        self.detected_field_mappings = mappings.model_dump(mode="json")

    def get_duplicates(self) -> DuplicateAnalysis:
        return DuplicateAnalysis.model_validate(self.duplicates)

    def set_duplicates(self, analysis: DuplicateAnalysis) -> None:
        self.duplicates = analysis.model_dump(mode="json")

    def get_schema_validation(self) -> SchemaValidationResult:
        return SchemaValidationResult.model_validate(self.schema_validation)

    def set_schema_validation(self, result: SchemaValidationResult) -> None:
        self.schema_validation = result.model_dump(mode="json")

    def get_geocoding_results(self) -> dict[str, GeocodedAddress]:
        return {k: GeocodedAddress.model_validate(v) for k, v in (self.geocoding_results or {}).items()}

    def set_geocoding_results(self, results: dict[str, GeocodedAddress]) -> None:
        self.geocoding_results = {k: v.model_dump(mode="json") for k, v in results.items()}

    def get_results(self) -> ImportJobResults:
        return ImportJobResults.model_validate(self.results)

    def set_results(self, results: ImportJobResults) -> None:
        self.results = results.model_dump(mode="json")

    def get_errors(self) -> list[RowError]:
        return [RowError.model_validate(e) for e in self.errors or []]

    def add_errors(self, errors: list[RowError]) -> None:
        # Reassign so SQLAlchemy sees the change on a plain JSON column
        self.errors = [*(self.errors or []), *(e.model_dump(mode="json") for e in errors)]

    def get_transforms(self) -> list[TransformRule]:
        return [TransformRule.model_validate(t) for t in self.transforms or []]

    @property
    def is_terminal(self) -> bool:
        return self.stage in (ImportStage.COMPLETED, ImportStage.FAILED)
