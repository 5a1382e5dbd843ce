"""
Typed Pydantic models for JSON columns.

These models define the expected structure of JSON fields in our models.
Using typed schemas instead of raw dicts prevents data structure drift
and makes the codebase more maintainable.

Usage in service layer:
    # Validate config before saving
    config = SchemaConfig(**raw_config_dict)
    dataset.schema_config = config.model_dump(mode="json")

    # Parse config from DB
    config = SchemaConfig.model_validate(dataset.schema_config)
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from timetiles.schemas.enums import (
    AuthType,
    DatasetMappingMode,
    DuplicateStrategy,
    ExecutionStatus,
    IdStrategyType,
    StageStatus,
    TransformType,
    TriggerType,
)

# =============================================================================
# Dataset configuration
# =============================================================================


class IdStrategyConfig(BaseModel):
    """
    Structure for datasets.id_strategy column.

    `external_id_path` always wins over auto-detection when set.
    """

    type: IdStrategyType = IdStrategyType.AUTO
    external_id_path: str | None = None
    computed_fields: list[str] = Field(default_factory=list)
    duplicate_strategy: DuplicateStrategy = DuplicateStrategy.SKIP
    deduplication_enabled: bool = True


class SchemaConfig(BaseModel):
    """Structure for datasets.schema_config column."""

    locked: bool = False
    strict: bool = False  # New fields also require approval
    auto_grow: bool = True
    auto_approve_non_breaking: bool = True
    strict_validation: bool = False
    allow_transformations: bool = True

    # Per-dataset overrides of the global inference settings
    enum_threshold: int | None = None
    enum_mode: Literal["count", "percentage"] | None = None
    max_schema_depth: int | None = None


class GeoFieldMapping(BaseModel):
    """
    Structure for datasets.geo_field_mapping column.

    Any path set here overrides auto-detection.
    """

    latitude_path: str | None = None
    longitude_path: str | None = None
    combined_path: str | None = None
    combined_format: Literal["auto", "comma", "space", "geojson"] = "auto"
    address_path: str | None = None
    location_name_path: str | None = None
    autofix_swapped: bool = False


class FieldMappingOverrides(BaseModel):
    """Structure for datasets.field_mapping column."""

    title_path: str | None = None
    description_path: str | None = None
    timestamp_path: str | None = None


class TransformRule(BaseModel):
    """A single field transformation applied before events are created."""

    type: TransformType
    enabled: bool = True

    # rename / type_cast / string_op / split source
    from_field: str | None = None
    # rename / concatenate target
    to_field: str | None = None

    # type_cast
    target_type: Literal["string", "number", "integer", "boolean", "date"] | None = None
    format: str | None = None  # strptime format for dates, decimal separator for numbers

    # string_op
    operation: Literal["trim", "uppercase", "lowercase", "replace"] | None = None
    pattern: str | None = None
    replacement: str | None = None

    # concatenate / split
    fields: list[str] = Field(default_factory=list)
    to_fields: list[str] = Field(default_factory=list)
    separator: str = " "

    # Similarity score for suggested renames (0-100)
    confidence: float | None = None

    @field_validator("pattern")
    @classmethod
    def pattern_compiles(cls, v: str | None) -> str | None:
        if v is not None:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"Invalid regular expression: {e}") from e
        return v


# =============================================================================
# Import job state
# =============================================================================


class RowError(BaseModel):
    """A row-level problem. Never aborts the batch on its own."""

    row: int | None = None  # None for job-level errors
    error: str
    field: str | None = None
    stage: str | None = None


class StageProgress(BaseModel):
    """Progress of one stage."""

    status: StageStatus = StageStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    total: int = 0
    processed: int = 0
    # Index of the last fully completed chunk, for resume
    checkpoint: int | None = None


class ImportJobProgress(BaseModel):
    """Structure for import_jobs.progress column."""

    stages: dict[str, StageProgress] = Field(default_factory=dict)
    percentage: int = 0
    estimated_completion_at: datetime | None = None


class GeoDetection(BaseModel):
    """Detected or configured location columns."""

    type: Literal["separate", "combined", "address", "none"] = "none"
    latitude_path: str | None = None
    longitude_path: str | None = None
    combined_path: str | None = None
    combined_format: str | None = None
    address_path: str | None = None
    location_name_path: str | None = None
    confidence: float = 0.0
    swapped: bool = False
    detection_method: Literal["pattern", "heuristic", "manual", "none"] = "none"


class DetectedFieldMappings(BaseModel):
    """Structure for import_jobs.detected_field_mappings column."""

    id_path: str | None = None
    title_path: str | None = None
    description_path: str | None = None
    timestamp_path: str | None = None
    geo: GeoDetection = Field(default_factory=GeoDetection)


class DuplicateRecord(BaseModel):
    """A record that collided with an earlier row or an existing event."""

    row: int
    unique_id: str
    first_row: int | None = None
    event_id: int | None = None


class DuplicateSummary(BaseModel):
    total_rows: int = 0
    unique_rows: int = 0
    internal_duplicates: int = 0
    external_duplicates: int = 0
    update_candidates: int = 0
    unresolved: int = 0


class DuplicateAnalysis(BaseModel):
    """Structure for import_jobs.duplicates column."""

    strategy: DuplicateStrategy = DuplicateStrategy.SKIP
    skipped: bool = False
    id_path: str | None = None
    internal: list[DuplicateRecord] = Field(default_factory=list)
    external: list[DuplicateRecord] = Field(default_factory=list)
    update_candidates: list[DuplicateRecord] = Field(default_factory=list)
    unresolved_rows: list[int] = Field(default_factory=list)
    summary: DuplicateSummary = Field(default_factory=DuplicateSummary)


class SchemaValidationResult(BaseModel):
    """Structure for import_jobs.schema_validation column."""

    is_breaking: bool = False
    requires_approval: bool = False
    has_changes: bool = False
    approval_reason: str | None = None
    breaking_reasons: list[str] = Field(default_factory=list)
    diff: dict[str, Any] = Field(default_factory=dict)
    suggested_transforms: list[TransformRule] = Field(default_factory=list)
    validation_errors: list[RowError] = Field(default_factory=list)
    # Schema version the diff was computed against; None for a dataset without one
    compared_version_id: int | None = None


class GeocodedAddress(BaseModel):
    """Resolved (or failed) lookup for one normalized address."""

    latitude: float | None = None
    longitude: float | None = None
    confidence: float | None = None
    provider: str | None = None
    normalized_address: str | None = None
    from_cache: bool = False
    error: str | None = None


class ImportJobResults(BaseModel):
    """Structure for import_jobs.results column."""

    events_created: int = 0
    events_updated: int = 0
    events_versioned: int = 0
    events_skipped: int = 0
    rows_failed: int = 0
    geocoded: int = 0
    geocoding_failed: int = 0
    cache_hits: int = 0


# =============================================================================
# Scheduled imports
# =============================================================================


class AuthConfig(BaseModel):
    """Structure for scheduled_imports.auth_config column."""

    type: AuthType = AuthType.NONE
    api_key: str | None = None
    api_key_header: str = "X-API-Key"
    bearer_token: str | None = None
    username: str | None = None
    password: str | None = None
    custom_headers: dict[str, str] = Field(default_factory=dict)


class RetryConfig(BaseModel):
    """Structure for scheduled_imports.retry_config column."""

    max_retries: int = Field(default=3, ge=0, le=10)
    retry_delay_minutes: float = Field(default=5.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)


class CachePolicy(BaseModel):
    """Structure for scheduled_imports.cache_policy column."""

    use_cache: bool = True
    bypass_cache_on_manual: bool = False
    respect_cache_control: bool = True


class SheetMapping(BaseModel):
    """Maps one sheet of a fetched file onto a dataset."""

    sheet_index: int
    dataset_uuid: str | None = None
    new_dataset_name: str | None = None


class DatasetMapping(BaseModel):
    """Structure for scheduled_imports.dataset_mapping column."""

    mode: DatasetMappingMode = DatasetMappingMode.AUTO
    sheet_mappings: list[SheetMapping] = Field(default_factory=list)


class ExecutionHistoryEntry(BaseModel):
    """One run of a scheduled import."""

    executed_at: datetime
    status: ExecutionStatus
    duration_ms: int | None = None
    triggered_by: TriggerType = TriggerType.SCHEDULE
    actor: str | None = None
    error: str | None = None
    import_file_uuid: str | None = None
    job_count: int = 0
    from_cache: bool = False


class ScheduleStatistics(BaseModel):
    """Structure for scheduled_imports.statistics column."""

    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    average_duration_ms: float = 0.0


# =============================================================================
# Geocoding
# =============================================================================


class ProviderConfig(BaseModel):
    """Structure for geocoding_providers.config column."""

    api_key: str | None = None
    base_url: str | None = None
    user_agent: str | None = None
    email: str | None = None
    language: str | None = None
    country_codes: list[str] = Field(default_factory=list)
    timeout: float | None = None
