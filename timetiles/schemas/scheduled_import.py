"""
Scheduled import request/response schemas for API endpoints.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from timetiles.schemas.enums import ExecutionStatus, ScheduleFrequency, ScheduleType
from timetiles.schemas.jsonb_types import (
    AuthConfig,
    CachePolicy,
    DatasetMapping,
    ExecutionHistoryEntry,
    RetryConfig,
    ScheduleStatistics,
)

__all__ = [
    "ScheduledImportCreate",
    "ScheduledImportUpdate",
    "ScheduledImportRead",
    "TriggerResponse",
]

URL_PATTERN = r"^https?://"


class ScheduledImportCreate(BaseModel):
    """Schema for creating a scheduled import."""

    name: str = Field(min_length=1, max_length=255, description="Schedule name")
    description: str | None = Field(default=None)
    source_url: str = Field(max_length=2048, pattern=URL_PATTERN, description="HTTP(S) source")
    catalog_uuid: UUID = Field(description="Catalog receiving the imports")
    dataset_uuid: UUID | None = Field(default=None, description="Fixed target dataset")
    enabled: bool = Field(default=True)
    schedule_type: ScheduleType = Field(default=ScheduleType.FREQUENCY)
    frequency: ScheduleFrequency | None = Field(default=None)
    cron_expression: str | None = Field(default=None, max_length=100)
    import_name_template: str = Field(
        default="{{name}} - {{date}}",
        max_length=255,
        description="Supports {{name}}, {{date}}, {{time}} and {{url}}",
    )
    auth_config: AuthConfig = Field(default_factory=AuthConfig)
    retry_config: RetryConfig = Field(default_factory=RetryConfig)
    cache_policy: CachePolicy = Field(default_factory=CachePolicy)
    dataset_mapping: DatasetMapping = Field(default_factory=DatasetMapping)
    webhook_enabled: bool = Field(default=False)

    @model_validator(mode="after")
    def check_schedule(self) -> ScheduledImportCreate:
        if self.schedule_type == ScheduleType.FREQUENCY and self.frequency is None:
            raise ValueError("frequency is required for frequency schedules")
        if self.schedule_type == ScheduleType.CRON and not self.cron_expression:
            raise ValueError("cron_expression is required for cron schedules")
        return self


class ScheduledImportUpdate(BaseModel):
    """Schema for updating a scheduled import. All fields optional."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None)
    source_url: str | None = Field(default=None, max_length=2048, pattern=URL_PATTERN)
    enabled: bool | None = Field(default=None)
    schedule_type: ScheduleType | None = Field(default=None)
    frequency: ScheduleFrequency | None = Field(default=None)
    cron_expression: str | None = Field(default=None, max_length=100)
    import_name_template: str | None = Field(default=None, max_length=255)
    auth_config: AuthConfig | None = Field(default=None)
    retry_config: RetryConfig | None = Field(default=None)
    cache_policy: CachePolicy | None = Field(default=None)
    dataset_mapping: DatasetMapping | None = Field(default=None)
    webhook_enabled: bool | None = Field(default=None)


class ScheduledImportRead(BaseModel):
    """Schema for scheduled import API responses. Credentials are not echoed."""

    model_config = ConfigDict(from_attributes=True)

    uuid: UUID
    name: str
    description: str | None
    source_url: str
    enabled: bool
    schedule_type: ScheduleType
    frequency: ScheduleFrequency | None
    cron_expression: str | None
    import_name_template: str
    retry_config: RetryConfig
    cache_policy: CachePolicy
    dataset_mapping: DatasetMapping
    webhook_enabled: bool
    webhook_token: str | None
    last_run: datetime | None
    next_run: datetime | None
    last_status: ExecutionStatus | None
    last_error: str | None
    current_retries: int
    execution_history: list[ExecutionHistoryEntry]
    statistics: ScheduleStatistics
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class TriggerResponse(BaseModel):
    """Result of a manual or webhook trigger."""

    status: ExecutionStatus
    message: str
    import_file_uuid: UUID | None = None
