"""
ScheduledImport model - recurring remote source definition.

Design notes:
- Exactly one of frequency / cron_expression is used, per schedule_type
- last_status == "running" is the overlap guard, cleared by stuck-run cleanup
- Failures never disable the schedule; it waits for its next natural run
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import BigInteger, Column, ForeignKey, Index, String, Text, UniqueConstraint
from sqlmodel import Field

from timetiles.models.base import BaseTableModel, JSONType
from timetiles.schemas.enums import ExecutionStatus, ScheduleFrequency, ScheduleType
from timetiles.schemas.jsonb_types import (
    AuthConfig,
    CachePolicy,
    DatasetMapping,
    ExecutionHistoryEntry,
    RetryConfig,
    ScheduleStatistics,
)

__all__ = ["ScheduledImport"]


class ScheduledImport(BaseTableModel, table=True):
    """A URL fetched on a schedule and imported into a catalog."""

    __tablename__ = "scheduled_imports"
    __table_args__ = (
        UniqueConstraint("webhook_token", name="uq_scheduled_imports_webhook_token"),
        Index("idx_scheduled_imports_due", "enabled", "next_run"),
        Index("idx_scheduled_imports_catalog", "catalog_id"),
    )

    name: str = Field(sa_column=Column(String(255), nullable=False))
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    source_url: str = Field(sa_column=Column(String(2048), nullable=False))
    enabled: bool = Field(default=True)

    catalog_id: int = Field(
        sa_column=Column(BigInteger, ForeignKey("catalogs.id"), nullable=False),
    )
    dataset_id: int | None = Field(
        default=None,
        sa_column=Column(BigInteger, ForeignKey("datasets.id"), nullable=True),
    )

    schedule_type: ScheduleType = Field(
        default=ScheduleType.FREQUENCY,
        sa_column=Column(String(20), nullable=False),
    )
    frequency: ScheduleFrequency | None = Field(
        default=None,
        sa_column=Column(String(20), nullable=True),
    )
    cron_expression: str | None = Field(
        default=None,
        sa_column=Column(String(100), nullable=True),
    )
    import_name_template: str = Field(
        default="{{name}} - {{date}}",
        sa_column=Column(String(255), nullable=False),
    )

    auth_config: dict[str, Any] = Field(
        default_factory=lambda: AuthConfig().model_dump(mode="json"),
        sa_column=Column(JSONType, nullable=False),
    )
    retry_config: dict[str, Any] = Field(
        default_factory=lambda: RetryConfig().model_dump(mode="json"),
        sa_column=Column(JSONType, nullable=False),
    )
    cache_policy: dict[str, Any] = Field(
        default_factory=lambda: CachePolicy().model_dump(mode="json"),
        sa_column=Column(JSONType, nullable=False),
    )
    dataset_mapping: dict[str, Any] = Field(
        default_factory=lambda: DatasetMapping().model_dump(mode="json"),
        sa_column=Column(JSONType, nullable=False),
    )

    # Webhook trigger
    webhook_enabled: bool = Field(default=False)
    webhook_token: str | None = Field(
        default=None,
        sa_column=Column(String(64), nullable=True),
    )

    # Run state
    last_run: datetime | None = Field(default=None, sa_type=sa.DateTime(timezone=True))
    next_run: datetime | None = Field(default=None, sa_type=sa.DateTime(timezone=True))
    last_status: ExecutionStatus | None = Field(
        default=None,
        sa_column=Column(String(20), nullable=True),
    )
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    current_retries: int = Field(default=0)

    execution_history: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSONType, nullable=False),
    )
    statistics: dict[str, Any] = Field(
        default_factory=lambda: ScheduleStatistics().model_dump(mode="json"),
        sa_column=Column(JSONType, nullable=False),
    )

    created_by: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    # Owner's trust level; scheduled runs are charged to the owner
    trust_level: int = Field(default=2)

    # Helper methods for typed access
    def get_auth_config(self) -> AuthConfig:
        return AuthConfig.model_validate(self.auth_config)

    def get_retry_config(self) -> RetryConfig:
        return RetryConfig.model_validate(self.retry_config)

    def get_cache_policy(self) -> CachePolicy:
        return CachePolicy.model_validate(self.cache_policy)

    def get_dataset_mapping(self) -> DatasetMapping:
        return DatasetMapping.model_validate(self.dataset_mapping)

    def get_history(self) -> list[ExecutionHistoryEntry]:
        return [ExecutionHistoryEntry.model_validate(e) for e in self.execution_history or []]

    def set_history(self, entries: list[ExecutionHistoryEntry]) -> None:
        self.execution_history = [e.model_dump(mode="json") for e in entries]

    def get_statistics(self) -> ScheduleStatistics:
        return ScheduleStatistics.model_validate(self.statistics)

    def set_statistics(self, stats: ScheduleStatistics) -> None:
        self.statistics = stats.model_dump(mode="json")
