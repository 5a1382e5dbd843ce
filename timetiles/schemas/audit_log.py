"""
AuditLog response schemas for API endpoints.

Audit logs are written by the service layer during approvals, rejections,
deletions and triggers. They are immutable, so there is no Create or
Update schema.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

__all__ = ["AuditLogRead"]


class AuditLogRead(BaseModel):
    """Schema for audit log API responses. Audit logs are immutable."""

    model_config = ConfigDict(from_attributes=True)

    uuid: UUID = Field(description="Unique public identifier")
    actor: str | None = Field(default=None, description="Actor identifier (null for system actions)")
    action: str = Field(description="Action type (e.g. 'import_job.approve')")
    entity_type: str = Field(description="Entity type")
    entity_uuid: UUID | None = Field(description="Entity UUID")
    old_value: dict[str, Any] | None = Field(description="Previous state")
    new_value: dict[str, Any] | None = Field(description="New state")
    context: dict[str, Any] = Field(description="Request context")
    description: str | None = Field(description="Action description")
    created_at: datetime = Field(description="When action occurred")
