"""
AuditLog model - records schema approvals, rejections and deletions.

Design notes:
- NO soft delete - audit logs are permanent records
- entity_uuid stored for querying even after entity deletion
- actor is an opaque identifier supplied by the external auth layer
"""

from __future__ import annotations

import uuid as uuid_lib
from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, String, Text, Uuid, func
from sqlmodel import Field, SQLModel

from timetiles.models.base import JSONType, utc_now

__all__ = ["AuditLog"]


class AuditLog(SQLModel, table=True):
    """
    Permanent record of significant actions in the system.

    Unlike other models, audit logs are NEVER deleted.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_actor", "actor"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_entity_uuid", "entity_type", "entity_uuid"),
        Index("idx_audit_created", "created_at"),
    )

    # Primary key - no soft delete
    id: int | None = Field(
        default=None,
        sa_column=Column(BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True),
    )
    uuid: uuid_lib.UUID = Field(
        default_factory=uuid_lib.uuid4,
        sa_column=Column(Uuid(as_uuid=True), unique=True, nullable=False),
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now(), nullable=False),
    )

    # Who performed the action
    actor: str | None = Field(
        default=None,
        sa_column=Column(String(255), nullable=True),
    )

    # What action was performed
    action: str = Field(
        sa_column=Column(String(100), nullable=False),
        max_length=100,
    )

    # What entity was affected
    entity_type: str = Field(
        sa_column=Column(String(50), nullable=False),
        max_length=50,
    )
    entity_id: int | None = Field(
        default=None,
        sa_column=Column(BigInteger, nullable=True),
    )
    entity_uuid: uuid_lib.UUID | None = Field(
        default=None,
        sa_column=Column(Uuid(as_uuid=True), nullable=True),
    )

    # State changes
    old_value: dict | None = Field(
        default=None,
        sa_column=Column(JSONType, nullable=True),
    )
    new_value: dict | None = Field(
        default=None,
        sa_column=Column(JSONType, nullable=True),
    )

    # Request context
    context: dict = Field(
        default_factory=dict,
        sa_column=Column(JSONType, nullable=False),
    )

    # Description
    description: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )
