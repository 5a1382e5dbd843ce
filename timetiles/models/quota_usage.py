"""
QuotaUsage model - per-actor usage counters.

Daily counters use the UTC date as window; lifetime counters use a fixed window.
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import Column, Date, Index, String, UniqueConstraint
from sqlmodel import Field

from timetiles.models.base import BaseTableModel

__all__ = ["QuotaUsage"]


class QuotaUsage(BaseTableModel, table=True):
    __tablename__ = "quota_usage"
    __table_args__ = (
        UniqueConstraint("actor", "quota_type", "window_date", name="uq_quota_usage_actor_type_window"),
        Index("idx_quota_usage_actor", "actor"),
    )

    actor: str = Field(sa_column=Column(String(255), nullable=False))
    quota_type: str = Field(sa_column=Column(String(50), nullable=False))
    window_date: date = Field(sa_column=Column(Date, nullable=False))
    count: int = Field(default=0)
