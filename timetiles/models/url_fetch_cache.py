"""
UrlFetchCache model - HTTP response cache for scheduled fetches.

Design notes:
- One row per (url, auth fingerprint)
- etag/last_modified feed conditional requests; expires_at honors Cache-Control
"""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import Column, Index, LargeBinary, String, UniqueConstraint
from sqlmodel import Field

from timetiles.models.base import BaseTableModel

__all__ = ["UrlFetchCache"]


class UrlFetchCache(BaseTableModel, table=True):
    """A cached response body."""

    __tablename__ = "url_fetch_cache"
    __table_args__ = (
        UniqueConstraint("cache_key", name="uq_url_fetch_cache_key"),
        Index("idx_url_fetch_cache_key", "cache_key"),
    )

    cache_key: str = Field(sa_column=Column(String(64), nullable=False))
    url: str = Field(sa_column=Column(String(2048), nullable=False))
    content: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    content_type: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    etag: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    last_modified: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    expires_at: datetime | None = Field(default=None, sa_type=sa.DateTime(timezone=True))
    hit_count: int = Field(default=0)
