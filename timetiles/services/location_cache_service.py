"""
Shared, ownerless address cache.

Lookups and writes are best-effort: a database error is logged and swallowed
into a miss / no-op so that geocoding never fails because of the cache. They
run in a SAVEPOINT on the caller's session, so a failure undoes only the
cache statement and never the caller's pending work. The caller commits.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.core.config import GeocodingSettings, get_settings
from timetiles.models.base import ensure_utc, utc_now
from timetiles.models.location_cache import LocationCache

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_SPECIAL_CHARS_RE = re.compile(r"[^\w\s,.-]")
_REPEATED_COMMAS_RE = re.compile(r",{2,}")


def normalize_address(address: str) -> str:
    """Canonical cache key for a free-text address."""
    text = _WHITESPACE_RE.sub(" ", address.lower().strip())
    text = _SPECIAL_CHARS_RE.sub("", text)
    text = _REPEATED_COMMAS_RE.sub(",", text)
    return text.strip(" ,")


class LocationCacheService:
    """Lookup and write-through for resolved addresses."""

    def __init__(self, db: AsyncSession, settings: GeocodingSettings | None = None):
        self.db = db
        self.settings = settings or get_settings().geocoding

    async def _flush_pending(self) -> None:
        # Caller's pending changes must not land inside a cache savepoint
        if self.db.new or self.db.dirty or self.db.deleted:
            await self.db.flush()

    def _is_expired(self, entry: LocationCache) -> bool:
        created = ensure_utc(entry.created_at)
        return created is None or created < utc_now() - timedelta(days=self.settings.cache_ttl_days)

    async def lookup(self, normalized: str) -> LocationCache | None:
        """Fresh entry for a normalized address, or None."""
        await self._flush_pending()
        try:
            async with self.db.begin_nested():
                stmt = select(LocationCache).where(
                    LocationCache.normalized_address == normalized,
                    LocationCache.deleted_at.is_(None),
                )
                entry = (await self.db.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.warning(f"Cache lookup failed for '{normalized}': {e}")
            return None

        if entry is not None and self._is_expired(entry):
            logger.debug(f"Cache entry for '{normalized}' expired")
            return None
        return entry

    async def record_hits(self, entry: LocationCache, hits: int) -> None:
        """Count `hits` rows served by this entry."""
        normalized = entry.normalized_address
        await self._flush_pending()
        try:
            async with self.db.begin_nested():
                entry.hit_count = (entry.hit_count or 0) + hits
                entry.last_used_at = utc_now()
                self.db.add(entry)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to record cache hit for '{normalized}': {e}")

    async def store(
        self,
        original_address: str,
        normalized: str,
        latitude: float,
        longitude: float,
        confidence: float | None,
        provider: str | None,
        formatted_address: str | None = None,
        components: dict[str, Any] | None = None,
        hits: int = 1,
    ) -> LocationCache | None:
        """Insert or refresh the entry for `normalized`. None when the write failed."""
        await self._flush_pending()
        try:
            async with self.db.begin_nested():
                stmt = select(LocationCache).where(LocationCache.normalized_address == normalized)
                entry = (await self.db.execute(stmt)).scalar_one_or_none()
                if entry is None:
                    entry = LocationCache(
                        original_address=original_address,
                        normalized_address=normalized,
                        latitude=latitude,
                        longitude=longitude,
                        hit_count=0,
                    )
                else:
                    # Refreshing an expired entry restarts its TTL
                    entry.created_at = utc_now()
                    entry.deleted_at = None
                entry.latitude = latitude
                entry.longitude = longitude
                entry.confidence = confidence
                entry.provider = provider
                entry.formatted_address = formatted_address
                entry.components = components or {}
                entry.hit_count = (entry.hit_count or 0) + hits
                entry.last_used_at = utc_now()
                self.db.add(entry)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to cache geocoding result for '{normalized}': {e}")
            return None
        return entry

    async def stats(self) -> dict[str, Any]:
        """Entry count, total hits and per-provider breakdown."""
        totals = await self.db.execute(
            select(func.count(LocationCache.id), func.coalesce(func.sum(LocationCache.hit_count), 0)).where(
                LocationCache.deleted_at.is_(None)
            )
        )
        entries, hits = totals.one()
        by_provider = await self.db.execute(
            select(LocationCache.provider, func.count(LocationCache.id))
            .where(LocationCache.deleted_at.is_(None))
            .group_by(LocationCache.provider)
        )
        return {
            "entries": entries,
            "total_hits": int(hits),
            "by_provider": {provider or "unknown": count for provider, count in by_provider.all()},
        }

    async def purge_expired(self) -> int:
        """Delete entries older than the TTL. Returns the number removed."""
        cutoff = utc_now() - timedelta(days=self.settings.cache_ttl_days)
        result = await self.db.execute(delete(LocationCache).where(LocationCache.created_at < cutoff))
        await self.db.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info(f"Purged {removed} expired location cache entries")
        return removed

    async def clear(self) -> int:
        result = await self.db.execute(delete(LocationCache))
        await self.db.commit()
        return result.rowcount or 0


def get_location_cache_service(db: AsyncSession) -> LocationCacheService:
    """Factory function for LocationCacheService."""
    return LocationCacheService(db)
