"""
Geocoding resolver.

Resolves free-text addresses through the location cache and then a chain of
provider adapters. Provider order comes from the selection strategy:
- priority:  all enabled providers by ascending priority
- tag_based: only providers carrying every required tag, by priority

With fallback enabled a failing provider hands over to the next one. Every
external call updates the provider's statistics (best-effort).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.core.config import GeocodingSettings, get_settings
from timetiles.models.base import utc_now
from timetiles.models.geocoding_provider import GeocodingProvider
from timetiles.schemas.enums import ProviderSelectionStrategy
from timetiles.schemas.jsonb_types import GeocodedAddress
from timetiles.services.exceptions import ConfigurationError, TransientExternalFailure
from timetiles.services.geocoding_providers import (
    GeocodeResult,
    GeocodingAdapter,
    NoGeocodeResultError,
    build_adapter,
)
from timetiles.services.location_cache_service import LocationCacheService, normalize_address

logger = logging.getLogger(__name__)


@dataclass
class AddressRequest:
    """One distinct address in a batch and how many rows share it."""

    address: str
    normalized: str
    rows: int = 1


def group_addresses(addresses: Iterable[str]) -> dict[str, AddressRequest]:
    """Collapse raw addresses onto their normalized form, counting rows."""
    grouped: dict[str, AddressRequest] = {}
    for address in addresses:
        normalized = normalize_address(address)
        if not normalized:
            continue
        request = grouped.get(normalized)
        if request is None:
            grouped[normalized] = AddressRequest(address.strip(), normalized)
        else:
            request.rows += 1
    return grouped


class GeocodingService:
    """
    Cache-first address resolution over the configured providers.

    Use as an async context manager so adapter HTTP sessions get closed:
        async with GeocodingService(db) as geocoder:
            results = await geocoder.geocode_batch(addresses)
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: GeocodingSettings | None = None,
        adapters: list[tuple[GeocodingProvider, GeocodingAdapter]] | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings().geocoding
        self.cache = LocationCacheService(db, self.settings)
        self._adapters = adapters

    async def __aenter__(self) -> GeocodingService:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        for _, adapter in self._adapters or []:
            await adapter.close()

    # =========================================================================
    # Provider selection
    # =========================================================================

    async def get_providers(self) -> list[GeocodingProvider]:
        """Enabled providers in selection-strategy order."""
        stmt = (
            select(GeocodingProvider)
            .where(
                GeocodingProvider.enabled.is_(True),
                GeocodingProvider.deleted_at.is_(None),
            )
            .order_by(GeocodingProvider.priority.asc(), GeocodingProvider.name.asc())
        )
        providers = list((await self.db.execute(stmt)).scalars().all())

        strategy = ProviderSelectionStrategy(self.settings.selection_strategy)
        if strategy == ProviderSelectionStrategy.TAG_BASED and self.settings.required_tags:
            required = set(self.settings.required_tags)
            providers = [p for p in providers if required.issubset(p.tags or [])]
        return providers

    async def _get_adapters(self) -> list[tuple[GeocodingProvider, GeocodingAdapter]]:
        if self._adapters is None:
            self._adapters = [(p, build_adapter(p, self.settings)) for p in await self.get_providers()]
        return self._adapters

    async def _record_stats(self, provider: GeocodingProvider, success: bool, latency_ms: float) -> None:
        """Best-effort counter update in a SAVEPOINT; the caller commits."""
        name = provider.name
        if self.db.new or self.db.dirty or self.db.deleted:
            await self.db.flush()
        try:
            async with self.db.begin_nested():
                total = (provider.total_requests or 0) + 1
                provider.average_latency_ms = round(
                    ((provider.average_latency_ms or 0.0) * (total - 1) + latency_ms) / total, 3
                )
                provider.total_requests = total
                if success:
                    provider.successful_requests = (provider.successful_requests or 0) + 1
                else:
                    provider.failed_requests = (provider.failed_requests or 0) + 1
                provider.last_used_at = utc_now()
                self.db.add(provider)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to update statistics for provider '{name}': {e}")
            # Rolled-back savepoint expired the counters; reload them for the next call
            try:
                await self.db.refresh(provider)
            except SQLAlchemyError as refresh_error:
                logger.warning(f"Could not reload provider '{name}': {refresh_error}")

    # =========================================================================
    # Resolution
    # =========================================================================

    async def resolve(self, address: str) -> GeocodeResult:
        """
        Ask providers in order until one returns a confident result.

        Raises TransientExternalFailure when any provider failed transiently
        and none succeeded, ConfigurationError when every provider is
        misconfigured, NoGeocodeResultError otherwise.
        """
        adapters = await self._get_adapters()
        if not adapters:
            raise ConfigurationError("No geocoding providers are enabled")

        transient: TransientExternalFailure | None = None
        config_errors = 0
        for provider, adapter in adapters:
            started = time.perf_counter()
            try:
                result = await adapter.geocode(address)
            except TransientExternalFailure as e:
                await self._record_stats(provider, False, (time.perf_counter() - started) * 1000)
                logger.warning(f"Provider '{adapter.name}' failed transiently: {e.message}")
                transient = e
                if not self.settings.fallback_enabled:
                    raise
                continue
            except ConfigurationError as e:
                await self._record_stats(provider, False, (time.perf_counter() - started) * 1000)
                logger.error(f"Provider '{adapter.name}' is misconfigured: {e.message}")
                config_errors += 1
                if not self.settings.fallback_enabled:
                    raise
                continue
            except NoGeocodeResultError:
                await self._record_stats(provider, False, (time.perf_counter() - started) * 1000)
                logger.debug(f"Provider '{adapter.name}' found nothing for '{address}'")
                if not self.settings.fallback_enabled:
                    raise
                continue

            await self._record_stats(provider, True, (time.perf_counter() - started) * 1000)
            if result.confidence < self.settings.min_confidence:
                logger.debug(
                    f"Provider '{adapter.name}' result for '{address}' below min confidence "
                    f"({result.confidence} < {self.settings.min_confidence})"
                )
                if not self.settings.fallback_enabled:
                    break
                continue
            return result

        if transient is not None:
            raise transient
        if config_errors == len(adapters):
            raise ConfigurationError("All geocoding providers are misconfigured")
        raise NoGeocodeResultError("all providers", address)

    async def geocode(self, address: str, rows: int = 1) -> GeocodedAddress:
        """
        Resolve one address; a row count > 1 credits the cache for each row.

        Standalone lookups commit their cache and statistics writes here.
        Batch callers commit as part of their own unit of work.
        """
        normalized = normalize_address(address)
        if not normalized:
            return GeocodedAddress(error="Empty address")
        results = await self.geocode_batch([AddressRequest(address.strip(), normalized, rows)])
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to persist cache and statistics for '{normalized}': {e}")
            await self.db.rollback()
        return results[normalized]

    async def geocode_batch(
        self,
        requests: Iterable[AddressRequest],
    ) -> dict[str, GeocodedAddress]:
        """
        Resolve distinct addresses, keyed by normalized address.

        Each address costs at most one cache lookup and one provider chain,
        however many rows share it. Row-level failures (nothing found) are
        returned as entries with `error` set; transient and configuration
        failures propagate so the caller can decide on the chunk.
        """
        results: dict[str, GeocodedAddress] = {}
        for request in requests:
            cached = await self.cache.lookup(request.normalized)
            if cached is not None:
                # Read before the hit counter write; a failed write expires the row
                results[request.normalized] = GeocodedAddress(
                    latitude=cached.latitude,
                    longitude=cached.longitude,
                    confidence=cached.confidence,
                    provider=cached.provider,
                    normalized_address=request.normalized,
                    from_cache=True,
                )
                await self.cache.record_hits(cached, request.rows)
                continue

            try:
                result = await self.resolve(request.address)
            except NoGeocodeResultError as e:
                results[request.normalized] = GeocodedAddress(
                    normalized_address=request.normalized,
                    error=e.message,
                )
                continue

            await self.cache.store(
                original_address=request.address,
                normalized=request.normalized,
                latitude=result.latitude,
                longitude=result.longitude,
                confidence=result.confidence,
                provider=result.provider,
                formatted_address=result.formatted_address,
                components=result.components,
                hits=request.rows,
            )
            results[request.normalized] = GeocodedAddress(
                latitude=result.latitude,
                longitude=result.longitude,
                confidence=result.confidence,
                provider=result.provider,
                normalized_address=request.normalized,
            )
        return results


def get_geocoding_service(db: AsyncSession) -> GeocodingService:
    """Factory function for GeocodingService."""
    return GeocodingService(db)
