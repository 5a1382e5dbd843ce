"""
Geocoding API endpoints.

- GET /geocoding/providers - List providers with statistics
- POST /geocoding/providers - Register provider
- GET /geocoding/providers/{uuid} - Get provider
- PATCH /geocoding/providers/{uuid} - Update provider
- DELETE /geocoding/providers/{uuid} - Soft delete provider
- POST /geocoding/geocode - Test lookup through cache and providers
- GET /geocoding/cache - Location cache statistics
- DELETE /geocoding/cache/expired - Purge expired cache entries
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from timetiles.api.deps import CurrentActor, DbSession, Pagination
from timetiles.api.utils import get_or_404
from timetiles.schemas.common import PaginatedResponse
from timetiles.schemas.geocoding import (
    CacheStats,
    GeocodeRequest,
    GeocodeResponse,
    GeocodingProviderCreate,
    GeocodingProviderRead,
    GeocodingProviderUpdate,
)
from timetiles.services.geocoding_provider_service import GeocodingProviderService
from timetiles.services.geocoding_service import GeocodingService
from timetiles.services.location_cache_service import LocationCacheService

router = APIRouter()

PROVIDER_UUID = Path(..., description="The unique identifier of the provider")


@router.get("/providers", response_model=PaginatedResponse[GeocodingProviderRead])
async def list_providers(
    db: DbSession,
    pagination: Pagination,
    enabled: bool | None = Query(default=None, description="Filter by enabled flag"),
):
    """List geocoding providers."""
    items, total = await GeocodingProviderService(db).get_list_filtered(pagination, enabled=enabled)
    return PaginatedResponse[GeocodingProviderRead](
        items=[GeocodingProviderRead.model_validate(item) for item in items],
        total=total,
        page=pagination.page,
        page_size=pagination.page_size,
    )


@router.post("/providers", response_model=GeocodingProviderRead, status_code=status.HTTP_201_CREATED)
async def create_provider(db: DbSession, data: GeocodingProviderCreate, actor: CurrentActor):
    """Register a geocoding provider."""
    provider = await GeocodingProviderService(db).create_with_validation(data, actor)
    return GeocodingProviderRead.model_validate(provider)


@router.get("/providers/{uuid}", response_model=GeocodingProviderRead)
async def get_provider(db: DbSession, uuid: UUID = PROVIDER_UUID):
    """Get a provider with its statistics."""
    provider = await get_or_404(GeocodingProviderService(db), uuid, "GeocodingProvider")
    return GeocodingProviderRead.model_validate(provider)


@router.patch("/providers/{uuid}", response_model=GeocodingProviderRead)
async def update_provider(db: DbSession, data: GeocodingProviderUpdate, uuid: UUID = PROVIDER_UUID):
    """Update a provider."""
    service = GeocodingProviderService(db)
    provider = await get_or_404(service, uuid, "GeocodingProvider")
    updated = await service.update_with_validation(provider, data)
    return GeocodingProviderRead.model_validate(updated)


@router.delete("/providers/{uuid}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_provider(db: DbSession, actor: CurrentActor, uuid: UUID = PROVIDER_UUID):
    """Soft delete a provider."""
    service = GeocodingProviderService(db)
    provider = await get_or_404(service, uuid, "GeocodingProvider")
    await service.delete(provider, actor)
    return None


@router.post("/geocode", response_model=GeocodeResponse)
async def geocode(db: DbSession, data: GeocodeRequest):
    """Resolve one address. Successful lookups are cached like import lookups."""
    async with GeocodingService(db) as geocoder:
        result = await geocoder.geocode(data.address)
    return GeocodeResponse(address=data.address, **result.model_dump())


@router.get("/cache", response_model=CacheStats)
async def cache_stats(db: DbSession):
    """Location cache size and hit counts."""
    return CacheStats(**await LocationCacheService(db).stats())


@router.delete("/cache/expired")
async def purge_expired_cache(db: DbSession):
    """Remove cache entries older than the TTL."""
    removed = await LocationCacheService(db).purge_expired()
    return {"removed": removed}
