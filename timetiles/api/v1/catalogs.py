"""
Catalog API endpoints.

- GET /catalogs - List catalogs (paginated)
- POST /catalogs - Create catalog
- GET /catalogs/{uuid} - Get catalog
- PATCH /catalogs/{uuid} - Update catalog
- DELETE /catalogs/{uuid} - Soft delete catalog
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Path, status

from timetiles.api.deps import CurrentActor, DbSession, Pagination
from timetiles.api.utils import get_or_404
from timetiles.schemas.catalog import CatalogCreate, CatalogRead, CatalogUpdate
from timetiles.schemas.common import PaginatedResponse
from timetiles.services.catalog_service import CatalogService

router = APIRouter()

CATALOG_UUID = Path(
    ...,
    description="The unique identifier of the catalog",
    examples=["330e8400-e29b-41d4-a716-446655440000"],
)


@router.get("", response_model=PaginatedResponse[CatalogRead])
async def list_catalogs(db: DbSession, pagination: Pagination):
    """List all catalogs with pagination."""
    service = CatalogService(db)
    items, total = await service.get_list(pagination)
    return PaginatedResponse[CatalogRead](
        items=[CatalogRead.model_validate(item) for item in items],
        total=total,
        page=pagination.page,
        page_size=pagination.page_size,
    )


@router.post("", response_model=CatalogRead, status_code=status.HTTP_201_CREATED)
async def create_catalog(db: DbSession, data: CatalogCreate, actor: CurrentActor):
    """Create a new catalog."""
    service = CatalogService(db)
    catalog = await service.create_with_validation(data, actor)
    return CatalogRead.model_validate(catalog)


@router.get("/{uuid}", response_model=CatalogRead)
async def get_catalog(db: DbSession, uuid: UUID = CATALOG_UUID):
    """Get a single catalog by UUID."""
    service = CatalogService(db)
    catalog = await get_or_404(service, uuid, "Catalog")
    return CatalogRead.model_validate(catalog)


@router.patch("/{uuid}", response_model=CatalogRead)
async def update_catalog(db: DbSession, data: CatalogUpdate, uuid: UUID = CATALOG_UUID):
    """Update a catalog."""
    service = CatalogService(db)
    catalog = await get_or_404(service, uuid, "Catalog")
    updated = await service.update_with_validation(catalog, data)
    return CatalogRead.model_validate(updated)


@router.delete("/{uuid}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_catalog(db: DbSession, actor: CurrentActor, uuid: UUID = CATALOG_UUID):
    """Soft delete a catalog."""
    service = CatalogService(db)
    catalog = await get_or_404(service, uuid, "Catalog")
    await service.delete(catalog, actor)
    return None
