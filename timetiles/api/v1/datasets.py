"""
Dataset API endpoints.

CRUD operations for datasets:
- GET /datasets - List datasets (paginated)
- POST /datasets - Create dataset
- GET /datasets/{uuid} - Get dataset
- PATCH /datasets/{uuid} - Update dataset
- DELETE /datasets/{uuid} - Soft delete dataset
- GET /datasets/{uuid}/schema-versions - Schema lineage, newest first
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from timetiles.api.deps import CurrentActor, DbSession, Pagination
from timetiles.api.utils import get_or_404
from timetiles.models.dataset import Dataset
from timetiles.schemas.common import PaginatedResponse
from timetiles.schemas.dataset import DatasetCreate, DatasetRead, DatasetUpdate, SchemaVersionRead
from timetiles.services.catalog_service import CatalogService
from timetiles.services.dataset_service import DatasetService
from timetiles.services.schema_service import SchemaService

router = APIRouter()

DATASET_UUID = Path(
    ...,
    description="The unique identifier of the dataset",
    examples=["440e8400-e29b-41d4-a716-446655440000"],
)


async def _to_read(service: DatasetService, dataset: Dataset) -> DatasetRead:
    read = DatasetRead.model_validate(dataset)
    read.catalog_uuid = await service.get_catalog_uuid(dataset)
    return read


@router.get("", response_model=PaginatedResponse[DatasetRead])
async def list_datasets(
    db: DbSession,
    pagination: Pagination,
    catalog: UUID | None = Query(
        default=None,
        description="Only datasets of this catalog",
    ),
    search: str | None = Query(
        default=None,
        description="Search in dataset name or description",
        examples=["earthquakes"],
    ),
):
    """List all datasets with pagination and optional filters."""
    catalog_id = None
    if catalog is not None:
        catalog_id = (await get_or_404(CatalogService(db), catalog, "Catalog")).id

    service = DatasetService(db)
    items, total = await service.get_list_filtered(
        pagination=pagination,
        catalog_id=catalog_id,
        search=search,
    )
    return PaginatedResponse[DatasetRead](
        items=[await _to_read(service, item) for item in items],
        total=total,
        page=pagination.page,
        page_size=pagination.page_size,
    )


@router.post("", response_model=DatasetRead, status_code=status.HTTP_201_CREATED)
async def create_dataset(db: DbSession, data: DatasetCreate, actor: CurrentActor):
    """Create a new dataset."""
    service = DatasetService(db)
    dataset = await service.create_with_validation(data, actor)
    return await _to_read(service, dataset)


@router.get("/{uuid}", response_model=DatasetRead)
async def get_dataset(db: DbSession, uuid: UUID = DATASET_UUID):
    """Get a single dataset by UUID."""
    service = DatasetService(db)
    dataset = await get_or_404(service, uuid, "Dataset")
    return await _to_read(service, dataset)


@router.patch("/{uuid}", response_model=DatasetRead)
async def update_dataset(db: DbSession, data: DatasetUpdate, uuid: UUID = DATASET_UUID):
    """Update a dataset."""
    service = DatasetService(db)
    dataset = await get_or_404(service, uuid, "Dataset")
    updated = await service.update_with_validation(dataset, data)
    return await _to_read(service, updated)


@router.delete("/{uuid}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_dataset(db: DbSession, actor: CurrentActor, uuid: UUID = DATASET_UUID):
    """Soft delete a dataset. Its events drop out of all queries."""
    service = DatasetService(db)
    dataset = await get_or_404(service, uuid, "Dataset")
    await service.delete(dataset, actor)
    return None


@router.get("/{uuid}/schema-versions", response_model=PaginatedResponse[SchemaVersionRead])
async def list_schema_versions(db: DbSession, pagination: Pagination, uuid: UUID = DATASET_UUID):
    """Schema versions of a dataset, newest first."""
    dataset = await get_or_404(DatasetService(db), uuid, "Dataset")
    items, total = await SchemaService(db).list_versions(dataset.id, pagination)
    return PaginatedResponse[SchemaVersionRead](
        items=[SchemaVersionRead.model_validate(item) for item in items],
        total=total,
        page=pagination.page,
        page_size=pagination.page_size,
    )
