"""
Scheduled import API endpoints.

- GET /scheduled-imports - List schedules (paginated)
- POST /scheduled-imports - Create schedule
- GET /scheduled-imports/{uuid} - Get schedule
- PATCH /scheduled-imports/{uuid} - Update schedule
- DELETE /scheduled-imports/{uuid} - Soft delete schedule
- POST /scheduled-imports/{uuid}/trigger - Run now
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from timetiles.api.deps import CurrentActor, DbSession, Pagination
from timetiles.api.utils import get_or_404
from timetiles.schemas.common import PaginatedResponse
from timetiles.schemas.enums import TriggerType
from timetiles.schemas.scheduled_import import (
    ScheduledImportCreate,
    ScheduledImportRead,
    ScheduledImportUpdate,
    TriggerResponse,
)
from timetiles.services.catalog_service import CatalogService
from timetiles.services.scheduler_service import ScheduledImportService, TriggerResult

router = APIRouter()

SCHEDULE_UUID = Path(
    ...,
    description="The unique identifier of the scheduled import",
    examples=["770e8400-e29b-41d4-a716-446655440000"],
)


def trigger_response(result: TriggerResult) -> TriggerResponse:
    return TriggerResponse(
        status=result.status,
        message=result.message,
        import_file_uuid=result.import_file.uuid if result.import_file else None,
    )


@router.get("", response_model=PaginatedResponse[ScheduledImportRead])
async def list_scheduled_imports(
    db: DbSession,
    pagination: Pagination,
    catalog: UUID | None = Query(default=None, description="Only schedules of this catalog"),
    enabled: bool | None = Query(default=None, description="Filter by enabled flag"),
):
    """List scheduled imports."""
    catalog_id = None
    if catalog is not None:
        catalog_id = (await get_or_404(CatalogService(db), catalog, "Catalog")).id

    service = ScheduledImportService(db)
    items, total = await service.get_list_filtered(pagination, catalog_id=catalog_id, enabled=enabled)
    return PaginatedResponse[ScheduledImportRead](
        items=[ScheduledImportRead.model_validate(item) for item in items],
        total=total,
        page=pagination.page,
        page_size=pagination.page_size,
    )


@router.post("", response_model=ScheduledImportRead, status_code=status.HTTP_201_CREATED)
async def create_scheduled_import(db: DbSession, data: ScheduledImportCreate, actor: CurrentActor):
    """Create a scheduled import."""
    schedule = await ScheduledImportService(db).create_with_validation(data, actor)
    return ScheduledImportRead.model_validate(schedule)


@router.get("/{uuid}", response_model=ScheduledImportRead)
async def get_scheduled_import(db: DbSession, uuid: UUID = SCHEDULE_UUID):
    """Get a scheduled import with its history and statistics."""
    schedule = await get_or_404(ScheduledImportService(db), uuid, "ScheduledImport")
    return ScheduledImportRead.model_validate(schedule)


@router.patch("/{uuid}", response_model=ScheduledImportRead)
async def update_scheduled_import(
    db: DbSession,
    data: ScheduledImportUpdate,
    actor: CurrentActor,
    uuid: UUID = SCHEDULE_UUID,
):
    """Update a scheduled import."""
    service = ScheduledImportService(db)
    schedule = await get_or_404(service, uuid, "ScheduledImport")
    updated = await service.update_with_validation(schedule, data, actor)
    return ScheduledImportRead.model_validate(updated)


@router.delete("/{uuid}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_scheduled_import(db: DbSession, actor: CurrentActor, uuid: UUID = SCHEDULE_UUID):
    """Soft delete a scheduled import."""
    service = ScheduledImportService(db)
    schedule = await get_or_404(service, uuid, "ScheduledImport")
    await service.delete(schedule, actor)
    return None


@router.post("/{uuid}/trigger", response_model=TriggerResponse)
async def trigger_scheduled_import(db: DbSession, actor: CurrentActor, uuid: UUID = SCHEDULE_UUID):
    """Fetch the source now and queue it for import."""
    service = ScheduledImportService(db)
    schedule = await get_or_404(service, uuid, "ScheduledImport")
    result = await service.trigger(schedule, TriggerType.MANUAL, actor)
    return trigger_response(result)
