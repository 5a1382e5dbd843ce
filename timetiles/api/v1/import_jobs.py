"""
Import job API endpoints.

- GET /import-jobs - List jobs (paginated, filter by stage / dataset)
- GET /import-jobs/{uuid} - Full job state
- POST /import-jobs/{uuid}/approve - Release the approval gate
- POST /import-jobs/{uuid}/reject - Reject schema changes (job fails)
- POST /import-jobs/{uuid}/cancel - Cancel a running job
- POST /import-jobs/{uuid}/requeue - Resume a failed job
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Path, Query

from timetiles.api.deps import CurrentActor, DbSession, Pagination
from timetiles.api.utils import get_or_404
from timetiles.schemas.common import PaginatedResponse
from timetiles.schemas.enums import ImportStage
from timetiles.schemas.imports import ApproveRequest, ImportJobRead, ImportJobSummary, RejectRequest
from timetiles.services.dataset_service import DatasetService
from timetiles.services.import_job_service import ImportJobService

router = APIRouter()

JOB_UUID = Path(
    ...,
    description="The unique identifier of the import job",
    examples=["660e8400-e29b-41d4-a716-446655440000"],
)


@router.get("", response_model=PaginatedResponse[ImportJobSummary])
async def list_import_jobs(
    db: DbSession,
    pagination: Pagination,
    stage: ImportStage | None = Query(
        default=None,
        description="Filter by current stage",
        examples=["await-approval"],
    ),
    dataset: UUID | None = Query(default=None, description="Only jobs targeting this dataset"),
):
    """List import jobs, newest first."""
    dataset_id = None
    if dataset is not None:
        dataset_id = (await get_or_404(DatasetService(db), dataset, "Dataset")).id

    service = ImportJobService(db)
    items, total = await service.get_list_filtered(pagination, stage=stage, dataset_id=dataset_id)
    return PaginatedResponse[ImportJobSummary](
        items=[ImportJobSummary.model_validate(item) for item in items],
        total=total,
        page=pagination.page,
        page_size=pagination.page_size,
    )


@router.get("/{uuid}", response_model=ImportJobRead)
async def get_import_job(db: DbSession, uuid: UUID = JOB_UUID):
    """Get a job with progress, duplicates, schema diff and error log."""
    job = await get_or_404(ImportJobService(db), uuid, "ImportJob")
    return ImportJobRead.model_validate(job)


@router.post("/{uuid}/approve", response_model=ImportJobRead)
async def approve_import_job(
    db: DbSession,
    actor: CurrentActor,
    data: ApproveRequest | None = None,
    uuid: UUID = JOB_UUID,
):
    """Approve the schema changes of a job waiting at the approval gate."""
    service = ImportJobService(db)
    job = await get_or_404(service, uuid, "ImportJob")
    job = await service.approve(job, actor, data.transforms if data else None)
    return ImportJobRead.model_validate(job)


@router.post("/{uuid}/reject", response_model=ImportJobRead)
async def reject_import_job(db: DbSession, actor: CurrentActor, data: RejectRequest, uuid: UUID = JOB_UUID):
    """Reject the schema changes; the job fails with the reason recorded."""
    service = ImportJobService(db)
    job = await get_or_404(service, uuid, "ImportJob")
    job = await service.reject(job, actor, data.reason)
    return ImportJobRead.model_validate(job)


@router.post("/{uuid}/cancel", response_model=ImportJobRead)
async def cancel_import_job(db: DbSession, actor: CurrentActor, uuid: UUID = JOB_UUID):
    """Cancel a job. Any schema lock it holds is released."""
    service = ImportJobService(db)
    job = await get_or_404(service, uuid, "ImportJob")
    job = await service.cancel(job, actor)
    return ImportJobRead.model_validate(job)


@router.post("/{uuid}/requeue", response_model=ImportJobRead)
async def requeue_import_job(db: DbSession, actor: CurrentActor, uuid: UUID = JOB_UUID):
    """Resume a failed job after its last successful stage."""
    service = ImportJobService(db)
    job = await get_or_404(service, uuid, "ImportJob")
    job = await service.requeue(job, actor)
    return ImportJobRead.model_validate(job)
