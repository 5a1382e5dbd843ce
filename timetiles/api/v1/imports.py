"""
Import file API endpoints.

- POST /imports - Upload a file (multipart); one job per non-empty sheet
- GET /imports - List import files (paginated)
- GET /imports/{uuid} - Get import file
- GET /imports/{uuid}/jobs - Jobs created for the file
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, File, Form, Path, Query, UploadFile, status
from pydantic import ValidationError as PydanticValidationError

from timetiles.api.deps import CurrentActor, DbSession, Pagination
from timetiles.api.utils import get_or_404
from timetiles.schemas.common import PaginatedResponse
from timetiles.schemas.enums import ImportFileStatus
from timetiles.schemas.imports import ImportFileRead, ImportJobSummary
from timetiles.schemas.jsonb_types import DatasetMapping
from timetiles.services.catalog_service import CatalogService
from timetiles.services.dataset_service import DatasetService
from timetiles.services.exceptions import ValidationError
from timetiles.services.import_service import ImportService

router = APIRouter()

IMPORT_UUID = Path(
    ...,
    description="The unique identifier of the import file",
    examples=["550e8400-e29b-41d4-a716-446655440000"],
)


@router.post("", response_model=ImportFileRead, status_code=status.HTTP_201_CREATED)
async def upload_import(
    db: DbSession,
    actor: CurrentActor,
    file: UploadFile = File(..., description="CSV, Excel (.xlsx) or JSON file"),
    catalog: UUID = Form(..., description="Catalog receiving the events"),
    dataset: UUID | None = Form(default=None, description="Target dataset for every sheet"),
    dataset_mapping: str | None = Form(
        default=None,
        description='Sheet mapping as JSON, e.g. {"mode": "multiple", "sheet_mappings": [...]}',
    ),
):
    """Upload a file and queue it for import."""
    target_catalog = await get_or_404(CatalogService(db), catalog, "Catalog")
    target_dataset = await get_or_404(DatasetService(db), dataset, "Dataset") if dataset else None

    mapping = None
    if dataset_mapping:
        try:
            mapping = DatasetMapping.model_validate_json(dataset_mapping)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid dataset_mapping: {e}", field="dataset_mapping") from e

    content = await file.read()
    service = ImportService(db)
    import_file = await service.queue_file(
        content,
        file.filename,
        file.content_type,
        target_catalog,
        actor,
        dataset=target_dataset,
        mapping=mapping,
    )
    return ImportFileRead.model_validate(import_file)


@router.get("", response_model=PaginatedResponse[ImportFileRead])
async def list_imports(
    db: DbSession,
    pagination: Pagination,
    status_filter: ImportFileStatus | None = Query(
        default=None,
        alias="status",
        description="Filter by processing status",
        examples=["processing"],
    ),
    catalog: UUID | None = Query(default=None, description="Only files of this catalog"),
):
    """List import files, newest first."""
    catalog_id = None
    if catalog is not None:
        catalog_id = (await get_or_404(CatalogService(db), catalog, "Catalog")).id

    service = ImportService(db)
    items, total = await service.get_list_filtered(pagination, status=status_filter, catalog_id=catalog_id)
    return PaginatedResponse[ImportFileRead](
        items=[ImportFileRead.model_validate(item) for item in items],
        total=total,
        page=pagination.page,
        page_size=pagination.page_size,
    )


@router.get("/{uuid}", response_model=ImportFileRead)
async def get_import(db: DbSession, uuid: UUID = IMPORT_UUID):
    """Get a single import file by UUID."""
    import_file = await get_or_404(ImportService(db), uuid, "ImportFile")
    return ImportFileRead.model_validate(import_file)


@router.get("/{uuid}/jobs", response_model=list[ImportJobSummary])
async def list_import_file_jobs(db: DbSession, uuid: UUID = IMPORT_UUID):
    """Jobs of an import file, by sheet."""
    service = ImportService(db)
    import_file = await get_or_404(service, uuid, "ImportFile")
    return [ImportJobSummary.model_validate(job) for job in await service.get_jobs(import_file)]
