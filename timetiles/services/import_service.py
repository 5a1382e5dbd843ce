"""
Queueing of import files.

An upload (or a scheduled fetch) is parsed once up front to learn its
sheets, stored on disk, and turned into one ImportJob per non-empty sheet.
The jobs then run stage by stage in the worker.
"""

from __future__ import annotations

import logging
import math
import uuid as uuid_lib
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.core.config import ImportSettings, get_settings
from timetiles.models.catalog import Catalog
from timetiles.models.dataset import Dataset
from timetiles.models.import_file import ImportFile
from timetiles.models.import_job import ImportJob
from timetiles.schemas.common import Actor, PaginationParams
from timetiles.schemas.enums import DatasetMappingMode, ImportFileStatus, QuotaType
from timetiles.schemas.jsonb_types import DatasetMapping
from timetiles.services.audit_service import AuditLogService
from timetiles.services.base import BaseService
from timetiles.services.dataset_service import DatasetService
from timetiles.services.exceptions import NotFoundError, ValidationError
from timetiles.services.file_parsing import ParsedSheet, detect_file_type, parse_file
from timetiles.services.quota_service import QuotaService

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


class ImportService(BaseService[ImportFile, ImportFile, ImportFile]):
    """Creates import files and their per-sheet jobs."""

    entity_name = "ImportFile"

    def __init__(self, db: AsyncSession, settings: ImportSettings | None = None):
        super().__init__(db, ImportFile)
        self.settings = settings or get_settings().imports
        self.quotas = QuotaService(db)
        self.datasets = DatasetService(db)
        self.audit = AuditLogService(db)

    async def get_list_filtered(
        self,
        pagination: PaginationParams,
        status: ImportFileStatus | None = None,
        catalog_id: int | None = None,
    ) -> tuple[list[ImportFile], int]:
        return await self.get_list(pagination, filters={"status": status, "catalog_id": catalog_id})

    async def get_jobs(self, import_file: ImportFile) -> list[ImportJob]:
        result = await self.db.execute(
            select(ImportJob)
            .where(ImportJob.import_file_id == import_file.id, ImportJob.deleted_at.is_(None))
            .order_by(ImportJob.sheet_index)
        )
        return list(result.scalars().all())

    def _store(self, content: bytes, file_type: str) -> tuple[str, str]:
        upload_dir = Path(self.settings.upload_dir)
        upload_dir.mkdir(parents=True, exist_ok=True)
        file_name = f"{uuid_lib.uuid4().hex}.{file_type}"
        path = upload_dir / file_name
        path.write_bytes(content)
        return file_name, str(path)

    async def _resolve_dataset(self, dataset_uuid: str) -> Dataset:
        try:
            parsed = uuid_lib.UUID(dataset_uuid)
        except ValueError as e:
            raise ValidationError(f"Invalid dataset id '{dataset_uuid}'", field="dataset_mapping") from e
        dataset = await self.datasets.get_by_uuid(parsed)
        if dataset is None:
            raise NotFoundError("Dataset", dataset_uuid)
        return dataset

    async def _assign_datasets(
        self,
        sheets: list[ParsedSheet],
        catalog: Catalog,
        dataset: Dataset | None,
        mapping: DatasetMapping,
        file_label: str,
        actor: Actor,
    ) -> list[tuple[ParsedSheet, Dataset]]:
        """
        Pair each sheet with its target dataset.

        - an explicit dataset (or single mode) takes every sheet
        - multiple mode follows the sheet mappings; unmapped sheets are skipped
        - auto mode finds or creates a dataset named after the file (one
          sheet) or after each sheet
        """
        if dataset is None and mapping.mode == DatasetMappingMode.SINGLE:
            target = next((m.dataset_uuid for m in mapping.sheet_mappings if m.dataset_uuid), None)
            if target is None:
                raise ValidationError("Single dataset mapping requires a dataset", field="dataset_mapping")
            dataset = await self._resolve_dataset(target)

        if dataset is not None:
            if dataset.catalog_id != catalog.id:
                raise ValidationError("Dataset belongs to a different catalog", field="dataset")
            return [(sheet, dataset) for sheet in sheets]

        assigned: list[tuple[ParsedSheet, Dataset]] = []
        if mapping.mode == DatasetMappingMode.MULTIPLE:
            by_index = {m.sheet_index: m for m in mapping.sheet_mappings}
            for sheet in sheets:
                sheet_mapping = by_index.get(sheet.index)
                if sheet_mapping is None:
                    logger.info(f"No mapping for sheet '{sheet.name}', skipping")
                    continue
                if sheet_mapping.dataset_uuid:
                    target = await self._resolve_dataset(sheet_mapping.dataset_uuid)
                else:
                    name = sheet_mapping.new_dataset_name or sheet.name
                    target = await self.datasets.find_or_create(catalog.id, name, actor)
                assigned.append((sheet, target))
            return assigned

        for sheet in sheets:
            name = file_label if len(sheets) == 1 else sheet.name
            assigned.append((sheet, await self.datasets.find_or_create(catalog.id, name, actor)))
        return assigned

    async def queue_file(
        self,
        content: bytes,
        filename: str | None,
        mime_type: str | None,
        catalog: Catalog,
        actor: Actor,
        dataset: Dataset | None = None,
        mapping: DatasetMapping | None = None,
        scheduled_import_id: int | None = None,
        source_url: str | None = None,
        count_upload: bool = True,
    ) -> ImportFile:
        """
        Validate quotas, parse, store and create one job per non-empty sheet.

        Quota violations raise QuotaExceededError before anything is written.
        """
        if not content:
            raise ValidationError("File is empty", field="file")

        await self.quotas.check(actor, QuotaType.FILE_SIZE_MB, max(1, math.ceil(len(content) / BYTES_PER_MB)))
        if count_upload:
            await self.quotas.check(actor, QuotaType.FILE_UPLOADS_PER_DAY)

        file_type = detect_file_type(content, mime_type, filename)
        if file_type is None:
            raise ValidationError("Could not determine file type", field="file")
        sheets = [sheet for sheet in parse_file(content, file_type) if sheet.rows]
        if not sheets:
            raise ValidationError("No rows found in file", field="file")

        for sheet in sheets:
            await self.quotas.check(actor, QuotaType.EVENTS_PER_IMPORT, len(sheet.rows))

        file_label = Path(filename).stem if filename else "Imported Data"
        assigned = await self._assign_datasets(
            sheets, catalog, dataset, mapping or DatasetMapping(), file_label, actor
        )
        if not assigned:
            raise ValidationError("No sheet is mapped to a dataset", field="dataset_mapping")
        # Counted with the file in one commit below
        await self.quotas.consume(actor, QuotaType.IMPORT_JOBS_PER_DAY, len(assigned))
        if count_upload:
            await self.quotas.increment(actor, QuotaType.FILE_UPLOADS_PER_DAY)

        file_name, storage_path = self._store(content, file_type)
        import_file = ImportFile(
            file_name=file_name,
            original_name=filename,
            storage_path=storage_path,
            mime_type=mime_type,
            file_type=file_type,
            file_size=len(content),
            status=ImportFileStatus.PROCESSING,
            catalog_id=catalog.id,
            scheduled_import_id=scheduled_import_id,
            source_url=source_url,
            sheets=[sheet.summary() for sheet in sheets],
            jobs_total=len(assigned),
            created_by=actor.id,
            trust_level=actor.trust_level,
        )
        self.db.add(import_file)
        await self.db.flush()

        for sheet, target in assigned:
            self.db.add(
                ImportJob(
                    import_file_id=import_file.id,
                    dataset_id=target.id,
                    sheet_index=sheet.index,
                )
            )

        await self.audit.log_action(
            action="import_file.create",
            entity_type="import_file",
            entity_uuid=import_file.uuid,
            entity_id=import_file.id,
            actor=actor.id,
            new_value={
                "original_name": filename,
                "file_type": file_type,
                "sheets": len(sheets),
                "jobs": len(assigned),
            },
            context={"source_url": source_url} if source_url else None,
            commit=False,
        )
        await self.db.commit()
        await self.db.refresh(import_file)

        logger.info(
            f"Queued import file {import_file.id} ({file_type}, {len(sheets)} sheet(s)) "
            f"as {len(assigned)} job(s) for actor '{actor.id}'"
        )
        return import_file


def get_import_service(db: AsyncSession) -> ImportService:
    """Factory function for ImportService."""
    return ImportService(db)
