"""
Schema version lineage and the per-dataset schema write lock.

Versions are immutable once written; the current version is the one with
the highest version_number. Creating a version requires holding the
dataset's lock, which is taken with a single conditional UPDATE so two
workers can never both win it.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.core.config import ImportSettings, get_settings
from timetiles.models.base import utc_now
from timetiles.models.dataset import Dataset
from timetiles.models.schema_version import SchemaVersion
from timetiles.schemas.common import PaginationParams
from timetiles.services.exceptions import SchemaLockBusyError
from timetiles.services.schema_builder import SchemaDiff

logger = logging.getLogger(__name__)


class SchemaService:
    """Reads and writes a dataset's schema lineage."""

    def __init__(self, db: AsyncSession, settings: ImportSettings | None = None):
        self.db = db
        self.settings = settings or get_settings().imports

    async def get_current(self, dataset_id: int) -> SchemaVersion | None:
        stmt = (
            select(SchemaVersion)
            .where(
                SchemaVersion.dataset_id == dataset_id,
                SchemaVersion.deleted_at.is_(None),
            )
            .order_by(SchemaVersion.version_number.desc())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_versions(
        self,
        dataset_id: int,
        pagination: PaginationParams,
    ) -> tuple[list[SchemaVersion], int]:
        base = select(SchemaVersion).where(
            SchemaVersion.dataset_id == dataset_id,
            SchemaVersion.deleted_at.is_(None),
        )
        total = (await self.db.execute(select(func.count()).select_from(base.subquery()))).scalar() or 0
        stmt = (
            base.order_by(SchemaVersion.version_number.desc())
            .offset(pagination.offset)
            .limit(pagination.page_size)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    async def create_version(
        self,
        dataset_id: int,
        schema: dict[str, Any],
        field_metadata: dict[str, Any],
        diff: SchemaDiff,
        import_job_id: int | None,
        auto_approved: bool,
        approved_by: str | None = None,
    ) -> SchemaVersion:
        """
        Append a new version. Caller must hold the dataset's schema lock.

        The batch schema replaces the previous one; field counts record the
        before/after size for the audit trail.
        """
        current = await self.get_current(dataset_id)
        before = len(current.schema_definition.get("properties", {})) if current else 0

        version = SchemaVersion(
            dataset_id=dataset_id,
            version_number=(current.version_number + 1) if current else 1,
            schema_definition=schema,
            field_metadata=field_metadata,
            changes=diff.to_dict(),
            field_count_before=before,
            field_count_after=len(schema.get("properties", {})),
            auto_approved=auto_approved,
            approved_by=approved_by,
            approved_at=utc_now() if approved_by or auto_approved else None,
            import_job_id=import_job_id,
        )
        self.db.add(version)
        await self.db.flush()

        logger.info(
            f"Created schema version {version.version_number} for dataset {dataset_id} "
            f"(job {import_job_id}, auto_approved={auto_approved})"
        )
        return version

    # =========================================================================
    # Lock
    # =========================================================================

    async def acquire_lock(self, dataset_id: int, job_id: int) -> None:
        """
        Take the dataset's schema lock for `job_id`.

        Succeeds when the lock is free, already ours, or its lease expired.
        Raises SchemaLockBusyError otherwise.
        """
        now = utc_now()
        expired_before = now - timedelta(seconds=self.settings.schema_lock_timeout_seconds)
        stmt = (
            update(Dataset)
            .where(
                Dataset.id == dataset_id,
                or_(
                    Dataset.schema_lock_job_id.is_(None),
                    Dataset.schema_lock_job_id == job_id,
                    Dataset.schema_lock_acquired_at < expired_before,
                ),
            )
            .values(schema_lock_job_id=job_id, schema_lock_acquired_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            await self.db.rollback()
            holder = await self.db.execute(
                select(Dataset.schema_lock_job_id).where(Dataset.id == dataset_id)
            )
            raise SchemaLockBusyError(dataset_id, holder.scalar_one_or_none())
        await self.db.commit()
        logger.debug(f"Job {job_id} acquired schema lock on dataset {dataset_id}")

    async def release_lock(self, dataset_id: int, job_id: int) -> bool:
        """Release the lock if `job_id` holds it. Returns whether it did."""
        stmt = (
            update(Dataset)
            .where(Dataset.id == dataset_id, Dataset.schema_lock_job_id == job_id)
            .values(schema_lock_job_id=None, schema_lock_acquired_at=None)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        released = result.rowcount > 0
        if released:
            logger.debug(f"Job {job_id} released schema lock on dataset {dataset_id}")
        return released


def get_schema_service(db: AsyncSession) -> SchemaService:
    """Factory function for SchemaService."""
    return SchemaService(db)
