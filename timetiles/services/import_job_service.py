"""
Import job lifecycle.

Owns every write to ImportJob.stage: stage start/finish bookkeeping, retry
with exponential backoff, the approval gate, operator cancel/requeue, and
the worker lease used to claim due jobs.

Retry state lives on the job row (retry_attempts, next_retry_at) so any
worker can pick up a due retry.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.core.config import ImportSettings, get_settings
from timetiles.models.base import ensure_utc, utc_now
from timetiles.models.dataset import Dataset
from timetiles.models.import_file import ImportFile
from timetiles.models.import_job import ImportJob
from timetiles.schemas.common import Actor, PaginationParams
from timetiles.schemas.enums import ImportFileStatus, ImportStage, StageOutcome, StageStatus
from timetiles.schemas.jsonb_types import RowError, StageProgress, TransformRule
from timetiles.services.audit_service import AuditLogService
from timetiles.services.base import BaseService
from timetiles.services.exceptions import InvalidStateTransitionError
from timetiles.services.schema_service import SchemaService
from timetiles.services.stage_machine import (
    STAGE_ORDER,
    STAGE_WEIGHTS,
    TERMINAL_STAGES,
    completed_weight,
    is_work_stage,
    next_stage,
)

logger = logging.getLogger(__name__)


def compute_backoff(
    attempt: int,
    base_delay: float,
    multiplier: float,
    max_delay: float | None = None,
) -> float:
    """Delay in seconds before retry number `attempt` (1-based)."""
    delay = base_delay * (multiplier ** max(attempt - 1, 0))
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


class ImportJobService(BaseService[ImportJob, Any, Any]):
    """State transitions and bookkeeping for import jobs."""

    entity_name = "ImportJob"

    def __init__(self, db: AsyncSession, settings: ImportSettings | None = None):
        super().__init__(db, ImportJob)
        self.settings = settings or get_settings().imports
        self.audit = AuditLogService(db)

    async def get_list_filtered(
        self,
        pagination: PaginationParams,
        stage: ImportStage | None = None,
        dataset_id: int | None = None,
        import_file_id: int | None = None,
    ) -> tuple[list[ImportJob], int]:
        return await self.get_list(
            pagination,
            filters={"stage": stage, "dataset_id": dataset_id, "import_file_id": import_file_id},
        )

    # =========================================================================
    # Progress bookkeeping
    # =========================================================================

    def _refresh_percentage(self, job: ImportJob) -> None:
        progress = job.get_progress()
        if job.stage == ImportStage.COMPLETED:
            progress.percentage = 100
            progress.estimated_completion_at = None
            job.set_progress(progress)
            return

        percentage = float(completed_weight(job.stage))
        current = progress.stages.get(job.stage)
        if current and current.total and ImportStage(job.stage) in STAGE_WEIGHTS:
            fraction = min(current.processed / current.total, 1.0)
            percentage += STAGE_WEIGHTS[ImportStage(job.stage)] * 100 / sum(STAGE_WEIGHTS.values()) * fraction
        progress.percentage = int(percentage)

        # Extrapolate from elapsed time since the first stage started
        first = progress.stages.get(STAGE_ORDER[0])
        started = ensure_utc(first.started_at) if first else None
        if started and 0 < percentage < 100:
            elapsed = (utc_now() - started).total_seconds()
            progress.estimated_completion_at = started + timedelta(seconds=elapsed * 100 / percentage)
        job.set_progress(progress)

    def start_stage(self, job: ImportJob) -> None:
        """Mark the current stage in progress (keeps the original start time on retries)."""
        progress = job.get_progress()
        stage_progress = progress.stages.get(job.stage) or StageProgress()
        stage_progress.status = StageStatus.IN_PROGRESS
        stage_progress.started_at = stage_progress.started_at or utc_now()
        stage_progress.error = None
        progress.stages[job.stage] = stage_progress
        job.set_progress(progress)
        self._refresh_percentage(job)

    def update_stage_progress(
        self,
        job: ImportJob,
        processed: int,
        total: int,
        checkpoint: int | None = None,
    ) -> None:
        progress = job.get_progress()
        stage_progress = progress.stages.get(job.stage) or StageProgress(status=StageStatus.IN_PROGRESS)
        stage_progress.processed = processed
        stage_progress.total = total
        if checkpoint is not None:
            stage_progress.checkpoint = checkpoint
        progress.stages[job.stage] = stage_progress
        job.set_progress(progress)
        self._refresh_percentage(job)

    def get_checkpoint(self, job: ImportJob) -> int | None:
        stage_progress = job.get_progress().stages.get(job.stage)
        return stage_progress.checkpoint if stage_progress else None

    def _finish_stage(self, job: ImportJob, status: StageStatus, error: str | None = None) -> None:
        progress = job.get_progress()
        stage_progress = progress.stages.get(job.stage) or StageProgress()
        stage_progress.status = status
        stage_progress.started_at = stage_progress.started_at or utc_now()
        stage_progress.completed_at = utc_now()
        stage_progress.error = error
        progress.stages[job.stage] = stage_progress
        job.set_progress(progress)

    def add_row_errors(self, job: ImportJob, errors: list[RowError]) -> None:
        if errors:
            job.add_errors(errors)

    # =========================================================================
    # Transitions
    # =========================================================================

    async def advance(self, job: ImportJob, outcome: StageOutcome) -> ImportStage:
        """
        Apply `outcome` to the job's current stage and persist.

        Resets retry state; the next stage starts with a fresh retry budget.
        """
        previous = ImportStage(job.stage)
        target = next_stage(previous, outcome)

        if is_work_stage(previous):
            self._finish_stage(job, StageStatus.COMPLETED)
            # A version sent back to the gate was never written
            if (previous, outcome) != (ImportStage.CREATE_SCHEMA_VERSION, StageOutcome.NEEDS_APPROVAL):
                job.last_successful_stage = previous
        elif previous == ImportStage.AWAIT_APPROVAL:
            self._finish_stage(job, StageStatus.COMPLETED)

        job.stage = target
        job.retry_attempts = 0
        job.next_retry_at = None
        job.last_retry_error = None

        if target == ImportStage.AWAIT_APPROVAL:
            progress = job.get_progress()
            progress.stages[target] = StageProgress(status=StageStatus.IN_PROGRESS, started_at=utc_now())
            job.set_progress(progress)
        if target in TERMINAL_STAGES:
            job.completed_at = utc_now()

        self._refresh_percentage(job)
        self.db.add(job)
        await self.db.commit()
        if target in TERMINAL_STAGES:
            await self._sync_file_status(job.import_file_id)

        logger.info(f"Import job {job.id}: {previous} -> {target} ({outcome})")
        return target

    async def fail(self, job: ImportJob, error: str, row_errors: list[RowError] | None = None) -> None:
        """Move the job to failed, keeping last_successful_stage and partial results."""
        if job.is_terminal:
            raise InvalidStateTransitionError("ImportJob", job.stage, ImportStage.FAILED)
        failed_stage = job.stage
        self._finish_stage(job, StageStatus.FAILED, error)
        job.add_errors([*(row_errors or []), RowError(error=error, stage=failed_stage)])
        job.error_message = error
        job.stage = ImportStage.FAILED
        job.next_retry_at = None
        job.completed_at = utc_now()
        job.claimed_by = None
        job.claimed_until = None
        self.db.add(job)
        await self.db.commit()
        await SchemaService(self.db, self.settings).release_lock(job.dataset_id, job.id)
        await self._sync_file_status(job.import_file_id)
        logger.warning(f"Import job {job.id} failed in {failed_stage}: {error}")

    async def record_transient_failure(self, job: ImportJob, error: str) -> bool:
        """
        Schedule a retry of the current stage, or fail once retries are exhausted.

        Returns True when a retry was scheduled.
        """
        attempt = (job.retry_attempts or 0) + 1
        if attempt > self.settings.max_retries:
            await self.fail(job, f"Max retries ({self.settings.max_retries}) exceeded: {error}")
            return False

        delay = compute_backoff(
            attempt,
            self.settings.retry_base_delay_seconds,
            self.settings.retry_backoff_multiplier,
            self.settings.retry_max_delay_seconds,
        )
        job.retry_attempts = attempt
        job.next_retry_at = utc_now() + timedelta(seconds=delay)
        job.last_retry_error = error
        progress = job.get_progress()
        stage_progress = progress.stages.get(job.stage)
        if stage_progress:
            stage_progress.error = error
            job.set_progress(progress)
        self.db.add(job)
        await self.db.commit()
        logger.warning(
            f"Import job {job.id} stage {job.stage} failed (attempt {attempt}/{self.settings.max_retries}), "
            f"retrying in {delay:.0f}s: {error}"
        )
        return True

    async def defer(self, job: ImportJob, seconds: float, reason: str) -> None:
        """Push the job back without consuming a retry."""
        job.next_retry_at = utc_now() + timedelta(seconds=seconds)
        self.db.add(job)
        await self.db.commit()
        logger.info(f"Import job {job.id} deferred {seconds:.0f}s: {reason}")

    # =========================================================================
    # Operator actions
    # =========================================================================

    async def approve(
        self,
        job: ImportJob,
        actor: Actor,
        transforms: list[TransformRule] | None = None,
    ) -> ImportJob:
        """Release the approval gate, optionally with operator-edited transforms."""
        if job.stage != ImportStage.AWAIT_APPROVAL:
            raise InvalidStateTransitionError("ImportJob", job.stage, StageOutcome.APPROVED)

        if transforms:
            dataset = await self.db.get(Dataset, job.dataset_id)
            if dataset is not None and dataset.get_schema_config().allow_transformations:
                job.transforms = [t.model_dump(mode="json") for t in transforms]
                # Later imports into this dataset get the same treatment
                existing = {(t.type, t.from_field, t.to_field) for t in dataset.get_transforms()}
                merged = dataset.get_transforms() + [
                    t for t in transforms if (t.type, t.from_field, t.to_field) not in existing
                ]
                dataset.set_transforms(merged)
                self.db.add(dataset)
            else:
                logger.info(f"Dataset {job.dataset_id} does not allow transformations, ignoring transforms")

        job.approved_by = actor.id
        job.approved_at = utc_now()
        await self.audit.log_action(
            action="import_job.approve",
            entity_type="import_job",
            entity_id=job.id,
            entity_uuid=job.uuid,
            actor=actor.id,
            new_value={"transforms": job.transforms},
            context={"schema_validation": job.schema_validation},
            commit=False,
        )
        await self.advance(job, StageOutcome.APPROVED)
        await self.db.refresh(job)
        return job

    async def reject(self, job: ImportJob, actor: Actor, reason: str) -> ImportJob:
        """Close the approval gate; conflict reasons stay on schema_validation."""
        if job.stage != ImportStage.AWAIT_APPROVAL:
            raise InvalidStateTransitionError("ImportJob", job.stage, StageOutcome.REJECTED)

        breaking = job.get_schema_validation().breaking_reasons
        job.rejected_by = actor.id
        job.rejection_reason = reason
        job.error_message = f"Schema changes rejected: {reason}"
        job.add_errors([RowError(error=job.error_message, stage=ImportStage.AWAIT_APPROVAL)])
        await self.audit.log_action(
            action="import_job.reject",
            entity_type="import_job",
            entity_id=job.id,
            entity_uuid=job.uuid,
            actor=actor.id,
            new_value={"reason": reason, "breaking_reasons": breaking},
            commit=False,
        )
        await self.advance(job, StageOutcome.REJECTED)
        await self.db.refresh(job)
        return job

    async def cancel(self, job: ImportJob, actor: Actor) -> ImportJob:
        """Operator cancel: straight to failed, schema lock released."""
        if job.is_terminal:
            raise InvalidStateTransitionError("ImportJob", job.stage, "cancel")
        await self.audit.log_action(
            action="import_job.cancel",
            entity_type="import_job",
            entity_id=job.id,
            entity_uuid=job.uuid,
            actor=actor.id,
            old_value={"stage": job.stage},
            commit=False,
        )
        await self.fail(job, f"Cancelled by {actor.id}")
        await self.db.refresh(job)
        return job

    async def requeue(self, job: ImportJob, actor: Actor) -> ImportJob:
        """
        Resume a failed job after its last successful stage.

        A rejected job goes back through validate-schema so the approval
        gate is evaluated again.
        """
        if job.stage != ImportStage.FAILED:
            raise InvalidStateTransitionError("ImportJob", job.stage, "requeue")

        if job.rejected_by:
            resume = ImportStage.VALIDATE_SCHEMA
        elif job.last_successful_stage:
            resume = next_stage(job.last_successful_stage, StageOutcome.SUCCESS)
        else:
            resume = ImportStage.ANALYZE_DUPLICATES

        progress = job.get_progress()
        if resume in progress.stages:
            progress.stages[resume].status = StageStatus.PENDING
            progress.stages[resume].error = None
            progress.stages[resume].completed_at = None
        job.set_progress(progress)

        job.stage = resume
        job.retry_attempts = 0
        job.next_retry_at = None
        job.last_retry_error = None
        job.error_message = None
        job.completed_at = None
        job.rejected_by = None
        job.rejection_reason = None
        job.approved_by = None
        job.approved_at = None
        self._refresh_percentage(job)

        await self.audit.log_action(
            action="import_job.requeue",
            entity_type="import_job",
            entity_id=job.id,
            entity_uuid=job.uuid,
            actor=actor.id,
            new_value={"resume_stage": resume},
            commit=False,
        )
        self.db.add(job)
        await self.db.commit()
        await self._sync_file_status(job.import_file_id)
        await self.db.refresh(job)
        logger.info(f"Import job {job.id} requeued at {resume} by {actor.id}")
        return job

    # =========================================================================
    # Worker lease
    # =========================================================================

    def _due_clause(self, now: datetime):
        return (
            ImportJob.stage.in_([s.value for s in STAGE_ORDER]),
            ImportJob.deleted_at.is_(None),
            or_(ImportJob.next_retry_at.is_(None), ImportJob.next_retry_at <= now),
            or_(ImportJob.claimed_until.is_(None), ImportJob.claimed_until < now),
        )

    async def count_due(self) -> int:
        stmt = select(func.count(ImportJob.id)).where(*self._due_clause(utc_now()))
        return (await self.db.execute(stmt)).scalar() or 0

    async def claim_next(self, worker_id: str, limit: int = 20) -> ImportJob | None:
        """
        Claim one due job with a conditional UPDATE.

        Another worker winning the race just makes the UPDATE match nothing,
        and we try the next candidate.
        """
        now = utc_now()
        candidates = await self.db.execute(
            select(ImportJob.id)
            .where(*self._due_clause(now))
            .order_by(ImportJob.created_at.asc(), ImportJob.id.asc())
            .limit(limit)
        )
        for (job_id,) in candidates.all():
            stmt = (
                update(ImportJob)
                .where(ImportJob.id == job_id, *self._due_clause(now))
                .values(
                    claimed_by=worker_id,
                    claimed_until=now + timedelta(seconds=self.settings.job_lease_seconds),
                )
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
            await self.db.commit()
            if result.rowcount == 1:
                job = await self.db.get(ImportJob, job_id, populate_existing=True)
                logger.debug(f"Worker {worker_id} claimed import job {job_id}")
                return job
        return None

    async def release_claim(self, job: ImportJob) -> None:
        job.claimed_by = None
        job.claimed_until = None
        self.db.add(job)
        await self.db.commit()

    # =========================================================================
    # Import file aggregation
    # =========================================================================

    async def _sync_file_status(self, import_file_id: int) -> None:
        import_file = await self.db.get(ImportFile, import_file_id)
        if import_file is None:
            return
        rows = await self.db.execute(
            select(ImportJob.stage, func.count(ImportJob.id))
            .where(ImportJob.import_file_id == import_file_id, ImportJob.deleted_at.is_(None))
            .group_by(ImportJob.stage)
        )
        counts = {stage: count for stage, count in rows.all()}
        total = sum(counts.values())
        completed = counts.get(ImportStage.COMPLETED, 0)
        failed = counts.get(ImportStage.FAILED, 0)

        import_file.jobs_total = total
        import_file.jobs_completed = completed
        import_file.jobs_failed = failed
        if total and completed + failed == total:
            import_file.status = ImportFileStatus.COMPLETED if completed else ImportFileStatus.FAILED
            import_file.processing_completed_at = utc_now()
        elif total:
            import_file.status = ImportFileStatus.PROCESSING
            import_file.processing_completed_at = None
        self.db.add(import_file)
        await self.db.commit()


def get_import_job_service(db: AsyncSession) -> ImportJobService:
    """Factory function for ImportJobService."""
    return ImportJobService(db)
