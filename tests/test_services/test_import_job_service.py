"""
Tests for the import job state machine, retry policy and operator actions.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.core.config import ImportSettings
from timetiles.models.base import ensure_utc, utc_now
from timetiles.models.dataset import Dataset
from timetiles.models.import_file import ImportFile
from timetiles.models.import_job import ImportJob
from timetiles.schemas.common import Actor
from timetiles.schemas.enums import ImportFileStatus, ImportStage, StageOutcome, StageStatus, TransformType
from timetiles.schemas.jsonb_types import SchemaValidationResult, TransformRule
from timetiles.services.exceptions import InvalidStateTransitionError, SchemaLockBusyError
from timetiles.services.import_job_service import ImportJobService, compute_backoff
from timetiles.services.schema_service import SchemaService
from timetiles.services.stage_machine import completed_weight, is_work_stage, next_stage

OPERATOR = Actor(id="operator", trust_level=3)

# =============================================================================
# Transition table
# =============================================================================


class TestStageMachine:
    @pytest.mark.parametrize(
        ("current", "outcome", "expected"),
        [
            (ImportStage.ANALYZE_DUPLICATES, StageOutcome.SUCCESS, ImportStage.DETECT_SCHEMA),
            (ImportStage.DETECT_SCHEMA, StageOutcome.SUCCESS, ImportStage.VALIDATE_SCHEMA),
            (ImportStage.VALIDATE_SCHEMA, StageOutcome.SUCCESS, ImportStage.CREATE_SCHEMA_VERSION),
            (ImportStage.VALIDATE_SCHEMA, StageOutcome.NEEDS_APPROVAL, ImportStage.AWAIT_APPROVAL),
            (ImportStage.AWAIT_APPROVAL, StageOutcome.APPROVED, ImportStage.CREATE_SCHEMA_VERSION),
            (ImportStage.AWAIT_APPROVAL, StageOutcome.REJECTED, ImportStage.FAILED),
            (ImportStage.CREATE_SCHEMA_VERSION, StageOutcome.SUCCESS, ImportStage.GEOCODE_BATCH),
            (ImportStage.CREATE_SCHEMA_VERSION, StageOutcome.NEEDS_APPROVAL, ImportStage.AWAIT_APPROVAL),
            (ImportStage.GEOCODE_BATCH, StageOutcome.SUCCESS, ImportStage.CREATE_EVENTS),
            (ImportStage.CREATE_EVENTS, StageOutcome.SUCCESS, ImportStage.COMPLETED),
            (ImportStage.GEOCODE_BATCH, StageOutcome.FAILED, ImportStage.FAILED),
        ],
    )
    def test_transitions(self, current, outcome, expected):
        assert next_stage(current, outcome) == expected

    @pytest.mark.parametrize(
        ("current", "outcome"),
        [
            (ImportStage.COMPLETED, StageOutcome.SUCCESS),
            (ImportStage.FAILED, StageOutcome.FAILED),
            (ImportStage.ANALYZE_DUPLICATES, StageOutcome.APPROVED),
            (ImportStage.AWAIT_APPROVAL, StageOutcome.SUCCESS),
            (ImportStage.DETECT_SCHEMA, StageOutcome.NEEDS_APPROVAL),
        ],
    )
    def test_illegal_transitions(self, current, outcome):
        with pytest.raises(InvalidStateTransitionError):
            next_stage(current, outcome)

    def test_work_stages(self):
        assert is_work_stage("geocode-batch")
        assert not is_work_stage(ImportStage.AWAIT_APPROVAL)
        assert not is_work_stage(ImportStage.COMPLETED)

    def test_completed_weight_is_monotonic(self):
        weights = [
            completed_weight(stage)
            for stage in (
                ImportStage.ANALYZE_DUPLICATES,
                ImportStage.DETECT_SCHEMA,
                ImportStage.VALIDATE_SCHEMA,
                ImportStage.CREATE_SCHEMA_VERSION,
                ImportStage.GEOCODE_BATCH,
                ImportStage.CREATE_EVENTS,
                ImportStage.COMPLETED,
            )
        ]
        assert weights[0] == 0
        assert weights == sorted(weights)
        assert weights[-1] == 100


class TestComputeBackoff:
    def test_doubles(self):
        assert [compute_backoff(n, 300, 2) for n in (1, 2, 3)] == [300, 600, 1200]

    def test_capped(self):
        assert compute_backoff(10, 30, 2, max_delay=3600) == 3600


# =============================================================================
# Service
# =============================================================================


@pytest.fixture
async def job(db_session: AsyncSession, dataset: Dataset) -> ImportJob:
    import_file = ImportFile(file_name="a.csv", storage_path="/tmp/a.csv", catalog_id=dataset.catalog_id)
    db_session.add(import_file)
    await db_session.flush()
    job = ImportJob(import_file_id=import_file.id, dataset_id=dataset.id)
    db_session.add(job)
    await db_session.commit()
    await db_session.refresh(job)
    return job


@pytest.fixture
def retry_settings() -> ImportSettings:
    return ImportSettings(max_retries=3, retry_base_delay_seconds=300, retry_backoff_multiplier=2)


async def move_to(service: ImportJobService, job: ImportJob, stage: ImportStage) -> None:
    """Walk a job along the happy path until it reaches `stage`."""
    while job.stage != stage:
        if job.stage == ImportStage.VALIDATE_SCHEMA and stage == ImportStage.AWAIT_APPROVAL:
            await service.advance(job, StageOutcome.NEEDS_APPROVAL)
        else:
            await service.advance(job, StageOutcome.SUCCESS)


class TestAdvance:
    async def test_advance_records_progress(self, db_session, job):
        service = ImportJobService(db_session)
        service.start_stage(job)
        target = await service.advance(job, StageOutcome.SUCCESS)

        assert target == ImportStage.DETECT_SCHEMA
        assert job.last_successful_stage == ImportStage.ANALYZE_DUPLICATES
        stage_progress = job.get_progress().stages[ImportStage.ANALYZE_DUPLICATES]
        assert stage_progress.status == StageStatus.COMPLETED
        assert job.get_progress().percentage == completed_weight(ImportStage.DETECT_SCHEMA)

    async def test_completion_updates_file(self, db_session, job):
        service = ImportJobService(db_session)
        await move_to(service, job, ImportStage.COMPLETED)

        import_file = await db_session.get(ImportFile, job.import_file_id)
        await db_session.refresh(import_file)
        assert job.completed_at is not None
        assert job.get_progress().percentage == 100
        assert import_file.status == ImportFileStatus.COMPLETED
        assert import_file.jobs_completed == 1

    async def test_terminal_job_cannot_advance(self, db_session, job):
        service = ImportJobService(db_session)
        await service.fail(job, "boom")
        with pytest.raises(InvalidStateTransitionError):
            await service.advance(job, StageOutcome.SUCCESS)

    async def test_checkpoint_is_per_stage(self, db_session, job):
        service = ImportJobService(db_session)
        service.start_stage(job)
        service.update_stage_progress(job, processed=50, total=100, checkpoint=50)
        assert service.get_checkpoint(job) == 50
        await service.advance(job, StageOutcome.SUCCESS)
        assert service.get_checkpoint(job) is None


class TestRetries:
    async def test_backoff_schedule_then_failure(self, db_session, job, retry_settings):
        service = ImportJobService(db_session, retry_settings)
        await move_to(service, job, ImportStage.GEOCODE_BATCH)

        for attempt, minutes in enumerate((5, 10, 20), start=1):
            before = utc_now()
            assert await service.record_transient_failure(job, "provider down") is True
            assert job.retry_attempts == attempt
            assert job.stage == ImportStage.GEOCODE_BATCH
            delay = ensure_utc(job.next_retry_at) - before
            assert timedelta(minutes=minutes) <= delay < timedelta(minutes=minutes, seconds=5)

        assert await service.record_transient_failure(job, "provider down") is False
        assert job.stage == ImportStage.FAILED
        assert "Max retries (3) exceeded" in job.error_message
        assert job.last_successful_stage == ImportStage.CREATE_SCHEMA_VERSION

    async def test_success_resets_retry_budget(self, db_session, job, retry_settings):
        service = ImportJobService(db_session, retry_settings)
        await service.record_transient_failure(job, "blip")
        await service.advance(job, StageOutcome.SUCCESS)
        assert job.retry_attempts == 0
        assert job.next_retry_at is None

    async def test_defer_keeps_retry_budget(self, db_session, job):
        service = ImportJobService(db_session)
        await service.defer(job, 15, "schema lock busy")
        assert job.retry_attempts == 0
        assert ensure_utc(job.next_retry_at) > utc_now()

    async def test_fail_releases_schema_lock(self, db_session, job, dataset):
        schema_service = SchemaService(db_session)
        await schema_service.acquire_lock(dataset.id, job.id)
        await ImportJobService(db_session).fail(job, "boom")

        await db_session.refresh(dataset)
        assert dataset.schema_lock_job_id is None
        assert job.get_errors()[-1].error == "boom"


class TestSchemaLock:
    async def test_second_job_is_refused(self, db_session, job, dataset):
        service = SchemaService(db_session)
        await service.acquire_lock(dataset.id, job.id)
        await service.acquire_lock(dataset.id, job.id)  # re-entrant
        with pytest.raises(SchemaLockBusyError) as exc_info:
            await service.acquire_lock(dataset.id, job.id + 1000)
        assert exc_info.value.holder_job_id == job.id

    async def test_expired_lock_can_be_taken(self, db_session, job, dataset):
        service = SchemaService(db_session, ImportSettings(schema_lock_timeout_seconds=0))
        await service.acquire_lock(dataset.id, job.id)
        await service.acquire_lock(dataset.id, job.id + 1000)
        await db_session.refresh(dataset)
        assert dataset.schema_lock_job_id == job.id + 1000


class TestOperatorActions:
    async def test_approve_releases_gate(self, db_session, job, dataset):
        service = ImportJobService(db_session)
        await move_to(service, job, ImportStage.AWAIT_APPROVAL)

        rule = TransformRule(type=TransformType.RENAME, from_field="qty", to_field="quantity")
        await service.approve(job, OPERATOR, transforms=[rule])

        assert job.stage == ImportStage.CREATE_SCHEMA_VERSION
        assert job.approved_by == "operator"
        assert job.get_transforms()[0].to_field == "quantity"
        await db_session.refresh(dataset)
        assert dataset.get_transforms()[0].from_field == "qty"

    async def test_approve_outside_gate_is_rejected(self, db_session, job):
        with pytest.raises(InvalidStateTransitionError):
            await ImportJobService(db_session).approve(job, OPERATOR)

    async def test_reject_keeps_reasons(self, db_session, job):
        service = ImportJobService(db_session)
        await move_to(service, job, ImportStage.AWAIT_APPROVAL)
        job.set_schema_validation(SchemaValidationResult(is_breaking=True, breaking_reasons=["Field 'a' removed"]))

        await service.reject(job, OPERATOR, "unexpected columns")

        assert job.stage == ImportStage.FAILED
        assert job.rejection_reason == "unexpected columns"
        assert job.get_schema_validation().breaking_reasons == ["Field 'a' removed"]

    async def test_requeue_after_rejection_revalidates(self, db_session, job):
        service = ImportJobService(db_session)
        await move_to(service, job, ImportStage.AWAIT_APPROVAL)
        await service.reject(job, OPERATOR, "no")

        await service.requeue(job, OPERATOR)
        assert job.stage == ImportStage.VALIDATE_SCHEMA
        assert job.rejected_by is None

    async def test_requeue_resumes_after_last_success(self, db_session, job):
        service = ImportJobService(db_session)
        await move_to(service, job, ImportStage.GEOCODE_BATCH)
        await service.fail(job, "boom")

        await service.requeue(job, OPERATOR)
        assert job.stage == ImportStage.GEOCODE_BATCH
        assert job.error_message is None

    async def test_requeue_only_failed(self, db_session, job):
        with pytest.raises(InvalidStateTransitionError):
            await ImportJobService(db_session).requeue(job, OPERATOR)

    async def test_cancel(self, db_session, job):
        service = ImportJobService(db_session)
        await service.cancel(job, OPERATOR)
        assert job.stage == ImportStage.FAILED
        assert job.error_message == "Cancelled by operator"
        with pytest.raises(InvalidStateTransitionError):
            await service.cancel(job, OPERATOR)


class TestClaims:
    async def test_claim_and_release(self, db_session, job):
        service = ImportJobService(db_session)
        assert await service.count_due() == 1

        claimed = await service.claim_next("worker-1")
        assert claimed.id == job.id
        assert claimed.claimed_by == "worker-1"
        assert await service.claim_next("worker-2") is None

        await service.release_claim(claimed)
        assert await service.count_due() == 1

    async def test_waiting_jobs_are_not_due(self, db_session, job):
        service = ImportJobService(db_session)
        await service.defer(job, 600, "later")
        assert await service.claim_next("worker-1") is None

    async def test_gate_is_not_due(self, db_session, job):
        service = ImportJobService(db_session)
        await move_to(service, job, ImportStage.AWAIT_APPROVAL)
        assert await service.count_due() == 0
