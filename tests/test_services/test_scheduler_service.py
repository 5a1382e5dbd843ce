"""
Tests for scheduled imports: next-run arithmetic, triggering, retries,
webhooks and stuck-run cleanup.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from timetiles.core.config import Settings
from timetiles.models.base import ensure_utc, utc_now
from timetiles.models.import_file import ImportFile
from timetiles.models.import_job import ImportJob
from timetiles.models.scheduled_import import ScheduledImport
from timetiles.schemas.common import Actor
from timetiles.schemas.enums import (
    ExecutionStatus,
    ImportFileStatus,
    ImportStage,
    QuotaType,
    ScheduleType,
    TriggerType,
)
from timetiles.schemas.jsonb_types import RetryConfig, SchemaConfig
from timetiles.schemas.scheduled_import import ScheduledImportCreate
from timetiles.services.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    QuotaExceededError,
    TransientExternalFailure,
    ValidationError,
)
from timetiles.services.import_job_service import ImportJobService
from timetiles.services.quota_service import QuotaService
from timetiles.services.scheduler_service import (
    ScheduledImportService,
    SchedulerRunner,
    calculate_next_run,
    render_import_name,
)
from timetiles.services.url_fetch_service import FetchResult
from timetiles.worker import ImportWorker

CSV = b"id,title,city\n1,Jazz,Riga\n2,Rock,Berlin\n"
OWNER = Actor(id="alice", trust_level=2)


class FakeFetcher:
    """Stands in for UrlFetchService; returns a fixed body or raises."""

    def __init__(self, content: bytes = CSV, error: Exception | None = None):
        self.content = content
        self.error = error
        self.calls: list[tuple[str, bool]] = []

    async def __aenter__(self) -> FakeFetcher:
        return self

    async def __aexit__(self, *args) -> None:
        return None

    async def fetch(self, url, auth=None, cache_policy=None, bypass_cache=False) -> FetchResult:
        self.calls.append((url, bypass_cache))
        if self.error is not None:
            raise self.error
        return FetchResult(url, self.content, "text/csv", "csv")


@pytest.fixture
def settings(import_settings) -> Settings:
    return Settings(imports=import_settings)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def service(db_session, settings, fetcher) -> ScheduledImportService:
    return ScheduledImportService(db_session, settings, fetcher_factory=lambda session: fetcher)


@pytest.fixture
async def schedule(service, catalog, dataset) -> ScheduledImport:
    data = ScheduledImportCreate(
        name="City feed",
        source_url="https://data.example.org/events.csv",
        catalog_uuid=catalog.uuid,
        dataset_uuid=dataset.uuid,
        frequency="daily",
        webhook_enabled=True,
        retry_config=RetryConfig(max_retries=2, retry_delay_minutes=5, backoff_multiplier=2),
    )
    return await service.create_with_validation(data, OWNER)


# =============================================================================
# Schedule arithmetic
# =============================================================================


class TestCalculateNextRun:
    @pytest.mark.parametrize(
        ("frequency", "after", "expected"),
        [
            ("hourly", datetime(2024, 5, 15, 10, 30), datetime(2024, 5, 15, 11, 0)),
            ("daily", datetime(2024, 5, 15, 10, 30), datetime(2024, 5, 16, 0, 0)),
            ("weekly", datetime(2024, 5, 15, 10, 30), datetime(2024, 5, 19, 0, 0)),
            ("weekly", datetime(2024, 5, 19, 10, 30), datetime(2024, 5, 26, 0, 0)),
            ("monthly", datetime(2024, 5, 15, 10, 30), datetime(2024, 6, 1, 0, 0)),
            ("monthly", datetime(2024, 12, 15, 10, 30), datetime(2025, 1, 1, 0, 0)),
        ],
    )
    def test_frequencies(self, frequency, after, expected):
        result = calculate_next_run(ScheduleType.FREQUENCY, frequency, None, after.replace(tzinfo=UTC))
        assert result == expected.replace(tzinfo=UTC)

    def test_cron(self):
        after = datetime(2024, 5, 15, 10, 7, tzinfo=UTC)
        assert calculate_next_run(ScheduleType.CRON, None, "*/15 * * * *", after) == datetime(
            2024, 5, 15, 10, 15, tzinfo=UTC
        )

    def test_strictly_after(self):
        after = datetime(2024, 5, 15, 10, 0, tzinfo=UTC)
        assert calculate_next_run(ScheduleType.CRON, None, "0 * * * *", after) > after

    @pytest.mark.parametrize(
        ("schedule_type", "frequency", "cron"),
        [(ScheduleType.CRON, None, "not a cron"), (ScheduleType.CRON, None, None), (ScheduleType.FREQUENCY, None, None)],
    )
    def test_invalid(self, schedule_type, frequency, cron):
        with pytest.raises(ConfigurationError):
            calculate_next_run(schedule_type, frequency, cron)

    def test_render_import_name(self):
        when = datetime(2024, 5, 15, 8, 30, tzinfo=UTC)
        name = render_import_name("{{name}} @ {{url}} {{date}} {{time}}", "Feed", "https://x.org/a.csv", when)
        assert name == "Feed @ x.org 2024-05-15 08:30:00"


# =============================================================================
# CRUD
# =============================================================================


class TestCreate:
    async def test_create_sets_next_run_and_token(self, schedule):
        assert schedule.next_run is not None
        assert ensure_utc(schedule.next_run) > utc_now()
        assert schedule.webhook_token
        assert schedule.trust_level == 2
        assert schedule.created_by == "alice"

    async def test_untrusted_actor_cannot_schedule(self, service, catalog):
        data = ScheduledImportCreate(
            name="x", source_url="https://x.org/a.csv", catalog_uuid=catalog.uuid, frequency="hourly"
        )
        with pytest.raises(QuotaExceededError):
            await service.create_with_validation(data, Actor(id="mallory", trust_level=0))

    async def test_invalid_cron_is_rejected(self, service, catalog):
        data = ScheduledImportCreate(
            name="x",
            source_url="https://x.org/a.csv",
            catalog_uuid=catalog.uuid,
            schedule_type="cron",
            cron_expression="every tuesday",
        )
        with pytest.raises(ValidationError):
            await service.create_with_validation(data, OWNER)


# =============================================================================
# Execution
# =============================================================================


class TestTrigger:
    async def test_success_queues_file(self, db_session, service, schedule, fetcher):
        result = await service.trigger(schedule, TriggerType.MANUAL, OWNER)

        assert result.status == ExecutionStatus.SUCCESS
        assert result.import_file.scheduled_import_id == schedule.id
        assert result.import_file.source_url == schedule.source_url
        assert result.import_file.jobs_total == 1
        assert result.import_file.original_name.startswith("City feed - ")

        assert schedule.last_status == ExecutionStatus.SUCCESS
        assert schedule.current_retries == 0
        history = schedule.get_history()
        assert history[0].status == ExecutionStatus.SUCCESS
        assert history[0].triggered_by == TriggerType.MANUAL
        assert history[0].job_count == 1
        assert schedule.get_statistics().successful_runs == 1

        usage = await QuotaService(db_session).get_usage(OWNER, QuotaType.URL_FETCHES_PER_DAY)
        assert usage == 1
        # Fetches do not count as uploads
        assert await QuotaService(db_session).get_usage(OWNER, QuotaType.FILE_UPLOADS_PER_DAY) == 0

    async def test_retries_with_backoff_then_waits_for_next_run(self, service, schedule, fetcher):
        fetcher.error = TransientExternalFailure("HTTP 503", source="feed")

        for attempt, minutes in ((1, 5), (2, 10)):
            before = utc_now()
            result = await service.trigger(schedule)
            assert result.status == ExecutionStatus.FAILED
            assert schedule.current_retries == attempt
            delay = ensure_utc(schedule.next_run) - before
            assert timedelta(minutes=minutes) <= delay < timedelta(minutes=minutes, seconds=5)

        await service.trigger(schedule)
        assert schedule.current_retries == 0
        assert schedule.enabled
        assert ensure_utc(schedule.next_run) == calculate_next_run(ScheduleType.FREQUENCY, "daily", None)
        assert schedule.last_error == "HTTP 503"
        assert schedule.get_statistics().failed_runs == 3

    async def test_quota_failures_are_not_retried(self, db_session, service, schedule):
        schedule.trust_level = 0
        db_session.add(schedule)
        await db_session.commit()

        result = await service.trigger(schedule)
        assert result.status == ExecutionStatus.FAILED
        assert schedule.current_retries == 0
        assert ensure_utc(schedule.next_run) == calculate_next_run(ScheduleType.FREQUENCY, "daily", None)

    async def test_running_guard(self, db_session, service, schedule, fetcher):
        schedule.last_status = ExecutionStatus.RUNNING
        db_session.add(schedule)
        await db_session.commit()

        with pytest.raises(ConflictError):
            await service.trigger(schedule)
        assert fetcher.calls == []

    async def test_manual_trigger_can_bypass_cache(self, db_session, service, schedule, fetcher):
        schedule.cache_policy = {"use_cache": True, "bypass_cache_on_manual": True}
        db_session.add(schedule)
        await db_session.commit()

        await service.trigger(schedule, TriggerType.MANUAL, OWNER)
        await service.trigger(schedule, TriggerType.SCHEDULE)
        assert [bypass for _, bypass in fetcher.calls] == [True, False]

    async def test_history_is_capped(self, db_session, settings, fetcher, schedule):
        settings.scheduler.history_limit = 2
        service = ScheduledImportService(db_session, settings, fetcher_factory=lambda session: fetcher)
        for _ in range(3):
            await service.trigger(schedule)
        assert len(schedule.get_history()) == 2
        assert schedule.get_statistics().total_runs == 3


class TestWebhook:
    async def test_webhook_triggers_as_webhook_actor(self, service, schedule):
        result = await service.trigger_webhook(schedule.webhook_token)
        assert result.status == ExecutionStatus.SUCCESS
        entry = schedule.get_history()[0]
        assert entry.triggered_by == TriggerType.WEBHOOK
        assert entry.actor == f"webhook:{schedule.uuid}"

    async def test_unknown_and_disabled_tokens(self, db_session, service, schedule):
        with pytest.raises(NotFoundError):
            await service.trigger_webhook("nope")

        schedule.webhook_enabled = False
        db_session.add(schedule)
        await db_session.commit()
        with pytest.raises(NotFoundError):
            await service.trigger_webhook(schedule.webhook_token)

    async def test_running_schedule_reports_running(self, db_session, service, schedule, fetcher):
        schedule.last_status = ExecutionStatus.RUNNING
        db_session.add(schedule)
        await db_session.commit()

        result = await service.trigger_webhook(schedule.webhook_token)
        assert result.status == ExecutionStatus.RUNNING
        assert fetcher.calls == []


class TestTick:
    async def test_stuck_run_is_reset(self, db_session, service, schedule):
        schedule.last_status = ExecutionStatus.RUNNING
        schedule.last_run = utc_now() - timedelta(hours=3)
        db_session.add(schedule)
        await db_session.commit()

        assert await service.cleanup_stuck() == 1
        assert schedule.last_status == ExecutionStatus.FAILED
        assert "stalled" in schedule.get_history()[0].error

    async def test_recent_run_is_not_stuck(self, db_session, service, schedule):
        schedule.last_status = ExecutionStatus.RUNNING
        schedule.last_run = utc_now() - timedelta(minutes=5)
        db_session.add(schedule)
        await db_session.commit()
        assert await service.cleanup_stuck() == 0

    async def test_runner_triggers_due_schedules(self, db_session, session_factory, settings, fetcher, schedule):
        schedule.next_run = utc_now() - timedelta(minutes=1)
        db_session.add(schedule)
        await db_session.commit()

        runner = SchedulerRunner(session_factory, settings, fetcher_factory=lambda session: fetcher)
        assert await runner.tick() == 1
        assert await runner.tick() == 0

        files = (await db_session.execute(select(ImportFile))).scalars().all()
        assert len(files) == 1


# =============================================================================
# Scheduled runs through the pipeline
# =============================================================================


def venue_csv(capacities: list[str]) -> bytes:
    lines = ["id,title,city,capacity"] + [
        f"{i},Show {i},{'Riga' if i % 2 else 'Berlin'},{capacity}" for i, capacity in enumerate(capacities)
    ]
    return ("\n".join(lines) + "\n").encode()


async def run_job(db_session, import_file: ImportFile) -> ImportJob:
    job = (
        await db_session.execute(select(ImportJob).where(ImportJob.import_file_id == import_file.id))
    ).scalar_one()
    await db_session.refresh(job)
    return job


class TestScheduledImportPipeline:
    @pytest.fixture
    def worker(self, session_factory, settings) -> ImportWorker:
        return ImportWorker(session_factory, settings, worker_id="schedule-worker")

    @pytest.fixture
    async def gated_run(self, db_session, service, schedule, dataset, fetcher, fake_geocoder, worker) -> ImportJob:
        """First run sets an integer 'capacity'; the second sends text and stops at the gate."""
        dataset.set_schema_config(SchemaConfig(auto_approve_non_breaking=False))
        db_session.add(dataset)
        await db_session.commit()

        fetcher.content = venue_csv(["100", "250", "80"])
        first = await service.trigger(schedule, TriggerType.SCHEDULE)
        await worker.drain()
        assert (await run_job(db_session, first.import_file)).stage == ImportStage.COMPLETED

        fetcher.content = venue_csv(["large", "small", "medium", "large"])
        second = await service.trigger(schedule, TriggerType.SCHEDULE)
        assert second.status == ExecutionStatus.SUCCESS
        await worker.drain()

        job = await run_job(db_session, second.import_file)
        assert job.stage == ImportStage.AWAIT_APPROVAL
        validation = job.get_schema_validation()
        assert validation.is_breaking
        assert "Field 'capacity' changed type from integer to string" in validation.breaking_reasons
        return job

    async def test_approved_run_completes(self, db_session, gated_run, worker, import_settings):
        await ImportJobService(db_session, import_settings).approve(gated_run, Actor(id="operator", trust_level=3))
        await worker.drain()

        await db_session.refresh(gated_run)
        assert gated_run.stage == ImportStage.COMPLETED
        import_file = await db_session.get(ImportFile, gated_run.import_file_id, populate_existing=True)
        assert import_file.status == ImportFileStatus.COMPLETED
        # Row 3 is the only id the first run did not have
        assert gated_run.get_results().events_created == 1

    async def test_rejected_run_fails(self, db_session, gated_run, worker, import_settings):
        await ImportJobService(db_session, import_settings).reject(
            gated_run, Actor(id="operator", trust_level=3), "capacity must stay numeric"
        )
        assert await worker.drain() == 0

        await db_session.refresh(gated_run)
        assert gated_run.stage == ImportStage.FAILED
        assert "capacity must stay numeric" in gated_run.error_message
        import_file = await db_session.get(ImportFile, gated_run.import_file_id, populate_existing=True)
        assert import_file.status == ImportFileStatus.FAILED
