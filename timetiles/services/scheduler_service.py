"""
Scheduled imports: CRUD, triggering and the periodic tick.

A run fetches the source URL and hands the body to ImportService, which
creates the import file and its jobs. The schedule's `last_status` doubles
as the overlap guard: it is set to "running" with a conditional UPDATE, so
two triggers can never start the same schedule twice. Runs that never
finish are reset by cleanup_stuck().
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import urlparse

from croniter import croniter
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.core.config import Settings, get_settings
from timetiles.database import async_session_factory
from timetiles.models.base import ensure_utc, utc_now
from timetiles.models.catalog import Catalog
from timetiles.models.dataset import Dataset
from timetiles.models.import_file import ImportFile
from timetiles.models.scheduled_import import ScheduledImport
from timetiles.schemas.common import Actor, PaginationParams
from timetiles.schemas.enums import (
    ExecutionStatus,
    QuotaType,
    ScheduleFrequency,
    ScheduleType,
    TriggerType,
)
from timetiles.schemas.jsonb_types import ExecutionHistoryEntry
from timetiles.schemas.scheduled_import import ScheduledImportCreate, ScheduledImportUpdate
from timetiles.services.audit_service import AuditLogService
from timetiles.services.base import BaseService
from timetiles.services.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    QuotaExceededError,
    ServiceError,
    ValidationError,
)
from timetiles.services.import_job_service import compute_backoff
from timetiles.services.import_service import ImportService
from timetiles.services.quota_service import QuotaService
from timetiles.services.url_fetch_service import UrlFetchService

logger = logging.getLogger(__name__)

FetcherFactory = Callable[[AsyncSession], UrlFetchService]

# Failures that a retry cannot fix
NON_RETRYABLE = (QuotaExceededError, ConfigurationError)

CONFIG_FIELDS = ("auth_config", "retry_config", "cache_policy", "dataset_mapping")
TIMING_FIELDS = ("schedule_type", "frequency", "cron_expression", "enabled")


# =============================================================================
# Schedule arithmetic
# =============================================================================


def _next_frequency_run(frequency: ScheduleFrequency | str, after: datetime) -> datetime:
    """Next UTC boundary: top of the hour, midnight, Sunday midnight or the 1st."""
    base = after.replace(second=0, microsecond=0)
    if frequency == ScheduleFrequency.HOURLY:
        return base.replace(minute=0) + timedelta(hours=1)
    midnight = base.replace(hour=0, minute=0)
    if frequency == ScheduleFrequency.DAILY:
        return midnight + timedelta(days=1)
    if frequency == ScheduleFrequency.WEEKLY:
        days_until_sunday = (6 - midnight.weekday()) % 7 or 7
        return midnight + timedelta(days=days_until_sunday)
    if frequency == ScheduleFrequency.MONTHLY:
        if midnight.month == 12:
            return midnight.replace(year=midnight.year + 1, month=1, day=1)
        return midnight.replace(month=midnight.month + 1, day=1)
    raise ConfigurationError(f"Invalid frequency: {frequency}")


def calculate_next_run(
    schedule_type: ScheduleType | str,
    frequency: ScheduleFrequency | str | None,
    cron_expression: str | None,
    after: datetime | None = None,
) -> datetime:
    """
    Next execution time strictly after `after` (default: now).

    Raises ConfigurationError for a missing frequency or an invalid cron
    expression.
    """
    after = ensure_utc(after) or utc_now()
    if schedule_type == ScheduleType.CRON:
        if not cron_expression or not croniter.is_valid(cron_expression):
            raise ConfigurationError(f"Invalid cron expression: {cron_expression!r}")
        return croniter(cron_expression, after).get_next(datetime)
    if not frequency:
        raise ConfigurationError("Frequency schedule without a frequency")
    return _next_frequency_run(frequency, after)


def render_import_name(template: str, name: str, url: str, when: datetime) -> str:
    """Fill {{name}}, {{date}}, {{time}} and {{url}} (the source host)."""
    return (
        template.replace("{{name}}", name)
        .replace("{{date}}", when.strftime("%Y-%m-%d"))
        .replace("{{time}}", when.strftime("%H:%M:%S"))
        .replace("{{url}}", urlparse(url).hostname or "")
    )


def generate_webhook_token() -> str:
    return secrets.token_urlsafe(32)


@dataclass
class TriggerResult:
    status: ExecutionStatus
    message: str
    import_file: ImportFile | None = None


# =============================================================================
# Service
# =============================================================================


class ScheduledImportService(BaseService[ScheduledImport, ScheduledImportCreate, ScheduledImportUpdate]):
    """CRUD and execution of scheduled imports."""

    entity_name = "ScheduledImport"

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings | None = None,
        fetcher_factory: FetcherFactory | None = None,
    ):
        super().__init__(db, ScheduledImport)
        self.settings = settings or get_settings()
        self.fetcher_factory = fetcher_factory or (lambda session: UrlFetchService(session, self.settings.scheduler))
        self.quotas = QuotaService(db, self.settings.quotas)
        self.imports = ImportService(db, self.settings.imports)
        self.audit = AuditLogService(db)

    async def get_list_filtered(
        self,
        pagination: PaginationParams,
        catalog_id: int | None = None,
        enabled: bool | None = None,
    ) -> tuple[list[ScheduledImport], int]:
        return await self.get_list(pagination, filters={"catalog_id": catalog_id, "enabled": enabled})

    async def get_by_webhook_token(self, token: str) -> ScheduledImport | None:
        result = await self.db.execute(
            select(ScheduledImport).where(
                ScheduledImport.webhook_token == token,
                ScheduledImport.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    def _next_run_or_invalid(self, schedule_type, frequency, cron_expression) -> datetime:
        try:
            return calculate_next_run(schedule_type, frequency, cron_expression)
        except ConfigurationError as e:
            raise ValidationError(e.message, field="cron_expression") from e

    async def _resolve_target(self, catalog_uuid, dataset_uuid) -> tuple[Catalog, Dataset | None]:
        catalog = (
            await self.db.execute(
                select(Catalog).where(Catalog.uuid == catalog_uuid, Catalog.deleted_at.is_(None))
            )
        ).scalar_one_or_none()
        if catalog is None:
            raise NotFoundError("Catalog", str(catalog_uuid))
        dataset = None
        if dataset_uuid is not None:
            dataset = (
                await self.db.execute(
                    select(Dataset).where(Dataset.uuid == dataset_uuid, Dataset.deleted_at.is_(None))
                )
            ).scalar_one_or_none()
            if dataset is None:
                raise NotFoundError("Dataset", str(dataset_uuid))
            if dataset.catalog_id != catalog.id:
                raise ValidationError("Dataset belongs to a different catalog", field="dataset_uuid")
        return catalog, dataset

    async def create_with_validation(self, data: ScheduledImportCreate, actor: Actor) -> ScheduledImport:
        """Create a schedule. Enabled schedules count against ACTIVE_SCHEDULES."""
        catalog, dataset = await self._resolve_target(data.catalog_uuid, data.dataset_uuid)
        if data.enabled:
            await self.quotas.check(actor, QuotaType.ACTIVE_SCHEDULES)
        next_run = self._next_run_or_invalid(data.schedule_type, data.frequency, data.cron_expression)

        schedule = ScheduledImport(
            **data.model_dump(exclude={"catalog_uuid", "dataset_uuid", *CONFIG_FIELDS}),
            **{name: getattr(data, name).model_dump(mode="json") for name in CONFIG_FIELDS},
            catalog_id=catalog.id,
            dataset_id=dataset.id if dataset else None,
            next_run=next_run if data.enabled else None,
            webhook_token=generate_webhook_token() if data.webhook_enabled else None,
            created_by=actor.id,
            trust_level=actor.trust_level,
        )
        self.db.add(schedule)
        await self.db.flush()
        await self.audit.log_action(
            action="scheduled_import.create",
            entity_type="scheduled_import",
            entity_uuid=schedule.uuid,
            entity_id=schedule.id,
            actor=actor.id,
            new_value={"name": schedule.name, "source_url": schedule.source_url},
            commit=False,
        )
        await self.db.commit()
        await self.db.refresh(schedule)
        logger.info(f"Created scheduled import {schedule.id} '{schedule.name}', next run {schedule.next_run}")
        return schedule

    async def update_with_validation(
        self, schedule: ScheduledImport, data: ScheduledImportUpdate, actor: Actor
    ) -> ScheduledImport:
        """Apply a partial update; re-enabling checks ACTIVE_SCHEDULES again."""
        changes = data.model_dump(exclude_unset=True)
        if changes.get("enabled") and not schedule.enabled:
            await self.quotas.check(actor, QuotaType.ACTIVE_SCHEDULES)

        for name, value in changes.items():
            if name in CONFIG_FIELDS and value is not None:
                value = getattr(data, name).model_dump(mode="json")
            setattr(schedule, name, value)

        if any(name in changes for name in TIMING_FIELDS):
            schedule.next_run = (
                self._next_run_or_invalid(schedule.schedule_type, schedule.frequency, schedule.cron_expression)
                if schedule.enabled
                else None
            )
        if schedule.webhook_enabled and not schedule.webhook_token:
            schedule.webhook_token = generate_webhook_token()

        self.db.add(schedule)
        await self.audit.log_action(
            action="scheduled_import.update",
            entity_type="scheduled_import",
            entity_uuid=schedule.uuid,
            entity_id=schedule.id,
            actor=actor.id,
            new_value=data.model_dump(mode="json", exclude_unset=True, exclude={"auth_config"}),
            commit=False,
        )
        await self.db.commit()
        await self.db.refresh(schedule)
        return schedule

    async def delete(self, schedule: ScheduledImport, actor: Actor) -> ScheduledImport:
        await self.audit.log_action(
            action="scheduled_import.delete",
            entity_type="scheduled_import",
            entity_uuid=schedule.uuid,
            entity_id=schedule.id,
            actor=actor.id,
            old_value={"name": schedule.name, "source_url": schedule.source_url},
            commit=False,
        )
        schedule.enabled = False
        return await self.soft_delete(schedule)

    # =========================================================================
    # Execution
    # =========================================================================

    async def _mark_running(self, schedule: ScheduledImport, started_at: datetime) -> bool:
        """Set the running guard. False when another run holds it."""
        result = await self.db.execute(
            update(ScheduledImport)
            .where(
                ScheduledImport.id == schedule.id,
                or_(
                    ScheduledImport.last_status.is_(None),
                    ScheduledImport.last_status != ExecutionStatus.RUNNING,
                ),
            )
            .values(last_status=ExecutionStatus.RUNNING, last_run=started_at)
        )
        await self.db.commit()
        await self.db.refresh(schedule)
        return result.rowcount == 1

    def _record(
        self,
        schedule: ScheduledImport,
        entry: ExecutionHistoryEntry,
    ) -> None:
        history = [entry, *schedule.get_history()][: self.settings.scheduler.history_limit]
        schedule.set_history(history)

        stats = schedule.get_statistics()
        stats.total_runs += 1
        if entry.status == ExecutionStatus.SUCCESS:
            stats.successful_runs += 1
        else:
            stats.failed_runs += 1
        if entry.duration_ms is not None:
            stats.average_duration_ms += (entry.duration_ms - stats.average_duration_ms) / stats.total_runs
        schedule.set_statistics(stats)

    def _natural_next_run(self, schedule: ScheduledImport) -> datetime | None:
        if not schedule.enabled:
            return None
        try:
            return calculate_next_run(schedule.schedule_type, schedule.frequency, schedule.cron_expression)
        except ConfigurationError as e:
            logger.error(f"Scheduled import {schedule.id} has an invalid schedule: {e}")
            return None

    async def _finish_failure(
        self,
        schedule: ScheduledImport,
        error: ServiceError | Exception,
        entry: ExecutionHistoryEntry,
    ) -> None:
        """Schedule a retry with backoff, or wait for the next natural run."""
        message = error.message if isinstance(error, ServiceError) else str(error)
        retry = schedule.get_retry_config()
        attempt = schedule.current_retries + 1
        schedule.last_status = ExecutionStatus.FAILED if isinstance(error, ServiceError) else ExecutionStatus.ERROR
        schedule.last_error = message

        if not isinstance(error, NON_RETRYABLE) and attempt <= retry.max_retries and schedule.enabled:
            delay = compute_backoff(attempt, retry.retry_delay_minutes * 60, retry.backoff_multiplier)
            schedule.current_retries = attempt
            schedule.next_run = utc_now() + timedelta(seconds=delay)
            logger.warning(
                f"Scheduled import {schedule.id} failed (attempt {attempt}/{retry.max_retries}), "
                f"retrying in {delay:.0f}s: {message}"
            )
        else:
            # Never disabled; it waits for its next natural occurrence
            schedule.current_retries = 0
            schedule.next_run = self._natural_next_run(schedule)
            logger.warning(f"Scheduled import {schedule.id} failed, next run {schedule.next_run}: {message}")

        self._record(schedule, entry)
        self.db.add(schedule)
        await self.db.commit()

    async def trigger(
        self,
        schedule: ScheduledImport,
        trigger_type: TriggerType = TriggerType.SCHEDULE,
        actor: Actor | None = None,
    ) -> TriggerResult:
        """
        Run the schedule now: fetch the source and queue it for import.

        Raises ConflictError when a run is already in progress. Fetch and
        queueing failures are recorded on the schedule and returned as a
        failed result.
        """
        started_at = utc_now()
        if not await self._mark_running(schedule, started_at):
            raise ConflictError("ScheduledImport", "status", ExecutionStatus.RUNNING)

        owner = Actor(id=schedule.created_by or "anonymous", trust_level=schedule.trust_level)
        policy = schedule.get_cache_policy()
        bypass_cache = trigger_type == TriggerType.MANUAL and policy.bypass_cache_on_manual
        logger.info(f"Running scheduled import {schedule.id} '{schedule.name}' ({trigger_type})")

        def history_entry(status: ExecutionStatus, **extra) -> ExecutionHistoryEntry:
            return ExecutionHistoryEntry(
                executed_at=started_at,
                status=status,
                duration_ms=int((utc_now() - started_at).total_seconds() * 1000),
                triggered_by=trigger_type,
                actor=actor.id if actor else None,
                **extra,
            )

        try:
            await self.quotas.check(owner, QuotaType.URL_FETCHES_PER_DAY)
            async with self.fetcher_factory(self.db) as fetcher:
                fetched = await fetcher.fetch(
                    schedule.source_url,
                    schedule.get_auth_config(),
                    policy,
                    bypass_cache=bypass_cache,
                )

            catalog = await self.db.get(Catalog, schedule.catalog_id)
            if catalog is None or catalog.deleted_at is not None:
                raise NotFoundError("Catalog", str(schedule.catalog_id))
            dataset = await self.db.get(Dataset, schedule.dataset_id) if schedule.dataset_id else None
            if dataset is not None and dataset.deleted_at is not None:
                raise NotFoundError("Dataset", str(schedule.dataset_id))

            import_name = render_import_name(
                schedule.import_name_template, schedule.name, schedule.source_url, started_at
            )
            await self.quotas.increment(owner, QuotaType.URL_FETCHES_PER_DAY)
            import_file = await self.imports.queue_file(
                fetched.content,
                f"{import_name}.{fetched.file_type}",
                fetched.content_type,
                catalog,
                owner,
                dataset=dataset,
                mapping=schedule.get_dataset_mapping(),
                scheduled_import_id=schedule.id,
                source_url=schedule.source_url,
                count_upload=False,
            )
        except ServiceError as e:
            await self.db.rollback()
            await self.db.refresh(schedule)
            await self._finish_failure(schedule, e, history_entry(ExecutionStatus.FAILED, error=e.message))
            return TriggerResult(ExecutionStatus.FAILED, e.message)
        except Exception as e:
            await self.db.rollback()
            await self.db.refresh(schedule)
            await self._finish_failure(schedule, e, history_entry(ExecutionStatus.ERROR, error=str(e)))
            raise

        await self.db.refresh(schedule)
        schedule.last_status = ExecutionStatus.SUCCESS
        schedule.last_error = None
        schedule.current_retries = 0
        schedule.next_run = self._natural_next_run(schedule)
        self._record(
            schedule,
            history_entry(
                ExecutionStatus.SUCCESS,
                import_file_uuid=str(import_file.uuid),
                job_count=import_file.jobs_total,
                from_cache=fetched.from_cache,
            ),
        )
        self.db.add(schedule)
        await self.db.commit()
        logger.info(
            f"Scheduled import {schedule.id} queued file {import_file.id} "
            f"({import_file.jobs_total} job(s)), next run {schedule.next_run}"
        )
        return TriggerResult(ExecutionStatus.SUCCESS, "Import queued", import_file)

    async def trigger_webhook(self, token: str) -> TriggerResult:
        """
        Trigger by webhook token.

        Unknown tokens and disabled webhooks are indistinguishable.
        """
        schedule = await self.get_by_webhook_token(token)
        if schedule is None or not schedule.webhook_enabled:
            raise NotFoundError("Webhook")
        if schedule.last_status == ExecutionStatus.RUNNING:
            return TriggerResult(ExecutionStatus.RUNNING, "Import already running")
        try:
            return await self.trigger(schedule, TriggerType.WEBHOOK, Actor(id=f"webhook:{schedule.uuid}"))
        except ConflictError:
            return TriggerResult(ExecutionStatus.RUNNING, "Import already running")

    async def cleanup_stuck(self) -> int:
        """Fail runs that stayed "running" past the threshold. Returns the count."""
        threshold = timedelta(hours=self.settings.scheduler.stuck_threshold_hours)
        cutoff = utc_now() - threshold
        result = await self.db.execute(
            select(ScheduledImport).where(
                ScheduledImport.last_status == ExecutionStatus.RUNNING,
                ScheduledImport.last_run < cutoff,
                ScheduledImport.deleted_at.is_(None),
            )
        )
        stuck = list(result.scalars().all())
        for schedule in stuck:
            started_at = ensure_utc(schedule.last_run) or cutoff
            error = f"Run stalled: still running after {self.settings.scheduler.stuck_threshold_hours}h"
            schedule.last_status = ExecutionStatus.FAILED
            schedule.last_error = error
            schedule.current_retries = 0
            next_run = ensure_utc(schedule.next_run)
            if next_run is None or next_run <= utc_now():
                schedule.next_run = self._natural_next_run(schedule)
            self._record(
                schedule,
                ExecutionHistoryEntry(
                    executed_at=started_at,
                    status=ExecutionStatus.FAILED,
                    duration_ms=int((utc_now() - started_at).total_seconds() * 1000),
                    error=error,
                ),
            )
            self.db.add(schedule)
            logger.warning(f"Reset stuck scheduled import {schedule.id} '{schedule.name}'")
        if stuck:
            await self.db.commit()
        return len(stuck)

    async def get_due(self) -> list[ScheduledImport]:
        result = await self.db.execute(
            select(ScheduledImport)
            .where(
                ScheduledImport.enabled.is_(True),
                ScheduledImport.deleted_at.is_(None),
                ScheduledImport.next_run.is_not(None),
                ScheduledImport.next_run <= utc_now(),
                or_(
                    ScheduledImport.last_status.is_(None),
                    ScheduledImport.last_status != ExecutionStatus.RUNNING,
                ),
            )
            .order_by(ScheduledImport.next_run)
        )
        return list(result.scalars().all())

    async def tick(self) -> int:
        """Clean up stuck runs, then run every due schedule. Returns runs started."""
        await self.cleanup_stuck()
        started = 0
        for schedule in await self.get_due():
            try:
                await self.trigger(schedule, TriggerType.SCHEDULE)
                started += 1
            except ConflictError:
                logger.info(f"Scheduled import {schedule.id} is already running")
            except Exception as e:
                logger.exception(f"Scheduled import {schedule.id} crashed: {e}")
        return started


def get_scheduled_import_service(db: AsyncSession) -> ScheduledImportService:
    """Factory function for ScheduledImportService."""
    return ScheduledImportService(db)


class SchedulerRunner:
    """Periodic tick loop, run beside the import worker."""

    def __init__(
        self,
        session_factory=async_session_factory,
        settings: Settings | None = None,
        fetcher_factory: FetcherFactory | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.fetcher_factory = fetcher_factory
        self._running = False

    async def tick(self) -> int:
        async with self.session_factory() as db:
            service = ScheduledImportService(db, self.settings, self.fetcher_factory)
            return await service.tick()

    async def run(self) -> None:
        self._running = True
        logger.info(f"Scheduler started, ticking every {self.settings.scheduler.tick_seconds}s")
        while self._running:
            try:
                started = await self.tick()
                if started:
                    logger.info(f"Scheduler started {started} run(s)")
            except Exception as e:
                logger.exception(f"Scheduler tick failed: {e}")
            await asyncio.sleep(self.settings.scheduler.tick_seconds)
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._running = False
