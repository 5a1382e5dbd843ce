"""
Usage quotas per actor trust level.

Checks happen before work is accepted and fail fast with QuotaExceededError;
nothing is queued. Daily counters live in quota_usage keyed by
(actor, quota_type, UTC date). -1 means unlimited.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.core.config import QuotaSettings, get_settings
from timetiles.models.base import utc_now
from timetiles.models.dataset import Dataset
from timetiles.models.event import Event
from timetiles.models.import_file import ImportFile
from timetiles.models.import_job import ImportJob
from timetiles.models.quota_usage import QuotaUsage
from timetiles.models.scheduled_import import ScheduledImport
from timetiles.schemas.common import Actor
from timetiles.schemas.enums import QuotaType
from timetiles.services.exceptions import QuotaExceededError

logger = logging.getLogger(__name__)

UNLIMITED = -1

# Trust level -> limits (0 = untrusted ... 5 = unlimited)
QUOTA_LIMITS: dict[int, dict[QuotaType, int]] = {
    0: {
        QuotaType.ACTIVE_SCHEDULES: 0,
        QuotaType.URL_FETCHES_PER_DAY: 0,
        QuotaType.FILE_UPLOADS_PER_DAY: 1,
        QuotaType.EVENTS_PER_IMPORT: 100,
        QuotaType.TOTAL_EVENTS: 100,
        QuotaType.IMPORT_JOBS_PER_DAY: 1,
        QuotaType.FILE_SIZE_MB: 1,
    },
    1: {
        QuotaType.ACTIVE_SCHEDULES: 1,
        QuotaType.URL_FETCHES_PER_DAY: 5,
        QuotaType.FILE_UPLOADS_PER_DAY: 3,
        QuotaType.EVENTS_PER_IMPORT: 1_000,
        QuotaType.TOTAL_EVENTS: 5_000,
        QuotaType.IMPORT_JOBS_PER_DAY: 5,
        QuotaType.FILE_SIZE_MB: 10,
    },
    2: {
        QuotaType.ACTIVE_SCHEDULES: 5,
        QuotaType.URL_FETCHES_PER_DAY: 20,
        QuotaType.FILE_UPLOADS_PER_DAY: 10,
        QuotaType.EVENTS_PER_IMPORT: 10_000,
        QuotaType.TOTAL_EVENTS: 50_000,
        QuotaType.IMPORT_JOBS_PER_DAY: 20,
        QuotaType.FILE_SIZE_MB: 50,
    },
    3: {
        QuotaType.ACTIVE_SCHEDULES: 20,
        QuotaType.URL_FETCHES_PER_DAY: 100,
        QuotaType.FILE_UPLOADS_PER_DAY: 50,
        QuotaType.EVENTS_PER_IMPORT: 50_000,
        QuotaType.TOTAL_EVENTS: 500_000,
        QuotaType.IMPORT_JOBS_PER_DAY: 100,
        QuotaType.FILE_SIZE_MB: 100,
    },
    4: {
        QuotaType.ACTIVE_SCHEDULES: 100,
        QuotaType.URL_FETCHES_PER_DAY: 500,
        QuotaType.FILE_UPLOADS_PER_DAY: 200,
        QuotaType.EVENTS_PER_IMPORT: 200_000,
        QuotaType.TOTAL_EVENTS: 2_000_000,
        QuotaType.IMPORT_JOBS_PER_DAY: 500,
        QuotaType.FILE_SIZE_MB: 500,
    },
    5: {
        QuotaType.ACTIVE_SCHEDULES: UNLIMITED,
        QuotaType.URL_FETCHES_PER_DAY: UNLIMITED,
        QuotaType.FILE_UPLOADS_PER_DAY: UNLIMITED,
        QuotaType.EVENTS_PER_IMPORT: UNLIMITED,
        QuotaType.TOTAL_EVENTS: UNLIMITED,
        QuotaType.IMPORT_JOBS_PER_DAY: UNLIMITED,
        QuotaType.FILE_SIZE_MB: 1_000,
    },
}

DAILY_QUOTAS = frozenset(
    {
        QuotaType.URL_FETCHES_PER_DAY,
        QuotaType.FILE_UPLOADS_PER_DAY,
        QuotaType.IMPORT_JOBS_PER_DAY,
    }
)

# Checked against the request itself, not a running counter
PER_REQUEST_QUOTAS = frozenset({QuotaType.EVENTS_PER_IMPORT, QuotaType.FILE_SIZE_MB})


def get_limit(trust_level: int, quota_type: QuotaType) -> int:
    level = min(max(trust_level, 0), max(QUOTA_LIMITS))
    return QUOTA_LIMITS[level][quota_type]


class QuotaService:
    """Checks and counts per-actor usage."""

    def __init__(self, db: AsyncSession, settings: QuotaSettings | None = None):
        self.db = db
        self.settings = settings or get_settings().quotas

    def _today(self) -> date:
        return utc_now().date()

    async def get_usage(self, actor: Actor, quota_type: QuotaType) -> int:
        """Current usage for counters and derived totals."""
        if quota_type in DAILY_QUOTAS:
            stmt = select(QuotaUsage.count).where(
                QuotaUsage.actor == actor.id,
                QuotaUsage.quota_type == quota_type,
                QuotaUsage.window_date == self._today(),
            )
            return (await self.db.execute(stmt)).scalar_one_or_none() or 0
        if quota_type == QuotaType.ACTIVE_SCHEDULES:
            stmt = select(func.count(ScheduledImport.id)).where(
                ScheduledImport.created_by == actor.id,
                ScheduledImport.enabled.is_(True),
                ScheduledImport.deleted_at.is_(None),
            )
            return (await self.db.execute(stmt)).scalar() or 0
        if quota_type == QuotaType.TOTAL_EVENTS:
            # Live events from files this actor uploaded, whoever owns the dataset
            stmt = (
                select(func.count(Event.id))
                .join(ImportJob, Event.import_job_id == ImportJob.id)
                .join(ImportFile, ImportJob.import_file_id == ImportFile.id)
                .join(Dataset, Event.dataset_id == Dataset.id)
                .where(
                    ImportFile.created_by == actor.id,
                    Event.deleted_at.is_(None),
                    Dataset.deleted_at.is_(None),
                )
            )
            return (await self.db.execute(stmt)).scalar() or 0
        return 0

    async def check(self, actor: Actor, quota_type: QuotaType, amount: int = 1) -> None:
        """Raise QuotaExceededError if `amount` more would go over the limit."""
        if not self.settings.enabled:
            return
        limit = get_limit(actor.trust_level, quota_type)
        if limit == UNLIMITED:
            return

        current = 0 if quota_type in PER_REQUEST_QUOTAS else await self.get_usage(actor, quota_type)
        if current + amount > limit:
            logger.info(f"Quota {quota_type} exceeded for actor '{actor.id}': {current}+{amount} > {limit}")
            raise QuotaExceededError(quota_type, limit, amount if quota_type in PER_REQUEST_QUOTAS else current)

    async def increment(self, actor: Actor, quota_type: QuotaType, amount: int = 1) -> None:
        """Add to today's counter. Caller commits."""
        if quota_type not in DAILY_QUOTAS:
            return
        stmt = select(QuotaUsage).where(
            QuotaUsage.actor == actor.id,
            QuotaUsage.quota_type == quota_type,
            QuotaUsage.window_date == self._today(),
        )
        usage = (await self.db.execute(stmt)).scalar_one_or_none()
        if usage is None:
            usage = QuotaUsage(actor=actor.id, quota_type=quota_type, window_date=self._today(), count=0)
        usage.count += amount
        self.db.add(usage)

    async def consume(self, actor: Actor, quota_type: QuotaType, amount: int = 1) -> None:
        """check() then increment()."""
        await self.check(actor, quota_type, amount)
        await self.increment(actor, quota_type, amount)

    async def summary(self, actor: Actor) -> dict[str, dict[str, int]]:
        return {
            quota_type.value: {
                "limit": get_limit(actor.trust_level, quota_type),
                "used": await self.get_usage(actor, quota_type),
            }
            for quota_type in QuotaType
        }


def get_quota_service(db: AsyncSession) -> QuotaService:
    """Factory function for QuotaService."""
    return QuotaService(db)
