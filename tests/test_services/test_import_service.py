"""
Tests for queueing import files and for per-actor quotas.
"""

from __future__ import annotations

import io
from pathlib import Path

import openpyxl
import pytest
from sqlalchemy import select

from timetiles.core.config import QuotaSettings
from timetiles.models.base import utc_now
from timetiles.models.catalog import Catalog
from timetiles.models.dataset import Dataset
from timetiles.models.event import Event
from timetiles.models.quota_usage import QuotaUsage
from timetiles.models.scheduled_import import ScheduledImport
from timetiles.schemas.common import Actor
from timetiles.schemas.enums import DatasetMappingMode, ImportFileStatus, ImportStage, QuotaType
from timetiles.schemas.jsonb_types import DatasetMapping, SheetMapping
from timetiles.services.exceptions import QuotaExceededError, ValidationError
from timetiles.services.import_service import ImportService
from timetiles.services.quota_service import UNLIMITED, QuotaService, get_limit

CSV = b"id,title,city\n1,Jazz,Riga\n2,Rock,Berlin\n"
TRUSTED = Actor(id="alice", trust_level=2)
UNTRUSTED = Actor(id="mallory", trust_level=0)


def two_sheet_workbook() -> bytes:
    workbook = openpyxl.Workbook()
    first = workbook.active
    first.title = "Concerts"
    first.append(["id", "title"])
    first.append([1, "Jazz"])
    second = workbook.create_sheet("Talks")
    second.append(["id", "title"])
    second.append([1, "Keynote"])
    workbook.create_sheet("Blank")
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


# =============================================================================
# Quotas
# =============================================================================


class TestQuotaService:
    def test_limits_by_trust_level(self):
        assert get_limit(0, QuotaType.FILE_UPLOADS_PER_DAY) == 1
        assert get_limit(0, QuotaType.ACTIVE_SCHEDULES) == 0
        assert get_limit(5, QuotaType.TOTAL_EVENTS) == UNLIMITED
        assert get_limit(9, QuotaType.FILE_SIZE_MB) == get_limit(5, QuotaType.FILE_SIZE_MB)

    async def test_daily_counter(self, db_session):
        quotas = QuotaService(db_session)
        await quotas.consume(UNTRUSTED, QuotaType.FILE_UPLOADS_PER_DAY)
        await db_session.commit()

        assert await quotas.get_usage(UNTRUSTED, QuotaType.FILE_UPLOADS_PER_DAY) == 1
        with pytest.raises(QuotaExceededError) as exc_info:
            await quotas.check(UNTRUSTED, QuotaType.FILE_UPLOADS_PER_DAY)
        assert exc_info.value.limit == 1
        # Counters are per actor
        await quotas.check(Actor(id="other", trust_level=0), QuotaType.FILE_UPLOADS_PER_DAY)

    async def test_per_request_quota(self, db_session):
        quotas = QuotaService(db_session)
        await quotas.check(UNTRUSTED, QuotaType.EVENTS_PER_IMPORT, 100)
        with pytest.raises(QuotaExceededError):
            await quotas.check(UNTRUSTED, QuotaType.EVENTS_PER_IMPORT, 101)

    async def test_active_schedules_are_counted(self, db_session, catalog):
        db_session.add(
            ScheduledImport(name="feed", source_url="https://x.org/a.csv", catalog_id=catalog.id, created_by="bob")
        )
        await db_session.commit()
        bob = Actor(id="bob", trust_level=1)
        assert await QuotaService(db_session).get_usage(bob, QuotaType.ACTIVE_SCHEDULES) == 1
        with pytest.raises(QuotaExceededError):
            await QuotaService(db_session).check(bob, QuotaType.ACTIVE_SCHEDULES)

    async def test_disabled_quotas(self, db_session):
        quotas = QuotaService(db_session, QuotaSettings(enabled=False))
        await quotas.check(UNTRUSTED, QuotaType.ACTIVE_SCHEDULES)

    async def test_summary(self, db_session):
        summary = await QuotaService(db_session).summary(TRUSTED)
        assert summary["file_uploads_per_day"] == {"limit": 10, "used": 0}

    async def test_total_events_follow_the_uploader(self, db_session, catalog, dataset, import_settings):
        """Events count against whoever uploaded them, not the dataset owner."""
        import_file = await ImportService(db_session, import_settings).queue_file(
            CSV, "events.csv", "text/csv", catalog, TRUSTED, dataset=dataset
        )
        (job,) = await ImportService(db_session, import_settings).get_jobs(import_file)
        for key in ("1", "2", "3"):
            db_session.add(
                Event(
                    dataset_id=dataset.id,
                    import_job_id=job.id,
                    unique_id=f"{dataset.id}:ext:{key}",
                    content_hash=key * 8,
                    data={"id": key},
                )
            )
        await db_session.commit()

        quotas = QuotaService(db_session)
        assert await quotas.get_usage(TRUSTED, QuotaType.TOTAL_EVENTS) == 3
        assert await quotas.get_usage(Actor(id=dataset.created_by, trust_level=2), QuotaType.TOTAL_EVENTS) == 0

        dataset.deleted_at = utc_now()
        db_session.add(dataset)
        await db_session.commit()
        assert await quotas.get_usage(TRUSTED, QuotaType.TOTAL_EVENTS) == 0


# =============================================================================
# Queueing
# =============================================================================


class TestQueueFile:
    async def test_csv_into_existing_dataset(self, db_session, catalog, dataset, import_settings):
        service = ImportService(db_session, import_settings)
        import_file = await service.queue_file(CSV, "events.csv", "text/csv", catalog, TRUSTED, dataset=dataset)

        assert import_file.status == ImportFileStatus.PROCESSING
        assert import_file.file_type == "csv"
        assert import_file.trust_level == 2
        assert Path(import_file.storage_path).read_bytes() == CSV
        assert import_file.sheets[0]["row_count"] == 2

        jobs = await service.get_jobs(import_file)
        assert len(jobs) == 1
        assert jobs[0].dataset_id == dataset.id
        assert jobs[0].stage == ImportStage.ANALYZE_DUPLICATES

        usage = (await db_session.execute(select(QuotaUsage).order_by(QuotaUsage.quota_type))).scalars().all()
        assert {(u.quota_type, u.count) for u in usage} == {
            (QuotaType.FILE_UPLOADS_PER_DAY, 1),
            (QuotaType.IMPORT_JOBS_PER_DAY, 1),
        }

    async def test_auto_mode_creates_dataset_per_sheet(self, db_session, catalog, import_settings):
        service = ImportService(db_session, import_settings)
        import_file = await service.queue_file(two_sheet_workbook(), "program.xlsx", None, catalog, TRUSTED)

        jobs = await service.get_jobs(import_file)
        assert [job.sheet_index for job in jobs] == [0, 1]
        names = (await db_session.execute(select(Dataset.name).order_by(Dataset.name))).scalars().all()
        assert names == ["Concerts", "Talks"]

    async def test_single_sheet_dataset_named_after_file(self, db_session, catalog, import_settings):
        service = ImportService(db_session, import_settings)
        await service.queue_file(CSV, "city-events.csv", "text/csv", catalog, TRUSTED)
        names = (await db_session.execute(select(Dataset.name))).scalars().all()
        assert names == ["city-events"]

    async def test_multiple_mode_skips_unmapped_sheets(self, db_session, catalog, dataset, import_settings):
        mapping = DatasetMapping(
            mode=DatasetMappingMode.MULTIPLE,
            sheet_mappings=[SheetMapping(sheet_index=1, dataset_uuid=str(dataset.uuid))],
        )
        service = ImportService(db_session, import_settings)
        import_file = await service.queue_file(
            two_sheet_workbook(), "program.xlsx", None, catalog, TRUSTED, mapping=mapping
        )
        jobs = await service.get_jobs(import_file)
        assert [(job.sheet_index, job.dataset_id) for job in jobs] == [(1, dataset.id)]

    async def test_dataset_from_other_catalog(self, db_session, catalog, dataset, import_settings):
        other = Catalog(name="Other", slug="other")
        db_session.add(other)
        await db_session.commit()
        with pytest.raises(ValidationError):
            await ImportService(db_session, import_settings).queue_file(
                CSV, "a.csv", "text/csv", other, TRUSTED, dataset=dataset
            )

    @pytest.mark.parametrize(
        ("content", "filename"),
        [(b"", "a.csv"), (b"just words", None), (b"\xd0\xcf\x11\xe0legacy", "old.xls"), (b"id\n", "a.csv")],
    )
    async def test_rejected_files(self, db_session, catalog, import_settings, content, filename):
        with pytest.raises(ValidationError):
            await ImportService(db_session, import_settings).queue_file(content, filename, None, catalog, TRUSTED)

    async def test_upload_quota_fails_before_writing(self, db_session, catalog, dataset, import_settings):
        service = ImportService(db_session, import_settings)
        await service.queue_file(CSV, "a.csv", "text/csv", catalog, UNTRUSTED, dataset=dataset)
        with pytest.raises(QuotaExceededError):
            await service.queue_file(CSV, "b.csv", "text/csv", catalog, UNTRUSTED, dataset=dataset)
        assert len(list(Path(import_settings.upload_dir).iterdir())) == 1

    async def test_job_quota_counts_with_the_file(self, db_session, catalog, import_settings):
        with pytest.raises(QuotaExceededError) as exc_info:
            await ImportService(db_session, import_settings).queue_file(
                two_sheet_workbook(), "program.xlsx", None, catalog, UNTRUSTED
            )
        assert exc_info.value.quota_type == QuotaType.IMPORT_JOBS_PER_DAY
        assert not any(Path(import_settings.upload_dir).glob("*"))
        await db_session.rollback()
        assert (await db_session.execute(select(QuotaUsage))).scalars().all() == []

    async def test_row_quota(self, db_session, catalog, dataset, import_settings):
        rows = "\n".join(f"{i},t{i}" for i in range(101))
        content = f"id,title\n{rows}\n".encode()
        with pytest.raises(QuotaExceededError) as exc_info:
            await ImportService(db_session, import_settings).queue_file(
                content, "big.csv", "text/csv", catalog, UNTRUSTED, dataset=dataset
            )
        assert exc_info.value.quota_type == QuotaType.EVENTS_PER_IMPORT

    async def test_scheduled_fetch_does_not_count_upload(self, db_session, catalog, dataset, import_settings):
        service = ImportService(db_session, import_settings)
        for _ in range(2):
            await service.queue_file(
                CSV, "feed.csv", "text/csv", catalog, TRUSTED, dataset=dataset, count_upload=False
            )
        assert await QuotaService(db_session).get_usage(TRUSTED, QuotaType.FILE_UPLOADS_PER_DAY) == 0
