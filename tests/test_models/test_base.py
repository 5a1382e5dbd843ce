"""Tests for BaseTableModel, time helpers and model defaults."""

import uuid
from datetime import UTC, datetime, timedelta, timezone

from sqlmodel import SQLModel

from timetiles.models.base import BaseTableModel, ensure_utc, utc_now
from timetiles.models.catalog import Catalog
from timetiles.models.dataset import Dataset
from timetiles.models.event import Event
from timetiles.models.import_job import ImportJob
from timetiles.models.scheduled_import import ScheduledImport
from timetiles.schemas.enums import CoordinateSource, ImportStage, TransformType
from timetiles.schemas.jsonb_types import (
    ExecutionHistoryEntry,
    IdStrategyConfig,
    ImportJobProgress,
    SchemaConfig,
    TransformRule,
)


class TestUtcNow:
    """Test the utc_now and ensure_utc helpers."""

    def test_has_timezone(self):
        """Test utc_now returns timezone-aware datetime."""
        result = utc_now()
        assert isinstance(result, datetime)
        assert result.tzinfo is not None

    def test_ensure_utc_naive(self):
        """Test naive values (as SQLite returns them) are read as UTC."""
        value = ensure_utc(datetime(2024, 5, 1, 12, 0))
        assert value == datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

    def test_ensure_utc_converts_offsets(self):
        value = ensure_utc(datetime(2024, 5, 1, 14, 0, tzinfo=timezone(timedelta(hours=2))))
        assert value.hour == 12
        assert value.tzinfo == UTC

    def test_ensure_utc_none(self):
        assert ensure_utc(None) is None


class TestBaseTableModel:
    """Test BaseTableModel base class features."""

    def test_is_sqlmodel_subclass(self):
        assert issubclass(BaseTableModel, SQLModel)

    def test_common_fields(self):
        """Test every table carries id, uuid, timestamps and soft delete."""
        fields = BaseTableModel.model_fields
        for name in ("id", "uuid", "created_at", "updated_at", "deleted_at"):
            assert name in fields

    def test_uuid_unique_per_instance(self):
        first = Catalog(name="A", slug="a")
        second = Catalog(name="B", slug="b")
        assert isinstance(first.uuid, uuid.UUID)
        assert first.uuid != second.uuid


class TestSoftDelete:
    """Test soft delete and restore."""

    def test_soft_delete_and_restore(self):
        catalog = Catalog(name="A", slug="a")
        assert catalog.is_deleted is False

        catalog.soft_delete()
        assert catalog.deleted_at is not None
        assert catalog.is_deleted is True

        catalog.restore()
        assert catalog.deleted_at is None
        assert catalog.is_deleted is False


class TestModelDefaults:
    """Test default values and typed accessors."""

    def test_dataset_defaults(self):
        """Test JSON config columns default to their typed schema defaults."""
        dataset = Dataset(catalog_id=1, name="Concerts", slug="concerts")
        assert dataset.event_count == 0
        assert dataset.language == "en"
        assert dataset.transforms == []
        assert dataset.schema_lock_job_id is None
        assert dataset.get_id_strategy() == IdStrategyConfig()
        assert dataset.get_schema_config() == SchemaConfig()

    def test_dataset_transforms_round_trip(self):
        dataset = Dataset(catalog_id=1, name="Concerts", slug="concerts")
        dataset.set_transforms([TransformRule(type=TransformType.RENAME, from_field="place", to_field="venue")])
        assert dataset.transforms[0]["type"] == "rename"
        assert dataset.get_transforms()[0].to_field == "venue"

    def test_import_job_defaults(self):
        """Test a new job starts at duplicate analysis with empty progress."""
        job = ImportJob(import_file_id=1, dataset_id=1)
        assert job.stage == ImportStage.ANALYZE_DUPLICATES
        assert job.sheet_index == 0
        assert job.retry_attempts == 0
        assert job.is_terminal is False
        assert job.get_progress() == ImportJobProgress()

    def test_import_job_terminal(self):
        job = ImportJob(import_file_id=1, dataset_id=1, stage=ImportStage.FAILED)
        assert job.is_terminal is True

    def test_event_defaults(self):
        event = Event(dataset_id=1, unique_id="1:ext:a", content_hash="0" * 64, data={})
        assert event.coordinate_source == CoordinateSource.NONE
        assert event.version == 1
        assert event.latitude is None

    def test_scheduled_import_history(self):
        """Test execution history is stored as JSON and read back typed."""
        schedule = ScheduledImport(name="Feed", source_url="https://example.org/a.csv", catalog_id=1)
        assert schedule.enabled is True
        assert schedule.get_history() == []

        entry = ExecutionHistoryEntry(executed_at=utc_now(), status="success")
        schedule.set_history([entry])
        assert schedule.get_history()[0].status == "success"
        assert schedule.get_statistics().total_runs == 0
