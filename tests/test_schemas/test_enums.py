"""Tests for enum definitions."""

import json

from timetiles.schemas.enums import (
    AuthType,
    DuplicateStrategy,
    ImportStage,
    QuotaType,
    ScheduleFrequency,
    TransformType,
)


class TestEnumValues:
    """Test enum values are correctly defined."""

    def test_import_stage_values(self):
        """Test stages use the hyphenated wire names."""
        assert ImportStage.ANALYZE_DUPLICATES == "analyze-duplicates"
        assert ImportStage.AWAIT_APPROVAL == "await-approval"
        assert ImportStage.COMPLETED == "completed"
        assert len(ImportStage) == 9

    def test_duplicate_strategy_values(self):
        assert {s.value for s in DuplicateStrategy} == {"skip", "update", "version"}

    def test_schedule_frequency_values(self):
        assert [f.value for f in ScheduleFrequency] == ["hourly", "daily", "weekly", "monthly"]

    def test_auth_type_values(self):
        assert AuthType.API_KEY == "api-key"
        assert len(AuthType) == 4

    def test_transform_type_values(self):
        assert TransformType.TYPE_CAST == "type_cast"
        assert len(TransformType) == 5

    def test_quota_type_values(self):
        assert QuotaType.FILE_UPLOADS_PER_DAY == "file_uploads_per_day"
        assert len(QuotaType) == 7


class TestEnumSerialization:
    """Test enums serialize correctly to strings."""

    def test_enum_string_conversion(self):
        assert str(ImportStage.GEOCODE_BATCH) == "geocode-batch"

    def test_enum_json_serializable(self):
        """Test enums are JSON serializable."""
        data = {"stage": ImportStage.CREATE_EVENTS, "strategy": DuplicateStrategy.UPDATE}
        serialized = json.dumps(data)
        assert '"create-events"' in serialized
        assert '"update"' in serialized
