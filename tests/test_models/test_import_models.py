"""Tests for model imports and table registration."""

import pytest
from sqlmodel import SQLModel

import timetiles.models as models
from timetiles.models import import_all_models

EXPECTED_TABLES = {
    "Catalog": "catalogs",
    "Dataset": "datasets",
    "SchemaVersion": "schema_versions",
    "ImportFile": "import_files",
    "ImportJob": "import_jobs",
    "Event": "events",
    "LocationCache": "location_cache",
    "GeocodingProvider": "geocoding_providers",
    "ScheduledImport": "scheduled_imports",
    "UrlFetchCache": "url_fetch_cache",
    "QuotaUsage": "quota_usage",
    "AuditLog": "audit_logs",
}


class TestModelImports:
    """Test that all models can be imported correctly."""

    @pytest.mark.parametrize("name,table", sorted(EXPECTED_TABLES.items()))
    def test_lazy_import(self, name, table):
        """Test each model resolves through the package and names its table."""
        model = getattr(models, name)
        assert model.__tablename__ == table

    def test_import_base_model(self):
        from timetiles.models import BaseTableModel

        assert BaseTableModel.__name__ == "BaseTableModel"

    def test_unknown_attribute(self):
        with pytest.raises(AttributeError):
            models.Project  # noqa: B018


class TestMetadata:
    """Test every table is registered with SQLModel.metadata."""

    def test_import_all_models(self):
        loaded = import_all_models()
        assert {m.__name__ for m in loaded} == set(EXPECTED_TABLES)

    def test_tables_registered(self):
        import_all_models()
        assert set(EXPECTED_TABLES.values()) <= set(SQLModel.metadata.tables)

    def test_event_foreign_key(self):
        import_all_models()
        events = SQLModel.metadata.tables["events"]
        targets = {fk.target_fullname for fk in events.foreign_keys}
        assert "datasets.id" in targets
