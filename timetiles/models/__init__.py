"""
SQLModel/SQLAlchemy ORM models.

Models are imported lazily to avoid circular import issues.
Import specific models directly:
    from timetiles.models.dataset import Dataset
    from timetiles.models.event import Event

Or import all at once (after all modules are loaded):
    from timetiles.models import Dataset, Event, ImportJob
"""

from importlib import import_module

# Re-export SQLModel for convenience
from sqlmodel import SQLModel

__all__ = [
    "SQLModel",
    # Base
    "BaseTableModel",
    # Models
    "Catalog",
    "Dataset",
    "SchemaVersion",
    "ImportFile",
    "ImportJob",
    "Event",
    "LocationCache",
    "GeocodingProvider",
    "ScheduledImport",
    "UrlFetchCache",
    "QuotaUsage",
    "AuditLog",
    "import_all_models",
]

# Attribute name -> defining module
_MODEL_MODULES = {
    "BaseTableModel": "timetiles.models.base",
    "Catalog": "timetiles.models.catalog",
    "Dataset": "timetiles.models.dataset",
    "SchemaVersion": "timetiles.models.schema_version",
    "ImportFile": "timetiles.models.import_file",
    "ImportJob": "timetiles.models.import_job",
    "Event": "timetiles.models.event",
    "LocationCache": "timetiles.models.location_cache",
    "GeocodingProvider": "timetiles.models.geocoding_provider",
    "ScheduledImport": "timetiles.models.scheduled_import",
    "UrlFetchCache": "timetiles.models.url_fetch_cache",
    "QuotaUsage": "timetiles.models.quota_usage",
    "AuditLog": "timetiles.models.audit_log",
}


def import_all_models() -> list[type]:
    """Import every table model so SQLModel.metadata knows all tables (FK ordering)."""
    return [
        getattr(import_module(module), name)
        for name, module in _MODEL_MODULES.items()
        if name != "BaseTableModel"
    ]


def __getattr__(name: str):
    """
    Lazy import of models to avoid circular import issues.

    This is called when an attribute is accessed that doesn't exist
    in the module namespace. We use it to defer model imports until
    they're actually needed.
    """
    module = _MODEL_MODULES.get(name)
    if module is not None:
        return getattr(import_module(module), name)

    raise AttributeError(f"module 'timetiles.models' has no attribute '{name}'")
