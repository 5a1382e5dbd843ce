"""
Pydantic schemas for request/response validation.

Re-exports the most used schemas for convenient importing:
    from timetiles.schemas import DatasetCreate, EventFilters, ImportStage
"""

# Common schemas
from timetiles.schemas.common import (
    Actor,
    HealthResponse,
    PaginatedResponse,
    PaginationParams,
)

# Enums
from timetiles.schemas.enums import (
    CoordinateSource,
    DuplicateStrategy,
    ExecutionStatus,
    IdStrategyType,
    ImportFileStatus,
    ImportStage,
    QuotaType,
    StageOutcome,
    ValidationStatus,
)

# JSON column types
from timetiles.schemas.jsonb_types import (
    AuthConfig,
    CachePolicy,
    DatasetMapping,
    IdStrategyConfig,
    RetryConfig,
    RowError,
    SchemaConfig,
    TransformRule,
)

# Entity schemas - Catalog
from timetiles.schemas.catalog import (
    CatalogCreate,
    CatalogRead,
    CatalogUpdate,
)

# Entity schemas - Dataset
from timetiles.schemas.dataset import (
    DatasetCreate,
    DatasetRead,
    DatasetUpdate,
    SchemaVersionRead,
)

# Imports
from timetiles.schemas.imports import (
    ApproveRequest,
    ImportFileRead,
    ImportJobRead,
    ImportJobSummary,
    RejectRequest,
)

# Events and aggregation
from timetiles.schemas.event import (
    BoundingBox,
    ClusterRead,
    EventFilters,
    EventRead,
    HistogramBucket,
)

# Scheduled imports
from timetiles.schemas.scheduled_import import (
    ScheduledImportCreate,
    ScheduledImportRead,
    ScheduledImportUpdate,
    TriggerResponse,
)

# Geocoding
from timetiles.schemas.geocoding import (
    CacheStats,
    GeocodeRequest,
    GeocodeResponse,
    GeocodingProviderCreate,
    GeocodingProviderRead,
    GeocodingProviderUpdate,
)

# Audit
from timetiles.schemas.audit_log import AuditLogRead

__all__ = [
    # Common
    "Actor",
    "HealthResponse",
    "PaginatedResponse",
    "PaginationParams",
    # Enums
    "CoordinateSource",
    "DuplicateStrategy",
    "ExecutionStatus",
    "IdStrategyType",
    "ImportFileStatus",
    "ImportStage",
    "QuotaType",
    "StageOutcome",
    "ValidationStatus",
    # JSON column types
    "AuthConfig",
    "CachePolicy",
    "DatasetMapping",
    "IdStrategyConfig",
    "RetryConfig",
    "RowError",
    "SchemaConfig",
    "TransformRule",
    # Catalog
    "CatalogCreate",
    "CatalogRead",
    "CatalogUpdate",
    # Dataset
    "DatasetCreate",
    "DatasetRead",
    "DatasetUpdate",
    "SchemaVersionRead",
    # Imports
    "ApproveRequest",
    "ImportFileRead",
    "ImportJobRead",
    "ImportJobSummary",
    "RejectRequest",
    # Events
    "BoundingBox",
    "ClusterRead",
    "EventFilters",
    "EventRead",
    "HistogramBucket",
    # Scheduled imports
    "ScheduledImportCreate",
    "ScheduledImportRead",
    "ScheduledImportUpdate",
    "TriggerResponse",
    # Geocoding
    "CacheStats",
    "GeocodeRequest",
    "GeocodeResponse",
    "GeocodingProviderCreate",
    "GeocodingProviderRead",
    "GeocodingProviderUpdate",
    # Audit
    "AuditLogRead",
]
