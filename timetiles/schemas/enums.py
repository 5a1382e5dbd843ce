"""
Enum definitions for the TimeTiles application.

All enums are defined as StrEnum for JSON serialization compatibility.
Database stores these as VARCHAR - validation happens at Pydantic/FastAPI layer.
"""

from enum import StrEnum

__all__ = [
    "ImportStage",
    "StageStatus",
    "StageOutcome",
    "ImportFileStatus",
    "IdStrategyType",
    "DuplicateStrategy",
    "RecordClassification",
    "CoordinateSource",
    "ValidationStatus",
    "GeocodingProviderType",
    "ProviderSelectionStrategy",
    "ScheduleFrequency",
    "ScheduleType",
    "ExecutionStatus",
    "TriggerType",
    "DatasetMappingMode",
    "AuthType",
    "TransformType",
    "QuotaType",
]


class ImportStage(StrEnum):
    """
    Import job stages.

    State machine:
    analyze_duplicates -> detect_schema -> validate_schema
        -> await_approval -> create_schema_version   (breaking / not auto-approved)
        -> create_schema_version                     (otherwise)
    create_schema_version -> geocode_batch -> create_events -> completed
    Any non-terminal stage -> failed
    """

    ANALYZE_DUPLICATES = "analyze-duplicates"
    DETECT_SCHEMA = "detect-schema"
    VALIDATE_SCHEMA = "validate-schema"
    AWAIT_APPROVAL = "await-approval"
    CREATE_SCHEMA_VERSION = "create-schema-version"
    GEOCODE_BATCH = "geocode-batch"
    CREATE_EVENTS = "create-events"
    COMPLETED = "completed"
    FAILED = "failed"


class StageStatus(StrEnum):
    """Status of a single stage inside an import job."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class StageOutcome(StrEnum):
    """Result of running a stage, fed into the transition table."""

    SUCCESS = "success"
    NEEDS_APPROVAL = "needs_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"


class ImportFileStatus(StrEnum):
    """Import file lifecycle."""

    PENDING = "pending"
    PARSING = "parsing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class IdStrategyType(StrEnum):
    """How an event's stable identity is derived."""

    EXTERNAL = "external"
    COMPUTED = "computed"
    AUTO = "auto"
    HYBRID = "hybrid"


class DuplicateStrategy(StrEnum):
    """What happens to records that already exist in the dataset."""

    SKIP = "skip"
    UPDATE = "update"
    VERSION = "version"


class RecordClassification(StrEnum):
    """Per-record outcome of duplicate analysis."""

    NEW = "new"
    INTERNAL_DUPLICATE = "internal_duplicate"
    EXTERNAL_DUPLICATE = "external_duplicate"
    UPDATE_CANDIDATE = "update_candidate"


class CoordinateSource(StrEnum):
    """Where an event's coordinates came from."""

    IMPORT = "import"
    GEOCODED = "geocoded"
    MANUAL = "manual"
    NONE = "none"


class ValidationStatus(StrEnum):
    """Outcome of coordinate validation."""

    VALID = "valid"
    OUT_OF_RANGE = "out_of_range"
    SUSPICIOUS_ZERO = "suspicious_zero"
    SWAPPED_AXIS = "swapped_axis"
    INVALID = "invalid"


class GeocodingProviderType(StrEnum):
    """Supported external geocoding services."""

    GOOGLE = "google"
    OPENCAGE = "opencage"
    NOMINATIM = "nominatim"


class ProviderSelectionStrategy(StrEnum):
    """How providers are ordered for a lookup."""

    PRIORITY = "priority"
    TAG_BASED = "tag_based"


class ScheduleFrequency(StrEnum):
    """Predefined schedule frequencies."""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ScheduleType(StrEnum):
    """Whether a schedule uses a frequency or a cron expression."""

    FREQUENCY = "frequency"
    CRON = "cron"


class ExecutionStatus(StrEnum):
    """Status of a scheduled import execution."""

    SUCCESS = "success"
    FAILED = "failed"
    ERROR = "error"
    RUNNING = "running"


class TriggerType(StrEnum):
    """Who or what started a scheduled import execution."""

    SCHEDULE = "schedule"
    MANUAL = "manual"
    WEBHOOK = "webhook"


class DatasetMappingMode(StrEnum):
    """How sheets of a fetched file map onto datasets."""

    AUTO = "auto"
    SINGLE = "single"
    MULTIPLE = "multiple"


class AuthType(StrEnum):
    """Authentication used when fetching a remote source."""

    NONE = "none"
    API_KEY = "api-key"
    BEARER = "bearer"
    BASIC = "basic"


class TransformType(StrEnum):
    """Field transformations offered at the approval gate."""

    RENAME = "rename"
    TYPE_CAST = "type_cast"
    STRING_OP = "string_op"
    CONCATENATE = "concatenate"
    SPLIT = "split"


class QuotaType(StrEnum):
    """Quota dimensions checked before work is accepted."""

    ACTIVE_SCHEDULES = "active_schedules"
    URL_FETCHES_PER_DAY = "url_fetches_per_day"
    FILE_UPLOADS_PER_DAY = "file_uploads_per_day"
    EVENTS_PER_IMPORT = "events_per_import"
    TOTAL_EVENTS = "total_events"
    IMPORT_JOBS_PER_DAY = "import_jobs_per_day"
    FILE_SIZE_MB = "file_size_mb"
