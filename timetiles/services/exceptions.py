"""
Domain exceptions for the service layer.

These exceptions are raised by services and caught by API routes
to convert into appropriate HTTP responses.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(ServiceError):
    """Entity not found."""

    def __init__(self, entity: str, identifier: str | None = None):
        self.entity = entity
        self.identifier = identifier
        message = f"{entity} not found"
        if identifier:
            message = f"{entity} with identifier '{identifier}' not found"
        super().__init__(message)


class ConflictError(ServiceError):
    """Entity already exists or conflict occurred."""

    def __init__(self, entity: str, field: str, value: str):
        self.entity = entity
        self.field = field
        self.value = value
        message = f"{entity} with {field} '{value}' already exists"
        super().__init__(message)


class ValidationError(ServiceError):
    """Validation error in service layer."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class InvalidStateTransitionError(ServiceError):
    """Invalid status/state transition."""

    def __init__(self, entity: str, current_state: str, target_state: str):
        self.entity = entity
        self.current_state = current_state
        self.target_state = target_state
        message = f"Cannot transition {entity} from '{current_state}' to '{target_state}'"
        super().__init__(message)


class TransientExternalFailure(ServiceError):
    """Provider timeout, 5xx or rate limit. Retried with backoff."""

    def __init__(self, message: str, source: str | None = None):
        self.source = source
        super().__init__(message)


class QuotaExceededError(ServiceError):
    """Actor is over a usage quota. Fails fast, never retried."""

    def __init__(self, quota_type: str, limit: int, current: int):
        self.quota_type = quota_type
        self.limit = limit
        self.current = current
        message = f"Quota '{quota_type}' exceeded: {current} of {limit} used"
        super().__init__(message)


class ConfigurationError(ServiceError):
    """Missing credentials or malformed configuration. Retrying cannot succeed."""


class SchemaLockBusyError(ServiceError):
    """Another import job holds the dataset's schema-version lock."""

    def __init__(self, dataset_id: int, holder_job_id: int | None = None):
        self.dataset_id = dataset_id
        self.holder_job_id = holder_job_id
        super().__init__(f"Schema lock for dataset {dataset_id} is held by job {holder_job_id}")
