"""
Typed exceptions for forecast synchronisation.

    ForecastSyncError (base)
    |
    +-- ValidationError          missing parent/item identity; aborts that scope
    +-- InvariantViolation       malformed identity key; hard failure, never patched
    +-- StoreError               any failed call against the record store
        +-- TransientStoreError  429 / 5xx / transport failure; retried next pass
        +-- ActionableStoreError other 4xx; escalated to the error reporter
            +-- SchemaDriftError a write named a property the store does not know

Every class carries a machine-readable ``code``.
"""
from typing import Optional


class ForecastSyncError(Exception):
    """Base exception for forecast sync errors."""

    code: str = "FORECAST_SYNC_ERROR"


class ValidationError(ForecastSyncError):
    """Required identity is missing; the caller skips this scope."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or reason)


class InvariantViolation(ForecastSyncError):
    """An identity key (or one of its components) is malformed."""

    code: str = "INVARIANT_VIOLATION"

    def __init__(self, message: str, key: Optional[str] = None):
        self.key = key
        super().__init__(message)


class StoreError(ForecastSyncError):
    """A call against the record store failed."""

    code: str = "STORE_ERROR"

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        object_type: Optional[str] = None,
        object_id: Optional[str] = None,
        body: Optional[dict] = None,
    ):
        self.status = status
        self.object_type = object_type
        self.object_id = object_id
        self.body = body or {}
        super().__init__(message)


class TransientStoreError(StoreError):
    """Rate limit, server error or transport failure."""

    code: str = "STORE_TRANSIENT"


class ActionableStoreError(StoreError):
    """Client-side rejection that someone needs to look at."""

    code: str = "STORE_ACTIONABLE"


class SchemaDriftError(ActionableStoreError):
    """A write referenced a property unknown to the store's schema."""

    code: str = "SCHEMA_DRIFT"

    def __init__(self, property_name: Optional[str], message: Optional[str] = None, **kwargs):
        self.property_name = property_name
        super().__init__(
            message or f'Property "{property_name}" does not exist',
            status=kwargs.pop("status", 400),
            **kwargs,
        )


def is_transient_status(status: Optional[int]) -> bool:
    return status is not None and (status == 429 or status >= 500)


def classify_status(status: Optional[int]) -> type:
    """Exception class for an HTTP status returned by the store."""
    if status is None or is_transient_status(status):
        return TransientStoreError
    if 400 <= status < 500:
        return ActionableStoreError
    return StoreError


def is_actionable(err: BaseException) -> bool:
    """
    Whether an error should reach the error reporter.

    Transient store errors are only logged; errors without a status
    (programming faults, invariant violations) are always reported.
    """
    if isinstance(err, TransientStoreError):
        return False
    if isinstance(err, StoreError):
        return not is_transient_status(err.status)
    return True
