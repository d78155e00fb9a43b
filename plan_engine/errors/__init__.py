"""
Error handling for the engine.

Exception classes for every failure the engine reports, plus the helpers
that turn them into API bodies, log records and HTTP status codes.
"""

from .exceptions import (
    BaseError,
    BusinessError,
    ConcurrencyError,
    CrossPlanError,
    DatabaseError,
    DependencyNotSatisfiedError,
    DuplicateDependencyError,
    ErrorCategory,
    ErrorCode,
    ErrorSeverity,
    MutationCancelledError,
    NotFoundError,
    NothingToUndoError,
    PlanArchivedError,
    SelfReferenceError,
    SystemError,
    ValidationError,
    ValidationTimeoutError,
    VersionConflictError,
    WouldCycleError,
)
from .handlers import as_engine_error, error_log_record, handle_api_error, map_error_to_http_status

__all__ = [
    "BaseError",
    "BusinessError",
    "ConcurrencyError",
    "CrossPlanError",
    "DatabaseError",
    "DependencyNotSatisfiedError",
    "DuplicateDependencyError",
    "ErrorCategory",
    "ErrorCode",
    "ErrorSeverity",
    "MutationCancelledError",
    "NotFoundError",
    "NothingToUndoError",
    "PlanArchivedError",
    "SelfReferenceError",
    "SystemError",
    "ValidationError",
    "ValidationTimeoutError",
    "VersionConflictError",
    "WouldCycleError",
    "as_engine_error",
    "error_log_record",
    "handle_api_error",
    "map_error_to_http_status",
]
