"""
Error bodies and status codes.

Every failure leaves the API as ``{"success": false, "error": {...}}`` where
``error`` is :meth:`BaseError.to_dict`; the status code is derived from the
error's category and code.
"""

import traceback
from typing import Any, Dict

from .exceptions import (
    NOT_FOUND_CODES,
    BaseError,
    ErrorCategory,
    ErrorCode,
    ErrorSeverity,
    SystemError,
)

_CONFLICT_CODES = frozenset(
    {
        ErrorCode.WOULD_CYCLE,
        ErrorCode.DUPLICATE_DEPENDENCY,
        ErrorCode.DEPENDENCY_NOT_SATISFIED,
        ErrorCode.PLAN_ARCHIVED,
        ErrorCode.PLAN_ALREADY_EXISTS,
        ErrorCode.NOTHING_TO_UNDO,
        ErrorCode.VERSION_CONFLICT,
    }
)
_UNPROCESSABLE_CODES = frozenset({ErrorCode.SELF_REFERENCE, ErrorCode.CROSS_PLAN})


def as_engine_error(exception: Exception) -> BaseError:
    """Wrap anything that is not already a :class:`BaseError`."""
    if isinstance(exception, BaseError):
        return exception
    return SystemError(message=str(exception), cause=exception, severity=ErrorSeverity.HIGH)


def handle_api_error(exception: Exception, include_debug: bool = False) -> Dict[str, Any]:
    """API response body; ``include_debug`` adds the root cause and its traceback."""
    error = as_engine_error(exception)
    body = error.to_dict()
    cause = error.cause
    if include_debug and cause is not None:
        body["debug_info"] = {
            "cause_type": type(cause).__name__,
            "cause_message": str(cause),
            "traceback": traceback.format_exception(type(cause), cause, cause.__traceback__)
            if cause.__traceback__
            else None,
        }
    return {"success": False, "error": body}


def error_log_record(exception: Exception) -> Dict[str, Any]:
    """Flat dict for ``logger.error(..., extra=...)``."""
    error = as_engine_error(exception)
    record = {
        "error_id": error.error_id,
        "error_code": error.error_code,
        "error_category": error.category.value,
        "error_severity": error.severity.value,
    }
    if error.cause is not None:
        record["error_cause"] = f"{type(error.cause).__name__}: {error.cause}"
    return record


def map_error_to_http_status(error: BaseError) -> int:
    if error.category == ErrorCategory.VALIDATION:
        return 400
    if error.error_code in NOT_FOUND_CODES:
        return 404
    if error.error_code in _UNPROCESSABLE_CODES:
        return 422
    if error.error_code == ErrorCode.VALIDATION_TIMEOUT:
        return 503
    if error.error_code in _CONFLICT_CODES or error.category == ErrorCategory.CONCURRENCY:
        return 409
    if error.category == ErrorCategory.BUSINESS:
        return 400
    return 500
