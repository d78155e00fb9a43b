"""
Unified exception hierarchy

Every error raised by the engine carries a numeric code, a category used to
pick the HTTP status, a severity used for logging, and a ``context`` dict
holding the ids (tasks, edges, versions) a caller needs to build a corrective
retry.
"""

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    BUSINESS = "business"
    VALIDATION = "validation"
    CONCURRENCY = "concurrency"
    SYSTEM = "system"
    DATABASE = "database"


class ErrorCode:
    """Error code registry."""

    # Business rules (1000-1999)
    BUSINESS_RULE_VIOLATION = 1001
    PLAN_NOT_FOUND = 1002
    PHASE_NOT_FOUND = 1003
    TASK_NOT_FOUND = 1004
    DEPENDENCY_NOT_FOUND = 1005
    SELF_REFERENCE = 1010
    WOULD_CYCLE = 1011
    CROSS_PLAN = 1012
    DUPLICATE_DEPENDENCY = 1013
    DEPENDENCY_NOT_SATISFIED = 1014
    PLAN_ARCHIVED = 1020
    PLAN_ALREADY_EXISTS = 1021
    NOTHING_TO_UNDO = 1022

    # Validation (2000-2999)
    MISSING_REQUIRED_FIELD = 2001
    INVALID_FIELD_FORMAT = 2002
    FIELD_VALUE_OUT_OF_RANGE = 2003
    SCHEMA_VALIDATION_FAILED = 2005

    # System (3000-3999)
    INTERNAL_SERVER_ERROR = 3001
    SERVICE_UNAVAILABLE = 3002
    CONFIGURATION_ERROR = 3004

    # Concurrency (4000-4999)
    VERSION_CONFLICT = 4001
    VALIDATION_TIMEOUT = 4002
    MUTATION_CANCELLED = 4003

    # Storage (5000-5999)
    DATABASE_CONNECTION_FAILED = 5001
    QUERY_EXECUTION_FAILED = 5002
    TRANSACTION_FAILED = 5003


NOT_FOUND_CODES = {
    ErrorCode.PLAN_NOT_FOUND,
    ErrorCode.PHASE_NOT_FOUND,
    ErrorCode.TASK_NOT_FOUND,
    ErrorCode.DEPENDENCY_NOT_FOUND,
}


class BaseError(Exception):
    """
    Base class of every engine error.

    Subclasses fix the category; instances log themselves on construction at
    a level derived from their severity.
    """

    def __init__(
        self,
        message: str,
        error_code: int,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.category = category
        self.severity = severity

        self.error_id = str(uuid.uuid4())
        self.timestamp = datetime.now()

        self.context = context or {}
        self.cause = cause
        self.suggestions = suggestions or []

        self._log_error()

    def _log_error(self):
        logger = logging.getLogger(self.__class__.__module__)

        log_data = {
            "error_id": self.error_id,
            "error_code": self.error_code,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
        }

        if self.severity == ErrorSeverity.CRITICAL:
            logger.critical("Critical Error: %s", log_data)
        elif self.severity == ErrorSeverity.HIGH:
            logger.error("High Severity Error: %s", log_data)
        elif self.severity == ErrorSeverity.MEDIUM:
            logger.warning("Medium Severity Error: %s", log_data)
        else:
            logger.info("Low Severity Error: %s", log_data)

    def to_dict(self) -> Dict[str, Any]:
        """Dictionary form used for API responses."""
        return {
            "error_id": self.error_id,
            "error_code": self.error_code,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
            "suggestions": self.suggestions,
        }

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.category.value}: {self.message}"


class BusinessError(BaseError):
    """Business rule violations (graph integrity, plan lifecycle)."""

    def __init__(
        self,
        message: str,
        error_code: int = ErrorCode.BUSINESS_RULE_VIOLATION,
        severity: ErrorSeverity = ErrorSeverity.LOW,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            category=ErrorCategory.BUSINESS,
            severity=severity,
            context=context,
            cause=cause,
            suggestions=suggestions,
        )


class ValidationError(BaseError):
    """Malformed input; never retried automatically."""

    def __init__(
        self,
        message: str,
        error_code: int = ErrorCode.INVALID_FIELD_FORMAT,
        field_name: Optional[str] = None,
        field_value: Any = None,
        context: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
    ):
        validation_context = dict(context or {})
        if field_name:
            validation_context["field_name"] = field_name
        if field_value is not None:
            validation_context["field_value"] = field_value

        super().__init__(
            message=message,
            error_code=error_code,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            context=validation_context,
            suggestions=suggestions,
        )


class NotFoundError(BusinessError):
    """Plan, phase, task or dependency absent. Terminal."""

    def __init__(self, message: str, error_code: int = ErrorCode.TASK_NOT_FOUND, **ids: Any):
        super().__init__(message, error_code=error_code, context=dict(ids))


class SelfReferenceError(BusinessError):
    def __init__(self, task_id: int):
        super().__init__(
            f"Task {task_id} cannot depend on itself",
            error_code=ErrorCode.SELF_REFERENCE,
            context={"prerequisite_task_id": task_id, "dependent_task_id": task_id},
        )


class WouldCycleError(BusinessError):
    def __init__(self, prerequisite_task_id: int, dependent_task_id: int, path: Optional[List[int]] = None):
        super().__init__(
            f"Dependency {prerequisite_task_id} -> {dependent_task_id} would create a cycle",
            error_code=ErrorCode.WOULD_CYCLE,
            context={
                "prerequisite_task_id": prerequisite_task_id,
                "dependent_task_id": dependent_task_id,
                "existing_path": list(path or []),
            },
            suggestions=["Remove the reverse dependency first"],
        )


class CrossPlanError(BusinessError):
    def __init__(self, prerequisite_plan_id: int, dependent_plan_id: int, prerequisite_task_id: int, dependent_task_id: int):
        super().__init__(
            "Dependencies may only link tasks of the same plan",
            error_code=ErrorCode.CROSS_PLAN,
            context={
                "prerequisite_plan_id": prerequisite_plan_id,
                "dependent_plan_id": dependent_plan_id,
                "prerequisite_task_id": prerequisite_task_id,
                "dependent_task_id": dependent_task_id,
            },
        )


class DuplicateDependencyError(BusinessError):
    def __init__(self, prerequisite_task_id: int, dependent_task_id: int, edge_id: int):
        super().__init__(
            f"Task {dependent_task_id} already depends on task {prerequisite_task_id}",
            error_code=ErrorCode.DUPLICATE_DEPENDENCY,
            context={
                "prerequisite_task_id": prerequisite_task_id,
                "dependent_task_id": dependent_task_id,
                "edge_id": edge_id,
            },
        )


class DependencyNotSatisfiedError(BusinessError):
    def __init__(self, task_id: int, requested_status: str, blocking_task_ids: List[int]):
        super().__init__(
            f"Task {task_id} is blocked by incomplete prerequisites {blocking_task_ids}",
            error_code=ErrorCode.DEPENDENCY_NOT_SATISFIED,
            context={
                "task_id": task_id,
                "requested_status": requested_status,
                "blocking_task_ids": list(blocking_task_ids),
            },
            suggestions=[
                "Complete the prerequisite tasks first",
                "Resend with override_dependencies=true to bypass deliberately",
            ],
        )


class PlanArchivedError(BusinessError):
    def __init__(self, plan_id: int):
        super().__init__(
            f"Plan {plan_id} is archived and read-only",
            error_code=ErrorCode.PLAN_ARCHIVED,
            context={"plan_id": plan_id},
            suggestions=["Reactivate the plan before editing it"],
        )


class NothingToUndoError(BusinessError):
    def __init__(self, plan_id: int, actor_id: str, skipped_versions: Optional[List[int]] = None):
        super().__init__(
            f"Actor {actor_id} has no undoable change on plan {plan_id}",
            error_code=ErrorCode.NOTHING_TO_UNDO,
            context={"plan_id": plan_id, "actor_id": actor_id, "skipped_versions": list(skipped_versions or [])},
        )


class ConcurrencyError(BaseError):
    """Optimistic-concurrency and mutation-lane failures."""

    def __init__(
        self,
        message: str,
        error_code: int,
        severity: ErrorSeverity = ErrorSeverity.LOW,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            category=ErrorCategory.CONCURRENCY,
            severity=severity,
            context=context,
            cause=cause,
            suggestions=suggestions,
        )


class VersionConflictError(ConcurrencyError):
    """Stale ``expected_version``; carries the current state for the caller."""

    def __init__(self, plan_id: int, expected_version: int, current_version: int, current_state: Any = None):
        self.current_state = current_state
        state_payload = None
        if current_state is not None:
            state_payload = current_state.model_dump(mode="json")
        super().__init__(
            f"Plan {plan_id} is at version {current_version}, not {expected_version}",
            error_code=ErrorCode.VERSION_CONFLICT,
            context={
                "plan_id": plan_id,
                "expected_version": expected_version,
                "current_version": current_version,
                "current_state": state_payload,
            },
            suggestions=["Refetch the plan and re-apply your change against the current version"],
        )


class ValidationTimeoutError(ConcurrencyError):
    """Validation exceeded its budget; safe to retry."""

    def __init__(self, plan_id: int, timeout: float, operation: str):
        super().__init__(
            f"Validation of {operation} on plan {plan_id} exceeded {timeout:.2f}s",
            error_code=ErrorCode.VALIDATION_TIMEOUT,
            severity=ErrorSeverity.MEDIUM,
            context={"plan_id": plan_id, "timeout": timeout, "operation": operation},
            suggestions=["Retry the request"],
        )


class MutationCancelledError(ConcurrencyError):
    def __init__(self, plan_id: int, operation: str, reason: str = "cancelled"):
        super().__init__(
            f"Mutation {operation} on plan {plan_id} was abandoned before it ran ({reason})",
            error_code=ErrorCode.MUTATION_CANCELLED,
            context={"plan_id": plan_id, "operation": operation, "reason": reason},
        )


class SystemError(BaseError):
    def __init__(
        self,
        message: str,
        error_code: int = ErrorCode.INTERNAL_SERVER_ERROR,
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            category=ErrorCategory.SYSTEM,
            severity=severity,
            context=context,
            cause=cause,
            suggestions=suggestions,
        )


class DatabaseError(BaseError):
    """Storage unavailable or a write failed; the mutation was not applied."""

    def __init__(
        self,
        message: str,
        error_code: int = ErrorCode.QUERY_EXECUTION_FAILED,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        db_context = dict(context or {})
        if operation:
            db_context["operation"] = operation
        super().__init__(
            message=message,
            error_code=error_code,
            category=ErrorCategory.DATABASE,
            severity=ErrorSeverity.HIGH,
            context=db_context,
            cause=cause,
            suggestions=["Retry once storage is reachable"],
        )
