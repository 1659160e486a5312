"""Error Hierarchy: typed, categorized exceptions for every time-travel failure mode.

Invariants:
    - Every error has a code (str), category (ErrorCategory), severity (ErrorSeverity)
    - Rejections (validation, not found, invalid transition) are raised before any mutation
    - Oracle failures surface as EvaluationFailedError / AnalysisIncompleteError; callers may retry
    - to_response() produces a JSON-safe envelope for whatever surface sits above the core

Design Decisions:
    - Single hierarchy with TimeTravelError base so callers can catch one type
    - ErrorContext as dataclass: carries ids for logging without coupling to the logger
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from datetime import datetime, timezone


class ErrorSeverity(str, Enum):
    """Error severity for observability and caller handling."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """High-level error categories."""
    VALIDATION = "validation"
    RESOURCE_NOT_FOUND = "resource_not_found"
    STATE_MACHINE = "state_machine"
    INTEGRITY = "integrity"
    DATABASE = "database"
    EXTERNAL_API = "external_api"
    TIMEOUT = "timeout"


@dataclass
class ErrorContext:
    """Ids and debug data attached to an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: str | None = None
    timeline_id: str | None = None
    branch_id: str | None = None
    node_id: str | None = None
    debug_info: dict[str, Any] | None = None


class TimeTravelError(Exception):
    """Base exception for all time-travel errors."""

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: ErrorContext | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()

    @property
    def retryable(self) -> bool:
        """Oracle-driven failures leave no partial state, so the same step can be re-run."""
        return self.category in (ErrorCategory.EXTERNAL_API, ErrorCategory.TIMEOUT)

    def to_response(self) -> dict:
        """Convert to a standardized error envelope."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category.value,
                "severity": self.severity.value,
                "retryable": self.retryable,
                "timestamp": self.context.timestamp.isoformat(),
                "context": {
                    "session_id": self.context.session_id,
                    "timeline_id": self.context.timeline_id,
                    "branch_id": self.context.branch_id,
                    "node_id": self.context.node_id,
                },
            }
        }


# ─── Rejections ─────────────────────────────────────────────────

class ValidationError(TimeTravelError):
    """Malformed input, e.g. a parent branch from another session."""
    def __init__(self, message: str, field: str, context: ErrorContext | None = None):
        super().__init__(
            message, "VALIDATION_ERROR", ErrorCategory.VALIDATION,
            ErrorSeverity.ERROR, context,
        )
        self.field = field


class NotFoundError(TimeTravelError):
    """Referenced entity does not exist."""
    def __init__(
        self, resource_type: str, resource_id: object, context: ErrorContext | None = None,
    ):
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            "RESOURCE_NOT_FOUND", ErrorCategory.RESOURCE_NOT_FOUND,
            ErrorSeverity.ERROR, context,
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class InvalidTransitionError(TimeTravelError):
    """Illegal branch state change (terminal states are final)."""
    def __init__(
        self, current: str, requested: str, context: ErrorContext | None = None,
    ):
        super().__init__(
            f"Branch cannot transition from '{current}' to '{requested}'",
            "INVALID_TRANSITION", ErrorCategory.STATE_MACHINE,
            ErrorSeverity.ERROR, context,
        )
        self.current = current
        self.requested = requested


class CorruptChainError(TimeTravelError):
    """Snapshot chain does not resolve to a full snapshot."""
    def __init__(self, snapshot_id: object, reason: str, context: ErrorContext | None = None):
        super().__init__(
            f"Snapshot chain from '{snapshot_id}' is corrupt: {reason}",
            "CORRUPT_CHAIN", ErrorCategory.INTEGRITY,
            ErrorSeverity.ERROR, context,
        )
        self.snapshot_id = snapshot_id


# ─── Oracle failures ────────────────────────────────────────────

class OracleTimeoutError(TimeTravelError):
    """Oracle call exceeded its time bound."""
    def __init__(self, operation: str, timeout_seconds: float, context: ErrorContext | None = None):
        super().__init__(
            f"Oracle {operation} timed out after {timeout_seconds}s",
            "ORACLE_TIMEOUT", ErrorCategory.TIMEOUT,
            ErrorSeverity.WARNING, context,
        )
        self.operation = operation


class OracleMalformedError(TimeTravelError):
    """Oracle returned something the core cannot use."""
    def __init__(self, operation: str, detail: str, context: ErrorContext | None = None):
        super().__init__(
            f"Oracle {operation} returned a malformed response: {detail}",
            "ORACLE_MALFORMED", ErrorCategory.EXTERNAL_API,
            ErrorSeverity.WARNING, context,
        )
        self.operation = operation


class OracleUnavailableError(TimeTravelError):
    """Oracle unreachable or request rejected, after transport-level retries."""
    def __init__(self, operation: str, detail: str, context: ErrorContext | None = None):
        super().__init__(
            f"Oracle {operation} unavailable: {detail}",
            "ORACLE_UNAVAILABLE", ErrorCategory.EXTERNAL_API,
            ErrorSeverity.ERROR, context,
        )
        self.operation = operation


class EvaluationFailedError(TimeTravelError):
    """An exploration step was abandoned because the oracle failed."""
    def __init__(self, reason: str, context: ErrorContext | None = None):
        super().__init__(
            f"Evaluation failed: {reason}",
            "EVALUATION_FAILED", ErrorCategory.EXTERNAL_API,
            ErrorSeverity.WARNING, context,
        )


class AnalysisIncompleteError(TimeTravelError):
    """A counterfactual analysis was abandoned because the oracle failed."""
    def __init__(self, reason: str, context: ErrorContext | None = None):
        super().__init__(
            f"Counterfactual analysis incomplete: {reason}",
            "ANALYSIS_INCOMPLETE", ErrorCategory.EXTERNAL_API,
            ErrorSeverity.WARNING, context,
        )


# ─── Infrastructure ─────────────────────────────────────────────

class DatabaseError(TimeTravelError):
    """Database operation failed."""
    def __init__(self, message: str, operation: str, context: ErrorContext | None = None):
        super().__init__(
            f"Database {operation} failed: {message}",
            "DATABASE_ERROR", ErrorCategory.DATABASE,
            ErrorSeverity.CRITICAL, context,
        )
        self.operation = operation
