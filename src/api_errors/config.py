"""Error Configuration.

Defines error codes, severity levels, and configuration for
structured error handling across the data-export engine.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class ErrorCode(Enum):
    """Standardized error codes."""

    # Validation errors (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    INVALID_PAGINATION = "INVALID_PAGINATION"
    INVALID_DATE_RANGE = "INVALID_DATE_RANGE"
    UNKNOWN_TASK = "UNKNOWN_TASK"
    UNKNOWN_DB_SERVICE = "UNKNOWN_DB_SERVICE"
    EMPTY_ASSIGNEES = "EMPTY_ASSIGNEES"

    # Authorization errors (403)
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"

    # Not found errors (404)
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    WORKFLOW_NOT_FOUND = "WORKFLOW_NOT_FOUND"
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    ARTIFACT_NOT_FOUND = "ARTIFACT_NOT_FOUND"

    # Conflict errors (409)
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    TASK_ALREADY_CLAIMED = "TASK_ALREADY_CLAIMED"
    CONCURRENT_UPDATE = "CONCURRENT_UPDATE"

    # Partial outcome (207)
    PARTIAL_FAILURE = "PARTIAL_FAILURE"

    # Server errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"

    # Upstream collaborators (502 / 504)
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    AUDIT_FAILED = "AUDIT_FAILED"
    EXTERNAL_TIMEOUT = "EXTERNAL_TIMEOUT"


class ErrorSeverity(Enum):
    """Severity levels for error logging."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Map error codes to HTTP status codes
ERROR_STATUS_MAP: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.MISSING_REQUIRED_FIELD: 400,
    ErrorCode.INVALID_PAGINATION: 400,
    ErrorCode.INVALID_DATE_RANGE: 400,
    ErrorCode.UNKNOWN_TASK: 400,
    ErrorCode.UNKNOWN_DB_SERVICE: 400,
    ErrorCode.EMPTY_ASSIGNEES: 400,
    ErrorCode.INSUFFICIENT_PERMISSIONS: 403,
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.WORKFLOW_NOT_FOUND: 404,
    ErrorCode.TASK_NOT_FOUND: 404,
    ErrorCode.ARTIFACT_NOT_FOUND: 404,
    ErrorCode.RESOURCE_CONFLICT: 409,
    ErrorCode.INVALID_STATE_TRANSITION: 409,
    ErrorCode.TASK_ALREADY_CLAIMED: 409,
    ErrorCode.CONCURRENT_UPDATE: 409,
    ErrorCode.PARTIAL_FAILURE: 207,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.EXTERNAL_SERVICE_ERROR: 502,
    ErrorCode.AUDIT_FAILED: 502,
    ErrorCode.EXTERNAL_TIMEOUT: 504,
}

# Map error codes to severity
ERROR_SEVERITY_MAP: Dict[ErrorCode, ErrorSeverity] = {
    ErrorCode.VALIDATION_ERROR: ErrorSeverity.LOW,
    ErrorCode.MISSING_REQUIRED_FIELD: ErrorSeverity.LOW,
    ErrorCode.INVALID_PAGINATION: ErrorSeverity.LOW,
    ErrorCode.INVALID_DATE_RANGE: ErrorSeverity.LOW,
    ErrorCode.UNKNOWN_TASK: ErrorSeverity.LOW,
    ErrorCode.UNKNOWN_DB_SERVICE: ErrorSeverity.LOW,
    ErrorCode.EMPTY_ASSIGNEES: ErrorSeverity.MEDIUM,
    ErrorCode.INSUFFICIENT_PERMISSIONS: ErrorSeverity.MEDIUM,
    ErrorCode.RESOURCE_NOT_FOUND: ErrorSeverity.LOW,
    ErrorCode.WORKFLOW_NOT_FOUND: ErrorSeverity.LOW,
    ErrorCode.TASK_NOT_FOUND: ErrorSeverity.LOW,
    ErrorCode.ARTIFACT_NOT_FOUND: ErrorSeverity.LOW,
    ErrorCode.RESOURCE_CONFLICT: ErrorSeverity.MEDIUM,
    ErrorCode.INVALID_STATE_TRANSITION: ErrorSeverity.MEDIUM,
    ErrorCode.TASK_ALREADY_CLAIMED: ErrorSeverity.MEDIUM,
    ErrorCode.CONCURRENT_UPDATE: ErrorSeverity.MEDIUM,
    ErrorCode.PARTIAL_FAILURE: ErrorSeverity.HIGH,
    ErrorCode.INTERNAL_ERROR: ErrorSeverity.CRITICAL,
    ErrorCode.DATABASE_ERROR: ErrorSeverity.CRITICAL,
    ErrorCode.EXTERNAL_SERVICE_ERROR: ErrorSeverity.HIGH,
    ErrorCode.AUDIT_FAILED: ErrorSeverity.HIGH,
    ErrorCode.EXTERNAL_TIMEOUT: ErrorSeverity.HIGH,
}


@dataclass
class ErrorConfig:
    """Configuration for error reporting."""

    include_details: bool = True
    max_error_message_length: int = 1000


DEFAULT_ERROR_CONFIG = ErrorConfig()
