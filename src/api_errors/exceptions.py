"""Custom Exception Hierarchy.

Defines typed exceptions that map to specific error codes and
HTTP-style status codes so the surrounding API layer can render
consistent error responses.
"""

from typing import Any, Dict, List, Optional

from src.api_errors.config import (
    DEFAULT_ERROR_CONFIG,
    ERROR_SEVERITY_MAP,
    ERROR_STATUS_MAP,
    ErrorCode,
    ErrorConfig,
    ErrorSeverity,
)


class ExportGovernanceError(Exception):
    """Base exception for all data-export engine errors.

    All custom exceptions inherit from this, allowing a single
    handler to catch the entire hierarchy.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = ERROR_STATUS_MAP.get(error_code, 500)
        self.severity = ERROR_SEVERITY_MAP.get(error_code, ErrorSeverity.HIGH)
        self.details = details or []

    def to_dict(self, config: Optional[ErrorConfig] = None) -> Dict[str, Any]:
        """Serialize for an error response body."""
        config = config or DEFAULT_ERROR_CONFIG
        body: Dict[str, Any] = {
            "code": self.error_code.value,
            "message": self.message[: config.max_error_message_length],
        }
        if config.include_details:
            body["details"] = list(self.details)
        return body


class ValidationError(ExportGovernanceError):
    """Raised when input fails validation."""

    def __init__(
        self,
        message: str = "Validation failed",
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        details: Optional[List[Dict[str, Any]]] = None,
        field: Optional[str] = None,
    ):
        if field and not details:
            details = [{"field": field, "issue": message}]
        super().__init__(message, error_code, details)


class AuthorizationError(ExportGovernanceError):
    """Raised when the actor is not an authorized assignee, executor or creator."""

    def __init__(
        self,
        message: str = "Insufficient permissions",
        error_code: ErrorCode = ErrorCode.INSUFFICIENT_PERMISSIONS,
        actor_uid: Optional[str] = None,
    ):
        details = [{"actor_uid": actor_uid}] if actor_uid else []
        super().__init__(message, error_code, details)


class NotFoundError(ExportGovernanceError):
    """Raised when a requested resource does not exist."""

    def __init__(
        self,
        message: str = "Resource not found",
        error_code: ErrorCode = ErrorCode.RESOURCE_NOT_FOUND,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ):
        details = []
        if resource_type or resource_id:
            details = [{"resource_type": resource_type, "resource_id": resource_id}]
        super().__init__(message, error_code, details)


class ConflictError(ExportGovernanceError):
    """Raised when an action conflicts with the current state."""

    def __init__(
        self,
        message: str = "Resource conflict",
        error_code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message, error_code, details)


class ExternalServiceError(ExportGovernanceError):
    """Raised when an external collaborator times out or is unreachable."""

    def __init__(
        self,
        message: str = "External service unavailable",
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR,
        service: Optional[str] = None,
    ):
        details = [{"service": service}] if service else []
        super().__init__(message, error_code, details)
        self.service = service


class PartialFailureError(ExportGovernanceError):
    """Raised on request when some but not all export tasks failed."""

    def __init__(
        self,
        message: str = "Some export tasks failed",
        failed: Optional[Dict[str, str]] = None,
        succeeded: Optional[List[str]] = None,
    ):
        self.failed = dict(failed or {})
        self.succeeded = list(succeeded or [])
        details = [
            {"task_uid": uid, "error": error} for uid, error in self.failed.items()
        ]
        super().__init__(message, ErrorCode.PARTIAL_FAILURE, details)
