"""Error Handling & Validation.

Typed exception hierarchy with error codes, plus input validation
utilities shared by the workflow engine and task registry.
"""

from src.api_errors.config import (
    DEFAULT_ERROR_CONFIG,
    ErrorCode,
    ErrorConfig,
    ErrorSeverity,
)
from src.api_errors.exceptions import (
    AuthorizationError,
    ConflictError,
    ExportGovernanceError,
    ExternalServiceError,
    NotFoundError,
    PartialFailureError,
    ValidationError,
)
from src.api_errors.validators import (
    validate_desc,
    validate_name,
    validate_pagination,
    validate_sql_text,
    validate_time_range,
    validate_uid,
    validate_uid_list,
)

__all__ = [
    # Config
    "DEFAULT_ERROR_CONFIG",
    "ErrorCode",
    "ErrorConfig",
    "ErrorSeverity",
    # Exceptions
    "AuthorizationError",
    "ConflictError",
    "ExportGovernanceError",
    "ExternalServiceError",
    "NotFoundError",
    "PartialFailureError",
    "ValidationError",
    # Validators
    "validate_desc",
    "validate_name",
    "validate_pagination",
    "validate_sql_text",
    "validate_time_range",
    "validate_uid",
    "validate_uid_list",
]
