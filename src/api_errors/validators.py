"""Input Validation Utilities.

Reusable validators for the data-export domain: identifiers,
names, SQL text, UID lists, time ranges, and pagination.
"""

import re
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from src.api_errors.config import ErrorCode
from src.api_errors.exceptions import ValidationError

# Opaque identifiers: letters, digits, dash and underscore
UID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")

MAX_NAME_LENGTH = 200
MAX_DESC_LENGTH = 4000

# Maximum pagination limits
MAX_PAGE_SIZE = 1000
DEFAULT_PAGE_SIZE = 50


def validate_uid(value: str, field: str = "uid") -> str:
    """Validate an opaque identifier.

    Raises:
        ValidationError: If the identifier is missing or malformed.
    """
    if not value or not isinstance(value, str):
        raise ValidationError(
            message=f"{field} is required",
            error_code=ErrorCode.MISSING_REQUIRED_FIELD,
            field=field,
        )
    if not UID_PATTERN.match(value):
        raise ValidationError(message=f"Invalid {field}: '{value}'", field=field)
    return value


def validate_uid_list(values: Sequence[str], field: str = "task_uids") -> List[str]:
    """Validate a non-empty, duplicate-free list of identifiers."""
    if not values:
        raise ValidationError(
            message=f"At least one entry is required in {field}",
            error_code=ErrorCode.MISSING_REQUIRED_FIELD,
            field=field,
        )

    seen = set()
    duplicates = []
    for value in values:
        validate_uid(value, field)
        if value in seen:
            duplicates.append(value)
        seen.add(value)

    if duplicates:
        raise ValidationError(
            message=f"Duplicate entries in {field}: {', '.join(sorted(set(duplicates)))}",
            field=field,
        )
    return list(values)


def validate_name(name: str, field: str = "name", max_length: int = MAX_NAME_LENGTH) -> str:
    """Validate a display name; returns it stripped."""
    if not name or not name.strip():
        raise ValidationError(
            message=f"{field} is required",
            error_code=ErrorCode.MISSING_REQUIRED_FIELD,
            field=field,
        )
    name = name.strip()
    if len(name) > max_length:
        raise ValidationError(
            message=f"{field} exceeds maximum length of {max_length}",
            field=field,
        )
    return name


def validate_desc(desc: Optional[str]) -> str:
    """Validate an optional free-text description."""
    desc = (desc or "").strip()
    if len(desc) > MAX_DESC_LENGTH:
        raise ValidationError(
            message=f"desc exceeds maximum length of {MAX_DESC_LENGTH}",
            field="desc",
        )
    return desc


def validate_sql_text(sql: str) -> str:
    """Reject empty export SQL. Statement-level checks belong to the auditor."""
    if not sql or not sql.strip():
        raise ValidationError(
            message="Export SQL is required",
            error_code=ErrorCode.MISSING_REQUIRED_FIELD,
            field="sql",
        )
    return sql.strip()


def validate_time_range(
    start: Optional[datetime],
    end: Optional[datetime],
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Validate an optional [start, end] filter window."""
    if start is not None and end is not None and start > end:
        raise ValidationError(
            message=f"Start time {start.isoformat()} is after end time {end.isoformat()}",
            error_code=ErrorCode.INVALID_DATE_RANGE,
            field="created_from",
        )
    return start, end


def validate_pagination(
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    max_page_size: int = MAX_PAGE_SIZE,
) -> Tuple[int, int]:
    """Validate pagination parameters.

    Args:
        page: Page number (1-indexed).
        page_size: Number of items per page.
        max_page_size: Maximum allowed page size.

    Returns:
        Tuple of (page, page_size).

    Raises:
        ValidationError: If pagination parameters are invalid.
    """
    if not isinstance(page, int) or page < 1:
        raise ValidationError(
            message="Page must be a positive integer",
            error_code=ErrorCode.INVALID_PAGINATION,
            field="page",
        )

    if not isinstance(page_size, int) or page_size < 1:
        raise ValidationError(
            message="Page size must be a positive integer",
            error_code=ErrorCode.INVALID_PAGINATION,
            field="page_size",
        )

    if page_size > max_page_size:
        raise ValidationError(
            message=f"Page size {page_size} exceeds maximum of {max_page_size}",
            error_code=ErrorCode.INVALID_PAGINATION,
            field="page_size",
        )

    return page, page_size
