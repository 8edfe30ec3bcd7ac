"""Data-Export Workflow Engine - Artifact Codec.

Renders statement result sets to CSV and bundles one task's CSVs into
a single zip archive.
"""

import io
import logging
import zipfile
from typing import Optional, Sequence, Tuple

import pandas as pd

from .collaborators import QueryResult

logger = logging.getLogger(__name__)


def statement_file_name(task_uid: str, number: int, file_type: str = "csv") -> str:
    """Archive entry name for one statement's result set."""
    return f"{task_uid}_{number}.{file_type}"


def export_file_name(task_uid: str, prefix: Optional[str] = None) -> str:
    """Download file name for a task's archive."""
    if prefix:
        return f"{prefix}-{task_uid}.zip"
    return f"{task_uid}.zip"


def render_csv(result: QueryResult) -> bytes:
    """Render a result set to UTF-8 CSV with a header row."""
    # object dtype keeps driver values as-is: no int-to-float on NULLs, no
    # precision loss above 2**53.
    frame = pd.DataFrame(
        [tuple(row) for row in result.rows], columns=list(result.columns), dtype=object
    )
    return frame.to_csv(index=False).encode("utf-8")


def build_archive(task_uid: str, results: Sequence[Tuple[int, QueryResult]]) -> bytes:
    """Bundle numbered result sets into one zip, one CSV entry per statement."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for number, result in results:
            archive.writestr(statement_file_name(task_uid, number), render_csv(result))
    logger.debug("Built archive for task %s with %d entries", task_uid, len(results))
    return buffer.getvalue()
