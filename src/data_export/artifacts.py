"""Data-Export Workflow Engine - Artifact Storage.

ArtifactStore protocol plus a local-directory store (one zip per task)
and a thread-safe in-memory store.
"""

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Protocol, Union, runtime_checkable

from src.api_errors import ErrorCode, NotFoundError, ValidationError
from src.api_errors.validators import UID_PATTERN

logger = logging.getLogger(__name__)


@runtime_checkable
class ArtifactStore(Protocol):
    """Blob storage for exported archives, keyed by task uid."""

    def put(self, task_uid: str, data: bytes) -> None:
        ...

    def get(self, task_uid: str) -> bytes:
        ...

    def delete(self, task_uid: str) -> None:
        ...

    def exists(self, task_uid: str) -> bool:
        ...


def _artifact_not_found(task_uid: str) -> NotFoundError:
    return NotFoundError(
        f"Artifact for task {task_uid} not found",
        error_code=ErrorCode.ARTIFACT_NOT_FOUND,
        resource_type="artifact",
        resource_id=task_uid,
    )


class LocalArtifactStore:
    """Stores each task's archive as ``<root_dir>/<task_uid>.zip``."""

    SUFFIX = ".zip"

    def __init__(self, root_dir: Union[str, Path]):
        self.root_dir = Path(root_dir)
        self.root_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, task_uid: str) -> Path:
        if not UID_PATTERN.match(task_uid):
            raise ValidationError(
                f"Invalid task uid: {task_uid!r}",
                error_code=ErrorCode.VALIDATION_ERROR,
                field="task_uid",
            )
        return self.root_dir / f"{task_uid}{self.SUFFIX}"

    def put(self, task_uid: str, data: bytes) -> None:
        """Write atomically: temp file in the same directory, then rename."""
        target = self._path(task_uid)
        fd, tmp_name = tempfile.mkstemp(dir=self.root_dir, prefix=f".{task_uid}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug("Stored artifact %s (%d bytes)", target.name, len(data))

    def get(self, task_uid: str) -> bytes:
        path = self._path(task_uid)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise _artifact_not_found(task_uid) from None

    def delete(self, task_uid: str) -> None:
        """Remove an artifact; missing artifacts are ignored."""
        self._path(task_uid).unlink(missing_ok=True)

    def exists(self, task_uid: str) -> bool:
        return self._path(task_uid).is_file()


class InMemoryArtifactStore:
    """Thread-safe dict-backed store."""

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, task_uid: str, data: bytes) -> None:
        with self._lock:
            self._blobs[task_uid] = bytes(data)

    def get(self, task_uid: str) -> bytes:
        with self._lock:
            data = self._blobs.get(task_uid)
        if data is None:
            raise _artifact_not_found(task_uid)
        return data

    def delete(self, task_uid: str) -> None:
        with self._lock:
            self._blobs.pop(task_uid, None)

    def exists(self, task_uid: str) -> bool:
        with self._lock:
            return task_uid in self._blobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)
