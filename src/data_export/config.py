"""Data-Export Workflow Engine - Configuration."""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import FrozenSet, Optional

from src.settings import Settings, get_settings


class WorkflowStatus(str, Enum):
    """Workflow lifecycle status."""

    WAIT_FOR_AUDIT = "wait_for_audit"
    WAIT_FOR_EXECUTION = "wait_for_execution"
    EXECUTING = "executing"
    FINISHED = "finished"
    EXEC_FAILED = "exec_failed"
    REJECTED = "rejected"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[WorkflowStatus] = frozenset({
    WorkflowStatus.FINISHED,
    WorkflowStatus.EXEC_FAILED,
    WorkflowStatus.REJECTED,
    WorkflowStatus.CANCELED,
    WorkflowStatus.EXPIRED,
})

CANCELABLE_STATUSES: FrozenSet[WorkflowStatus] = frozenset({
    WorkflowStatus.WAIT_FOR_AUDIT,
    WorkflowStatus.WAIT_FOR_EXECUTION,
})

EXPIRABLE_STATUSES = CANCELABLE_STATUSES


class StepState(str, Enum):
    """Approval step state."""

    INIT = "init"
    APPROVED = "approved"
    REJECTED = "rejected"


class ExportStatus(str, Enum):
    """Per-task export status."""

    INIT = "init"
    EXPORTING = "exporting"
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"


class ActionKind(str, Enum):
    """Action an approval plan is resolved for."""

    DATA_EXPORT = "data_export"


@dataclass
class WorkflowConfig:
    """Runtime configuration for the engine, registry and expirer."""

    export_worker_pool_size: int = 4
    export_query_timeout_seconds: float = 300.0
    audit_timeout_seconds: float = 30.0
    approval_ttl: timedelta = timedelta(days=7)
    execution_ttl: timedelta = timedelta(hours=24)
    artifact_retention: timedelta = timedelta(hours=24)
    orphan_task_ttl: timedelta = timedelta(hours=24)
    expirer_interval_seconds: float = 3600.0
    expirer_batch_size: int = 100
    commit_retry_attempts: int = 3
    commit_retry_delay_seconds: float = 0.5

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "WorkflowConfig":
        settings = settings or get_settings()
        return cls(
            export_worker_pool_size=settings.export_worker_pool_size,
            export_query_timeout_seconds=settings.export_query_timeout_seconds,
            audit_timeout_seconds=settings.audit_timeout_seconds,
            approval_ttl=timedelta(hours=settings.approval_ttl_hours),
            execution_ttl=timedelta(hours=settings.execution_ttl_hours),
            artifact_retention=timedelta(hours=settings.artifact_retention_hours),
            orphan_task_ttl=timedelta(hours=settings.orphan_task_ttl_hours),
            expirer_interval_seconds=settings.expirer_interval_seconds,
            expirer_batch_size=settings.expirer_batch_size,
            commit_retry_attempts=settings.commit_retry_attempts,
            commit_retry_delay_seconds=settings.commit_retry_delay_seconds,
        )

    def ttl_for(self, status: WorkflowStatus) -> Optional[timedelta]:
        """TTL for a status, or None if the status never expires."""
        if status == WorkflowStatus.WAIT_FOR_AUDIT:
            return self.approval_ttl
        if status == WorkflowStatus.WAIT_FOR_EXECUTION:
            return self.execution_ttl
        return None


DEFAULT_WORKFLOW_CONFIG = WorkflowConfig()
