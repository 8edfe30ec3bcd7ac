"""Data-Export Workflow Engine - Domain Models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional

from src.api_errors import PartialFailureError
from .config import ExportStatus, StepState, WorkflowStatus


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ── Tasks ────────────────────────────────────────────────────────────


@dataclass
class TaskStatement:
    """One audited statement of a task's SQL batch."""

    number: int
    sql: str
    audit_level: str = ""
    audit_results: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class DataExportTask:
    """Snapshot of a registered export task."""

    uid: str
    project_uid: str
    create_user_uid: str
    db_service_uid: str
    database_name: str
    export_sql: str
    export_type: str = "sql"
    export_file_type: str = "csv"
    audit_level: str = ""
    audit_score: int = 0
    audit_pass_rate: float = 0.0
    statements: List[TaskStatement] = field(default_factory=list)
    export_status: ExportStatus = ExportStatus.INIT
    export_start_time: Optional[datetime] = None
    export_end_time: Optional[datetime] = None
    export_file_name: Optional[str] = None
    error_message: Optional[str] = None
    claimed_by_workflow_uid: Optional[str] = None
    create_time: Optional[datetime] = None


@dataclass
class TaskOutcome:
    """Result of exporting a single task."""

    task_uid: str
    status: ExportStatus
    started_at: datetime
    finished_at: datetime
    file_name: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ExportStatus.SUCCESS


# ── Workflows ────────────────────────────────────────────────────────


@dataclass
class WorkflowStep:
    """Approval step with its frozen assignee set."""

    number: int
    step_type: str
    assignees: FrozenSet[str]
    state: StepState = StepState.INIT
    operation_user_uid: Optional[str] = None
    operation_time: Optional[datetime] = None
    reason: Optional[str] = None


@dataclass
class Workflow:
    """Aggregate root: a data-export approval workflow."""

    uid: str
    project_uid: str
    name: str
    desc: str
    create_user_uid: str
    create_time: datetime
    task_uids: List[str]
    status: WorkflowStatus
    current_step_number: Optional[int]
    steps: List[WorkflowStep]
    status_changed_at: datetime
    version: int = 1

    @property
    def current_step(self) -> Optional[WorkflowStep]:
        if self.current_step_number is None:
            return None
        for step in self.steps:
            if step.number == self.current_step_number:
                return step
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_last_step(self) -> bool:
        return self.current_step_number == len(self.steps)


@dataclass
class WorkflowSummary:
    """List row for a workflow."""

    uid: str
    project_uid: str
    name: str
    desc: str
    create_user_uid: str
    create_time: datetime
    status: WorkflowStatus
    current_step_number: Optional[int]
    current_step_assignees: FrozenSet[str] = frozenset()


@dataclass
class WorkflowTransitionEvent:
    """Ephemeral notification payload for a committed transition."""

    workflow_uid: str
    project_uid: str
    workflow_name: str
    from_status: Optional[WorkflowStatus]
    to_status: WorkflowStatus
    actor_uid: str
    timestamp: datetime
    recipient_uids: FrozenSet[str] = frozenset()


@dataclass
class ExecutionReport:
    """Outcome of executing a workflow."""

    workflow_uid: str
    status: WorkflowStatus
    outcomes: Dict[str, TaskOutcome] = field(default_factory=dict)

    @property
    def succeeded(self) -> List[str]:
        return [uid for uid, o in self.outcomes.items() if o.succeeded]

    @property
    def failed(self) -> Dict[str, str]:
        return {
            uid: o.error or "export failed"
            for uid, o in self.outcomes.items()
            if not o.succeeded
        }

    def raise_for_failures(self) -> None:
        """Raise PartialFailureError if any task failed."""
        failed = self.failed
        if failed:
            raise PartialFailureError(
                f"{len(failed)} of {len(self.outcomes)} export task(s) failed "
                f"in workflow {self.workflow_uid}",
                failed=failed,
                succeeded=self.succeeded,
            )
