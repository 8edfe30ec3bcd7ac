"""Data-Export Workflow Engine.

Governs SQL data exports: audited tasks, multi-step approval
workflows, concurrent execution, artifact download and expiry.
"""

from .config import (
    ActionKind,
    ExportStatus,
    StepState,
    WorkflowConfig,
    WorkflowStatus,
    DEFAULT_WORKFLOW_CONFIG,
    TERMINAL_STATUSES,
)
from .models import (
    DataExportTask,
    ExecutionReport,
    TaskOutcome,
    TaskStatement,
    Workflow,
    WorkflowStep,
    WorkflowSummary,
    WorkflowTransitionEvent,
    utcnow,
)
from .collaborators import (
    ApprovalStepPlan,
    AuditedStatement,
    AuditVerdict,
    AuthorizationResolver,
    DBConnector,
    DBServiceDescriptor,
    DBServiceDirectory,
    Notifier,
    QueryResult,
    SQLAuditor,
)
from .state_machine import (
    State,
    Transition,
    StateMachine,
    WORKFLOW_STATE_MACHINE,
    build_workflow_state_machine,
)
from .artifacts import (
    ArtifactStore,
    InMemoryArtifactStore,
    LocalArtifactStore,
)
from .repository import WorkflowRepository
from .tasks import TaskRegistry
from .notifications import (
    DispatchStats,
    NotificationDispatcher,
)
from .engine import WorkflowEngine
from .expirer import Expirer, SweepReport

__all__ = [
    # Config
    "ActionKind",
    "ExportStatus",
    "StepState",
    "WorkflowConfig",
    "WorkflowStatus",
    "DEFAULT_WORKFLOW_CONFIG",
    "TERMINAL_STATUSES",
    # Models
    "DataExportTask",
    "ExecutionReport",
    "TaskOutcome",
    "TaskStatement",
    "Workflow",
    "WorkflowStep",
    "WorkflowSummary",
    "WorkflowTransitionEvent",
    "utcnow",
    # Collaborators
    "ApprovalStepPlan",
    "AuditedStatement",
    "AuditVerdict",
    "AuthorizationResolver",
    "DBConnector",
    "DBServiceDescriptor",
    "DBServiceDirectory",
    "Notifier",
    "QueryResult",
    "SQLAuditor",
    # State Machine
    "State",
    "Transition",
    "StateMachine",
    "WORKFLOW_STATE_MACHINE",
    "build_workflow_state_machine",
    # Artifacts
    "ArtifactStore",
    "InMemoryArtifactStore",
    "LocalArtifactStore",
    # Services
    "WorkflowRepository",
    "TaskRegistry",
    "DispatchStats",
    "NotificationDispatcher",
    "WorkflowEngine",
    "Expirer",
    "SweepReport",
]
