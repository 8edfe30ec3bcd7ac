"""External Collaborator Protocols.

Interfaces the engine consumes but does not implement: SQL auditing,
approval-plan resolution, database service lookup, query execution
and notification delivery.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable


# ── Value types ──────────────────────────────────────────────────────


@dataclass
class AuditedStatement:
    """One statement of a batch with its audit findings."""

    number: int
    sql: str
    level: str = "normal"
    results: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class AuditVerdict:
    """Result of auditing a SQL batch."""

    level: str
    score: int
    pass_rate: float
    statements: List[AuditedStatement] = field(default_factory=list)


@dataclass
class ApprovalStepPlan:
    """Planned approval step: its type and who may act on it."""

    step_type: str
    assignee_uids: Sequence[str] = ()


@dataclass
class DBServiceDescriptor:
    """Connection details for a target database service."""

    uid: str
    name: str
    db_type: str
    host: str = ""
    port: int = 0
    user: str = ""
    password: str = ""

    def __repr__(self) -> str:
        return (
            f"DBServiceDescriptor(uid={self.uid!r}, name={self.name!r}, "
            f"db_type={self.db_type!r}, host={self.host!r}, port={self.port!r})"
        )


@dataclass
class QueryResult:
    """Column names and rows returned by a statement."""

    columns: List[str] = field(default_factory=list)
    rows: List[Sequence[Any]] = field(default_factory=list)


# ── Protocols ────────────────────────────────────────────────────────


@runtime_checkable
class SQLAuditor(Protocol):
    """Audits a SQL batch for the given dialect."""

    def audit(self, sql: str, dialect: str) -> AuditVerdict:
        ...


@runtime_checkable
class AuthorizationResolver(Protocol):
    """Resolves approval plans and project-admin membership."""

    def resolve_approval_steps(self, project_uid: str, action_kind: str) -> List[ApprovalStepPlan]:
        """Ordered approval steps for an action within a project."""
        ...

    def is_project_admin(self, project_uid: str, user_uid: str) -> bool:
        ...


@runtime_checkable
class DBServiceDirectory(Protocol):
    def get_db_service(self, db_service_uid: str) -> Optional[DBServiceDescriptor]:
        ...


@runtime_checkable
class DBConnector(Protocol):
    """Runs one statement against a target database."""

    def execute(
        self,
        descriptor: DBServiceDescriptor,
        database_name: str,
        sql: str,
        timeout: float,
    ) -> QueryResult:
        ...


@runtime_checkable
class Notifier(Protocol):
    """Delivers a message to users over some channel."""

    def notify(self, subject: str, body: str, recipient_uids: Sequence[str]) -> None:
        ...
