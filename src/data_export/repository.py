"""Data-Export Workflow Engine - Persistence.

Transactional storage for workflows, steps, task links and export tasks.
Every workflow mutation is a version-guarded conditional UPDATE so that
concurrent transitions on the same aggregate serialize without a lock.
"""

import json
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, exists, or_
from sqlalchemy.orm import Session, sessionmaker

from src.api_errors import ConflictError, ErrorCode
from src.db.models import (
    DataExportStatementRecord,
    DataExportTaskRecord,
    DataExportWorkflowRecord,
    WorkflowStepRecord,
    WorkflowTaskLinkRecord,
)
from .config import ExportStatus, StepState, WorkflowStatus
from .models import (
    DataExportTask,
    TaskStatement,
    Workflow,
    WorkflowStep,
    WorkflowSummary,
)

logger = logging.getLogger(__name__)


def _like_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _assignee_pattern(user_uid: str) -> str:
    # assignees are stored as a JSON array of quoted uids
    return f'%"{_like_escape(user_uid)}"%'


# ── Record <-> domain conversion ─────────────────────────────────────


def _to_statement(record: DataExportStatementRecord) -> TaskStatement:
    return TaskStatement(
        number=record.number,
        sql=record.sql,
        audit_level=record.audit_level or "",
        audit_results=json.loads(record.audit_results) if record.audit_results else [],
    )


def _to_task(record: DataExportTaskRecord) -> DataExportTask:
    return DataExportTask(
        uid=record.uid,
        project_uid=record.project_uid,
        create_user_uid=record.create_user_uid,
        db_service_uid=record.db_service_uid,
        database_name=record.database_name or "",
        export_sql=record.export_sql,
        export_type=record.export_type,
        export_file_type=record.export_file_type,
        audit_level=record.audit_level or "",
        audit_score=record.audit_score or 0,
        audit_pass_rate=record.audit_pass_rate or 0.0,
        statements=[_to_statement(s) for s in record.statements],
        export_status=ExportStatus(record.export_status),
        export_start_time=record.export_start_time,
        export_end_time=record.export_end_time,
        export_file_name=record.export_file_name,
        error_message=record.error_message,
        claimed_by_workflow_uid=record.claimed_by_workflow_uid,
        create_time=record.create_time,
    )


def _to_step(record: WorkflowStepRecord) -> WorkflowStep:
    return WorkflowStep(
        number=record.number,
        step_type=record.step_type,
        assignees=frozenset(json.loads(record.assignees)),
        state=StepState(record.state),
        operation_user_uid=record.operation_user_uid,
        operation_time=record.operation_time,
        reason=record.reason,
    )


def _to_workflow(record: DataExportWorkflowRecord) -> Workflow:
    return Workflow(
        uid=record.uid,
        project_uid=record.project_uid,
        name=record.name,
        desc=record.desc or "",
        create_user_uid=record.create_user_uid,
        create_time=record.create_time,
        task_uids=[link.task_uid for link in record.task_links],
        status=WorkflowStatus(record.status),
        current_step_number=record.current_step_number,
        steps=[_to_step(s) for s in record.steps],
        status_changed_at=record.status_changed_at,
        version=record.version,
    )


def _to_summary(record: DataExportWorkflowRecord) -> WorkflowSummary:
    assignees: frozenset = frozenset()
    for step in record.steps:
        if step.number == record.current_step_number:
            assignees = frozenset(json.loads(step.assignees))
            break
    return WorkflowSummary(
        uid=record.uid,
        project_uid=record.project_uid,
        name=record.name,
        desc=record.desc or "",
        create_user_uid=record.create_user_uid,
        create_time=record.create_time,
        status=WorkflowStatus(record.status),
        current_step_number=record.current_step_number,
        current_step_assignees=assignees,
    )


class WorkflowRepository:
    """Persistence for the data-export aggregate."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # =========================================================================
    # Tasks
    # =========================================================================

    def add_task(self, task: DataExportTask) -> None:
        """Persist a newly audited task with its statement records."""
        with self._session_factory.begin() as session:
            record = DataExportTaskRecord(
                uid=task.uid,
                project_uid=task.project_uid,
                create_user_uid=task.create_user_uid,
                db_service_uid=task.db_service_uid,
                database_name=task.database_name,
                export_sql=task.export_sql,
                export_type=task.export_type,
                export_file_type=task.export_file_type,
                audit_level=task.audit_level,
                audit_score=task.audit_score,
                audit_pass_rate=task.audit_pass_rate,
                export_status=task.export_status.value,
                create_time=task.create_time,
            )
            record.statements = [
                DataExportStatementRecord(
                    number=s.number,
                    sql=s.sql,
                    audit_level=s.audit_level,
                    audit_results=json.dumps(s.audit_results),
                )
                for s in task.statements
            ]
            session.add(record)

    def get_task(self, task_uid: str) -> Optional[DataExportTask]:
        with self._session_factory() as session:
            record = session.get(DataExportTaskRecord, task_uid)
            return _to_task(record) if record else None

    def get_tasks(self, task_uids: Sequence[str]) -> List[DataExportTask]:
        """Return tasks in the requested order; unknown uids are skipped."""
        if not task_uids:
            return []
        with self._session_factory() as session:
            records = (
                session.query(DataExportTaskRecord)
                .filter(DataExportTaskRecord.uid.in_(list(task_uids)))
                .all()
            )
            by_uid = {r.uid: _to_task(r) for r in records}
        return [by_uid[uid] for uid in task_uids if uid in by_uid]

    def list_statements(
        self, task_uid: str, offset: int = 0, limit: int = 50
    ) -> Tuple[List[TaskStatement], int]:
        """One page of a task's audited statements in batch order, plus the total."""
        with self._session_factory() as session:
            query = session.query(DataExportStatementRecord).filter(
                DataExportStatementRecord.task_uid == task_uid
            )
            total = query.count()
            records = (
                query.order_by(DataExportStatementRecord.number)
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [_to_statement(r) for r in records], total

    def find_expired_artifacts(self, cutoff: datetime, limit: int = 100) -> List[str]:
        """Successful tasks whose export finished before *cutoff*."""
        with self._session_factory() as session:
            rows = (
                session.query(DataExportTaskRecord.uid)
                .filter(
                    DataExportTaskRecord.export_status == ExportStatus.SUCCESS.value,
                    DataExportTaskRecord.export_end_time < cutoff,
                )
                .order_by(DataExportTaskRecord.export_end_time)
                .limit(limit)
                .all()
            )
        return [row.uid for row in rows]

    def mark_artifact_expired(self, task_uid: str) -> bool:
        """Move a task from success to expired. False if it is no longer success."""
        with self._session_factory.begin() as session:
            updated = (
                session.query(DataExportTaskRecord)
                .filter(
                    DataExportTaskRecord.uid == task_uid,
                    DataExportTaskRecord.export_status == ExportStatus.SUCCESS.value,
                )
                .update(
                    {DataExportTaskRecord.export_status: ExportStatus.EXPIRED.value},
                    synchronize_session=False,
                )
            )
        return updated == 1

    def _orphan_filter(self, cutoff: datetime):
        linked = exists().where(WorkflowTaskLinkRecord.task_uid == DataExportTaskRecord.uid)
        return and_(
            ~linked,
            DataExportTaskRecord.claimed_by_workflow_uid.is_(None),
            DataExportTaskRecord.create_time < cutoff,
        )

    def find_orphan_tasks(self, cutoff: datetime, limit: int = 100) -> List[str]:
        """Tasks never submitted to a workflow and created before *cutoff*."""
        with self._session_factory() as session:
            rows = (
                session.query(DataExportTaskRecord.uid)
                .filter(self._orphan_filter(cutoff))
                .order_by(DataExportTaskRecord.create_time)
                .limit(limit)
                .all()
            )
        return [row.uid for row in rows]

    def delete_orphan_task(self, task_uid: str, cutoff: datetime) -> bool:
        """Delete a task only if it is still an orphan."""
        with self._session_factory.begin() as session:
            record = (
                session.query(DataExportTaskRecord)
                .filter(DataExportTaskRecord.uid == task_uid, self._orphan_filter(cutoff))
                .one_or_none()
            )
            if record is None:
                return False
            session.delete(record)
        return True

    # =========================================================================
    # Workflows
    # =========================================================================

    def create_workflow(self, workflow: Workflow) -> None:
        """Claim the tasks and persist the workflow in one transaction.

        Raises:
            ConflictError: A task was claimed or exported concurrently.
        """
        with self._session_factory.begin() as session:
            claimed = (
                session.query(DataExportTaskRecord)
                .filter(
                    DataExportTaskRecord.uid.in_(workflow.task_uids),
                    DataExportTaskRecord.project_uid == workflow.project_uid,
                    DataExportTaskRecord.claimed_by_workflow_uid.is_(None),
                    DataExportTaskRecord.export_status == ExportStatus.INIT.value,
                )
                .update(
                    {DataExportTaskRecord.claimed_by_workflow_uid: workflow.uid},
                    synchronize_session=False,
                )
            )
            if claimed != len(workflow.task_uids):
                raise ConflictError(
                    "One or more tasks were claimed by another workflow",
                    error_code=ErrorCode.TASK_ALREADY_CLAIMED,
                    details=[{"task_uids": list(workflow.task_uids)}],
                )

            record = DataExportWorkflowRecord(
                uid=workflow.uid,
                project_uid=workflow.project_uid,
                name=workflow.name,
                desc=workflow.desc,
                create_user_uid=workflow.create_user_uid,
                create_time=workflow.create_time,
                status=workflow.status.value,
                current_step_number=workflow.current_step_number,
                status_changed_at=workflow.status_changed_at,
                version=workflow.version,
            )
            record.steps = [
                WorkflowStepRecord(
                    number=step.number,
                    step_type=step.step_type,
                    assignees=json.dumps(sorted(step.assignees)),
                    state=step.state.value,
                )
                for step in workflow.steps
            ]
            record.task_links = [
                WorkflowTaskLinkRecord(task_uid=task_uid, position=i)
                for i, task_uid in enumerate(workflow.task_uids)
            ]
            session.add(record)

    def get_workflow(self, workflow_uid: str) -> Optional[Workflow]:
        with self._session_factory() as session:
            record = session.get(DataExportWorkflowRecord, workflow_uid)
            return _to_workflow(record) if record else None

    def commit_transition(
        self,
        workflow: Workflow,
        *,
        expected_version: int,
        expected_status: WorkflowStatus,
        changed_steps: Iterable[WorkflowStep] = (),
        task_updates: Optional[Dict[str, Dict]] = None,
        release_claims: bool = False,
    ) -> int:
        """Commit a mutated aggregate if nobody changed it since it was read.

        Args:
            workflow: Aggregate carrying the new status, pointer and steps.
            expected_version: Version observed when the aggregate was read.
            expected_status: Status observed when the aggregate was read.
            changed_steps: Steps whose state or operator fields changed.
            task_updates: Column values per task uid (export bookkeeping).
            release_claims: Clear claims held by this workflow.

        Returns:
            The new version.

        Raises:
            ConflictError: The version or status no longer matches.
        """
        new_version = expected_version + 1
        with self._session_factory.begin() as session:
            updated = (
                session.query(DataExportWorkflowRecord)
                .filter(
                    DataExportWorkflowRecord.uid == workflow.uid,
                    DataExportWorkflowRecord.version == expected_version,
                    DataExportWorkflowRecord.status == expected_status.value,
                )
                .update(
                    {
                        DataExportWorkflowRecord.status: workflow.status.value,
                        DataExportWorkflowRecord.current_step_number: workflow.current_step_number,
                        DataExportWorkflowRecord.status_changed_at: workflow.status_changed_at,
                        DataExportWorkflowRecord.version: new_version,
                    },
                    synchronize_session=False,
                )
            )
            if updated != 1:
                raise ConflictError(
                    f"Workflow {workflow.uid} was modified concurrently",
                    error_code=ErrorCode.CONCURRENT_UPDATE,
                    details=[{
                        "workflow_uid": workflow.uid,
                        "expected_version": expected_version,
                        "expected_status": expected_status.value,
                    }],
                )

            for step in changed_steps:
                self._write_step(session, workflow.uid, step)

            for task_uid, values in (task_updates or {}).items():
                session.query(DataExportTaskRecord).filter(
                    DataExportTaskRecord.uid == task_uid
                ).update(values, synchronize_session=False)

            if release_claims:
                session.query(DataExportTaskRecord).filter(
                    DataExportTaskRecord.claimed_by_workflow_uid == workflow.uid
                ).update(
                    {DataExportTaskRecord.claimed_by_workflow_uid: None},
                    synchronize_session=False,
                )

        workflow.version = new_version
        return new_version

    def _write_step(self, session: Session, workflow_uid: str, step: WorkflowStep) -> None:
        session.query(WorkflowStepRecord).filter(
            WorkflowStepRecord.workflow_uid == workflow_uid,
            WorkflowStepRecord.number == step.number,
        ).update(
            {
                WorkflowStepRecord.state: step.state.value,
                WorkflowStepRecord.operation_user_uid: step.operation_user_uid,
                WorkflowStepRecord.operation_time: step.operation_time,
                WorkflowStepRecord.reason: step.reason,
            },
            synchronize_session=False,
        )

    def find_stale_workflows(
        self, status: WorkflowStatus, cutoff: datetime, limit: int = 100
    ) -> List[Workflow]:
        """Workflows that entered *status* before *cutoff*."""
        with self._session_factory() as session:
            records = (
                session.query(DataExportWorkflowRecord)
                .filter(
                    DataExportWorkflowRecord.status == status.value,
                    DataExportWorkflowRecord.status_changed_at < cutoff,
                )
                .order_by(DataExportWorkflowRecord.status_changed_at)
                .limit(limit)
                .all()
            )
            return [_to_workflow(r) for r in records]

    def list_workflows(
        self,
        project_uid: str,
        *,
        visible_to: Optional[str] = None,
        creator_uid: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        keyword: Optional[str] = None,
        assignee_uid: Optional[str] = None,
        db_service_uid: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[WorkflowSummary], int]:
        """Filtered, paginated workflow summaries, newest first.

        Args:
            visible_to: Restrict to workflows this user created or is an
                assignee of on any step. None means no restriction.
        """
        wf = DataExportWorkflowRecord
        with self._session_factory() as session:
            query = session.query(wf).filter(wf.project_uid == project_uid)

            if visible_to:
                any_step = exists().where(
                    WorkflowStepRecord.workflow_uid == wf.uid,
                    WorkflowStepRecord.assignees.like(_assignee_pattern(visible_to), escape="\\"),
                )
                query = query.filter(or_(wf.create_user_uid == visible_to, any_step))
            if creator_uid:
                query = query.filter(wf.create_user_uid == creator_uid)
            if status is not None:
                query = query.filter(wf.status == status.value)
            if created_from:
                query = query.filter(wf.create_time >= created_from)
            if created_to:
                query = query.filter(wf.create_time <= created_to)
            if keyword:
                pattern = f"%{_like_escape(keyword)}%"
                query = query.filter(or_(
                    wf.name.ilike(pattern, escape="\\"),
                    wf.desc.ilike(pattern, escape="\\"),
                    wf.uid.ilike(pattern, escape="\\"),
                ))
            if assignee_uid:
                current_step = exists().where(
                    WorkflowStepRecord.workflow_uid == wf.uid,
                    WorkflowStepRecord.number == wf.current_step_number,
                    WorkflowStepRecord.assignees.like(_assignee_pattern(assignee_uid), escape="\\"),
                )
                query = query.filter(current_step)
            if db_service_uid:
                on_service = exists().where(
                    WorkflowTaskLinkRecord.workflow_uid == wf.uid,
                    WorkflowTaskLinkRecord.task_uid == DataExportTaskRecord.uid,
                    DataExportTaskRecord.db_service_uid == db_service_uid,
                )
                query = query.filter(on_service)

            total = query.count()
            records = (
                query.order_by(wf.create_time.desc(), wf.uid.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [_to_summary(r) for r in records], total
