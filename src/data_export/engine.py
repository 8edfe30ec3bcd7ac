"""Data-Export Workflow Engine - Workflow Lifecycle.

Creates workflows from audited tasks, walks them through their frozen
approval steps, executes them and answers queries. Each mutation reads
the aggregate, checks status, step pointer and actor, then commits
through a version-guarded update.
"""

import logging
import time
import uuid
from datetime import datetime
from typing import Callable, Collection, Dict, List, Optional, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from src.api_errors import (
    AuthorizationError,
    ConflictError,
    ErrorCode,
    ExportGovernanceError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from src.api_errors.validators import (
    MAX_DESC_LENGTH,
    validate_desc,
    validate_name,
    validate_pagination,
    validate_time_range,
    validate_uid,
    validate_uid_list,
)
from src.logging_config import OperationContext
from .collaborators import AuthorizationResolver
from .config import (
    CANCELABLE_STATUSES,
    DEFAULT_WORKFLOW_CONFIG,
    ActionKind,
    ExportStatus,
    StepState,
    WorkflowConfig,
    WorkflowStatus,
)
from .models import (
    ExecutionReport,
    TaskOutcome,
    Workflow,
    WorkflowStep,
    WorkflowSummary,
    WorkflowTransitionEvent,
    utcnow,
)
from .notifications import NotificationDispatcher
from .repository import WorkflowRepository
from .state_machine import WORKFLOW_STATE_MACHINE, StateMachine
from .tasks import TaskRegistry

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Owns the data-export workflow state machine."""

    def __init__(
        self,
        repository: WorkflowRepository,
        registry: TaskRegistry,
        resolver: AuthorizationResolver,
        dispatcher: Optional[NotificationDispatcher] = None,
        config: Optional[WorkflowConfig] = None,
        now_fn: Callable[[], datetime] = utcnow,
        state_machine: StateMachine = WORKFLOW_STATE_MACHINE,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.config = config or DEFAULT_WORKFLOW_CONFIG
        self.state_machine = state_machine
        self._now = now_fn

    # ── Creation ─────────────────────────────────────────────────────

    def create_workflow(
        self,
        requester_uid: str,
        project_uid: str,
        name: str,
        desc: str,
        task_uids: List[str],
    ) -> str:
        """Freeze the approval plan and claim the tasks.

        Raises:
            ValidationError: Bad input, unknown or foreign tasks, or an
                approval plan with no assignees.
            ConflictError: A task is already claimed or was exported.
        """
        validate_uid(requester_uid, "requester_uid")
        validate_uid(project_uid, "project_uid")
        name = validate_name(name)
        desc = validate_desc(desc)
        task_uids = validate_uid_list(task_uids)

        with OperationContext("create_workflow", project_uid=project_uid, actor_uid=requester_uid):
            self._check_tasks(project_uid, task_uids)
            steps = self._resolve_steps(project_uid)

            now = self._now()
            workflow = Workflow(
                uid=uuid.uuid4().hex,
                project_uid=project_uid,
                name=name,
                desc=desc,
                create_user_uid=requester_uid,
                create_time=now,
                task_uids=task_uids,
                status=WorkflowStatus.WAIT_FOR_AUDIT,
                current_step_number=1,
                steps=steps,
                status_changed_at=now,
                version=1,
            )
            self.repository.create_workflow(workflow)
            logger.info(
                "Created workflow with %d task(s) and %d approval step(s)",
                len(task_uids), len(steps),
                extra={"workflow_uid": workflow.uid},
            )
            self._notify(workflow, None, requester_uid)
        return workflow.uid

    def _check_tasks(self, project_uid: str, task_uids: List[str]) -> None:
        tasks = {t.uid: t for t in self.repository.get_tasks(task_uids)}

        unknown = [uid for uid in task_uids if uid not in tasks]
        if unknown:
            raise ValidationError(
                f"Unknown task(s): {', '.join(unknown)}",
                error_code=ErrorCode.UNKNOWN_TASK,
                details=[{"field": "task_uids", "task_uid": uid} for uid in unknown],
            )

        foreign = [uid for uid, t in tasks.items() if t.project_uid != project_uid]
        if foreign:
            raise ValidationError(
                f"Task(s) belong to another project: {', '.join(foreign)}",
                details=[{"field": "task_uids", "task_uid": uid} for uid in foreign],
            )

        unavailable = [
            uid for uid, t in tasks.items()
            if t.claimed_by_workflow_uid or t.export_status != ExportStatus.INIT
        ]
        if unavailable:
            raise ConflictError(
                f"Task(s) already claimed or exported: {', '.join(unavailable)}",
                error_code=ErrorCode.TASK_ALREADY_CLAIMED,
                details=[
                    {
                        "task_uid": uid,
                        "claimed_by_workflow_uid": tasks[uid].claimed_by_workflow_uid,
                        "export_status": tasks[uid].export_status.value,
                    }
                    for uid in unavailable
                ],
            )

    def _resolve_steps(self, project_uid: str) -> List[WorkflowStep]:
        try:
            plan = self.resolver.resolve_approval_steps(project_uid, ActionKind.DATA_EXPORT.value)
        except ExportGovernanceError:
            raise
        except Exception as exc:
            raise ExternalServiceError(
                f"Could not resolve approval steps: {exc}",
                service="authorization_resolver",
            ) from exc

        if not plan:
            raise ValidationError(
                f"No approval steps configured for project {project_uid}",
                error_code=ErrorCode.EMPTY_ASSIGNEES,
            )

        steps = []
        for number, planned in enumerate(plan, start=1):
            assignees = frozenset(uid for uid in planned.assignee_uids if uid)
            if not assignees:
                raise ValidationError(
                    f"Approval step {number} ({planned.step_type}) has no assignees",
                    error_code=ErrorCode.EMPTY_ASSIGNEES,
                    details=[{"step_number": number, "step_type": planned.step_type}],
                )
            steps.append(WorkflowStep(number=number, step_type=planned.step_type, assignees=assignees))
        return steps

    # ── Approval ─────────────────────────────────────────────────────

    def approve(
        self,
        workflow_uid: str,
        approver_uid: str,
        *,
        step_number: Optional[int] = None,
    ) -> Workflow:
        """Approve the current step; the last approval moves to wait_for_execution.

        Args:
            step_number: If given, the step the approver saw; a mismatch
                with the current step is a conflict.
        """
        validate_uid(approver_uid, "approver_uid")
        workflow = self._load(workflow_uid)
        with OperationContext(
            "approve", workflow_uid=workflow.uid, project_uid=workflow.project_uid, actor_uid=approver_uid
        ):
            step = self._require_current_step(workflow, "approve", step_number)
            self._require_assignee(workflow, step, approver_uid)

            from_status, expected_version = workflow.status, workflow.version
            now = self._now()
            step.state = StepState.APPROVED
            step.operation_user_uid = approver_uid
            step.operation_time = now

            if workflow.is_last_step:
                self.state_machine.require_transition(
                    from_status, WorkflowStatus.WAIT_FOR_EXECUTION, workflow.uid
                )
                workflow.status = WorkflowStatus.WAIT_FOR_EXECUTION
                workflow.status_changed_at = now
            else:
                workflow.current_step_number += 1

            self.repository.commit_transition(
                workflow,
                expected_version=expected_version,
                expected_status=from_status,
                changed_steps=[step],
            )
            logger.info(
                "Step %d approved; workflow now %s at step %s",
                step.number, workflow.status.value, workflow.current_step_number,
                extra={"workflow_uid": workflow.uid, "status": workflow.status.value},
            )
            self._notify(workflow, from_status, approver_uid)
        return workflow

    def reject(
        self,
        workflow_uid: str,
        approver_uid: str,
        reason: str,
        *,
        step_number: Optional[int] = None,
    ) -> Workflow:
        """Reject the current step; the workflow ends rejected and claims are released."""
        validate_uid(approver_uid, "approver_uid")
        reason = validate_name(reason, field="reason", max_length=MAX_DESC_LENGTH)
        workflow = self._load(workflow_uid)
        with OperationContext(
            "reject", workflow_uid=workflow.uid, project_uid=workflow.project_uid, actor_uid=approver_uid
        ):
            step = self._require_current_step(workflow, "reject", step_number)
            self._require_assignee(workflow, step, approver_uid)
            self.state_machine.require_transition(workflow.status, WorkflowStatus.REJECTED, workflow.uid)

            from_status, expected_version = workflow.status, workflow.version
            now = self._now()
            step.state = StepState.REJECTED
            step.operation_user_uid = approver_uid
            step.operation_time = now
            step.reason = reason
            workflow.status = WorkflowStatus.REJECTED
            workflow.status_changed_at = now

            self.repository.commit_transition(
                workflow,
                expected_version=expected_version,
                expected_status=from_status,
                changed_steps=[step],
                release_claims=True,
            )
            logger.info(
                "Step %d rejected", step.number,
                extra={"workflow_uid": workflow.uid, "status": workflow.status.value},
            )
            self._notify(workflow, from_status, approver_uid)
        return workflow

    def cancel(self, workflow_uid: str, requester_uid: str) -> Workflow:
        """Cancel a workflow that has not started executing."""
        validate_uid(requester_uid, "requester_uid")
        workflow = self._load(workflow_uid)
        with OperationContext(
            "cancel", workflow_uid=workflow.uid, project_uid=workflow.project_uid, actor_uid=requester_uid
        ):
            self._require_status(workflow, CANCELABLE_STATUSES, "cancel")
            self._require_creator_or_admin(workflow, requester_uid, "cancel")
            self.state_machine.require_transition(workflow.status, WorkflowStatus.CANCELED, workflow.uid)

            from_status, expected_version = workflow.status, workflow.version
            now = self._now()
            changed_steps = []
            step = workflow.current_step
            # approved steps keep their approver
            if step is not None and step.state == StepState.INIT:
                step.operation_user_uid = requester_uid
                step.operation_time = now
                changed_steps.append(step)
            workflow.status = WorkflowStatus.CANCELED
            workflow.status_changed_at = now

            self.repository.commit_transition(
                workflow,
                expected_version=expected_version,
                expected_status=from_status,
                changed_steps=changed_steps,
                release_claims=True,
            )
            logger.info("Workflow canceled", extra={"workflow_uid": workflow.uid, "status": "canceled"})
            self._notify(workflow, from_status, requester_uid)
        return workflow

    # ── Execution ────────────────────────────────────────────────────

    def execute(self, workflow_uid: str, executor_uid: str) -> ExecutionReport:
        """Run every task and commit the outcomes with the terminal status.

        Partial failures do not raise; call
        ``ExecutionReport.raise_for_failures()`` to get a PartialFailureError.
        """
        validate_uid(executor_uid, "executor_uid")
        workflow = self._load(workflow_uid)
        with OperationContext(
            "execute", workflow_uid=workflow.uid, project_uid=workflow.project_uid, actor_uid=executor_uid
        ):
            self._require_status(workflow, {WorkflowStatus.WAIT_FOR_EXECUTION}, "execute")
            self._require_creator_or_admin(workflow, executor_uid, "execute")
            self.state_machine.require_transition(workflow.status, WorkflowStatus.EXECUTING, workflow.uid)

            started_at = self._now()
            workflow.status = WorkflowStatus.EXECUTING
            workflow.status_changed_at = started_at
            self.repository.commit_transition(
                workflow,
                expected_version=workflow.version,
                expected_status=WorkflowStatus.WAIT_FOR_EXECUTION,
                task_updates={
                    uid: {
                        "export_status": ExportStatus.EXPORTING.value,
                        "export_start_time": started_at,
                    }
                    for uid in workflow.task_uids
                },
            )
            self._notify(workflow, WorkflowStatus.WAIT_FOR_EXECUTION, executor_uid)

            outcomes = self._run_exports(workflow, started_at)
            final = (
                WorkflowStatus.FINISHED
                if all(o.succeeded for o in outcomes.values())
                else WorkflowStatus.EXEC_FAILED
            )
            self.state_machine.require_transition(WorkflowStatus.EXECUTING, final, workflow.uid)

            workflow.status = final
            workflow.status_changed_at = self._now()
            final, outcomes = self._commit_outcomes(workflow, outcomes)
            report = ExecutionReport(workflow_uid=workflow.uid, status=final, outcomes=outcomes)
            logger.info(
                "Execution %s: %d succeeded, %d failed",
                final.value, len(report.succeeded), len(report.failed),
                extra={"workflow_uid": workflow.uid, "status": final.value},
            )
            self._notify(workflow, WorkflowStatus.EXECUTING, executor_uid)
        return report

    def _run_exports(self, workflow: Workflow, started_at: datetime) -> Dict[str, TaskOutcome]:
        try:
            return self.registry.export_all(workflow.task_uids, file_name_prefix=workflow.name)
        except Exception as exc:
            logger.exception("Export run aborted", extra={"workflow_uid": workflow.uid})
            finished_at = self._now()
            return {
                uid: TaskOutcome(
                    task_uid=uid,
                    status=ExportStatus.FAILED,
                    started_at=started_at,
                    finished_at=finished_at,
                    error=f"export run aborted: {exc}",
                )
                for uid in workflow.task_uids
            }

    def _commit_outcomes(
        self, workflow: Workflow, outcomes: Dict[str, TaskOutcome]
    ) -> Tuple[WorkflowStatus, Dict[str, TaskOutcome]]:
        """Commit the terminal status with the outcomes, retrying storage errors.

        Once retries are exhausted every task is recorded as failed under
        exec_failed so the workflow never stays executing. Version conflicts
        are not retried.
        """
        attempts = max(1, self.config.commit_retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                self.repository.commit_transition(
                    workflow,
                    expected_version=workflow.version,
                    expected_status=WorkflowStatus.EXECUTING,
                    task_updates={uid: self._outcome_columns(o) for uid, o in outcomes.items()},
                    release_claims=True,
                )
                return workflow.status, outcomes
            except SQLAlchemyError:
                logger.warning(
                    "Outcome commit attempt %d/%d failed", attempt, attempts,
                    exc_info=True, extra={"workflow_uid": workflow.uid},
                )
                if attempt < attempts:
                    time.sleep(self.config.commit_retry_delay_seconds * attempt)

        failed_at = self._now()
        error = "export outcome could not be recorded"
        fallback = {
            uid: TaskOutcome(
                task_uid=uid,
                status=ExportStatus.FAILED,
                started_at=o.started_at,
                finished_at=o.finished_at,
                error=error,
            )
            for uid, o in outcomes.items()
        }
        workflow.status = WorkflowStatus.EXEC_FAILED
        workflow.status_changed_at = failed_at
        try:
            self.repository.commit_transition(
                workflow,
                expected_version=workflow.version,
                expected_status=WorkflowStatus.EXECUTING,
                task_updates={
                    uid: {
                        "export_status": ExportStatus.FAILED.value,
                        "export_end_time": failed_at,
                        "export_file_name": None,
                        "error_message": error,
                    }
                    for uid in outcomes
                },
                release_claims=True,
            )
        except SQLAlchemyError as exc:
            logger.exception(
                "Could not record exec_failed after outcome commit failures",
                extra={"workflow_uid": workflow.uid},
            )
            raise ExportGovernanceError(
                f"Workflow {workflow.uid} outcome could not be recorded",
                ErrorCode.DATABASE_ERROR,
            ) from exc
        logger.error(
            "Outcome commit failed %d time(s); workflow recorded as exec_failed", attempts,
            extra={"workflow_uid": workflow.uid, "status": WorkflowStatus.EXEC_FAILED.value},
        )
        return WorkflowStatus.EXEC_FAILED, fallback

    @staticmethod
    def _outcome_columns(outcome: TaskOutcome) -> Dict:
        return {
            "export_status": outcome.status.value,
            "export_start_time": outcome.started_at,
            "export_end_time": outcome.finished_at,
            "export_file_name": outcome.file_name,
            "error_message": outcome.error,
        }

    # ── Queries ──────────────────────────────────────────────────────

    def get_workflow(self, project_uid: str, workflow_uid: str) -> Workflow:
        workflow = self._load(workflow_uid)
        if workflow.project_uid != project_uid:
            raise self._not_found(workflow_uid)
        return workflow

    def list_workflows(
        self,
        project_uid: str,
        *,
        viewer_uid: Optional[str] = None,
        creator_uid: Optional[str] = None,
        status: Optional[Union[WorkflowStatus, str]] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        keyword: Optional[str] = None,
        assignee_uid: Optional[str] = None,
        db_service_uid: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[WorkflowSummary], int]:
        """Filtered, paginated summaries and the total match count.

        A non-admin ``viewer_uid`` only sees workflows they created or
        are an assignee of.
        """
        validate_uid(project_uid, "project_uid")
        page, page_size = validate_pagination(page, page_size)
        validate_time_range(created_from, created_to)
        if status is not None and not isinstance(status, WorkflowStatus):
            try:
                status = WorkflowStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown workflow status: {status}", field="status") from None

        visible_to = None
        if viewer_uid and not self.resolver.is_project_admin(project_uid, viewer_uid):
            visible_to = viewer_uid

        return self.repository.list_workflows(
            project_uid,
            visible_to=visible_to,
            creator_uid=creator_uid,
            status=status,
            created_from=created_from,
            created_to=created_to,
            keyword=keyword.strip() if keyword else None,
            assignee_uid=assignee_uid,
            db_service_uid=db_service_uid,
            offset=(page - 1) * page_size,
            limit=page_size,
        )

    # ── Guards ───────────────────────────────────────────────────────

    def _load(self, workflow_uid: str) -> Workflow:
        validate_uid(workflow_uid, "workflow_uid")
        workflow = self.repository.get_workflow(workflow_uid)
        if workflow is None:
            raise self._not_found(workflow_uid)
        return workflow

    @staticmethod
    def _not_found(workflow_uid: str) -> NotFoundError:
        return NotFoundError(
            f"Workflow {workflow_uid} not found",
            error_code=ErrorCode.WORKFLOW_NOT_FOUND,
            resource_type="workflow",
            resource_id=workflow_uid,
        )

    @staticmethod
    def _require_status(workflow: Workflow, allowed: Collection[WorkflowStatus], action: str) -> None:
        if workflow.status not in allowed:
            raise ConflictError(
                f"Cannot {action} workflow {workflow.uid} in status '{workflow.status.value}'",
                error_code=ErrorCode.INVALID_STATE_TRANSITION,
                details=[{"workflow_uid": workflow.uid, "status": workflow.status.value}],
            )

    def _require_current_step(
        self, workflow: Workflow, action: str, step_number: Optional[int]
    ) -> WorkflowStep:
        self._require_status(workflow, {WorkflowStatus.WAIT_FOR_AUDIT}, action)
        step = workflow.current_step
        if step is None or step.state != StepState.INIT:
            raise ConflictError(
                f"Workflow {workflow.uid} has no pending step",
                error_code=ErrorCode.INVALID_STATE_TRANSITION,
            )
        if step_number is not None and step_number != step.number:
            raise ConflictError(
                f"Step {step_number} is not the current step ({step.number})",
                error_code=ErrorCode.INVALID_STATE_TRANSITION,
                details=[{"workflow_uid": workflow.uid, "current_step_number": step.number}],
            )
        return step

    def _require_assignee(self, workflow: Workflow, step: WorkflowStep, actor_uid: str) -> None:
        if actor_uid in step.assignees:
            return
        if self.resolver.is_project_admin(workflow.project_uid, actor_uid):
            return
        raise AuthorizationError(
            f"User {actor_uid} is not an assignee of step {step.number}",
            actor_uid=actor_uid,
        )

    def _require_creator_or_admin(self, workflow: Workflow, actor_uid: str, action: str) -> None:
        if actor_uid == workflow.create_user_uid:
            return
        if self.resolver.is_project_admin(workflow.project_uid, actor_uid):
            return
        raise AuthorizationError(
            f"Only the creator or a project admin may {action} workflow {workflow.uid}",
            actor_uid=actor_uid,
        )

    # ── Notifications ────────────────────────────────────────────────

    def _notify(
        self, workflow: Workflow, from_status: Optional[WorkflowStatus], actor_uid: str
    ) -> None:
        if self.dispatcher is None:
            return
        if workflow.status == WorkflowStatus.WAIT_FOR_AUDIT and workflow.current_step:
            recipients = workflow.current_step.assignees
        else:
            recipients = frozenset({workflow.create_user_uid})
        self.dispatcher.dispatch(
            WorkflowTransitionEvent(
                workflow_uid=workflow.uid,
                project_uid=workflow.project_uid,
                workflow_name=workflow.name,
                from_status=from_status,
                to_status=workflow.status,
                actor_uid=actor_uid,
                timestamp=self._now(),
                recipient_uids=frozenset(recipients),
            )
        )
