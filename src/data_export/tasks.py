"""Data-Export Workflow Engine - Task Registry.

Registers audited export tasks, runs their exports concurrently and
serves the resulting artifacts.
"""

import contextvars
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from src.api_errors import (
    AuthorizationError,
    ErrorCode,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from src.api_errors.validators import (
    DEFAULT_PAGE_SIZE,
    validate_pagination,
    validate_sql_text,
    validate_uid,
    validate_uid_list,
)
from src.logging_config import OperationContext, PerformanceTimer, log_performance
from .artifacts import ArtifactStore
from .collaborators import (
    AuditVerdict,
    AuthorizationResolver,
    DBConnector,
    DBServiceDirectory,
    QueryResult,
    SQLAuditor,
)
from .config import DEFAULT_WORKFLOW_CONFIG, ExportStatus, WorkflowConfig
from .exporter import build_archive, export_file_name
from .models import DataExportTask, TaskOutcome, TaskStatement, utcnow
from .repository import WorkflowRepository

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Owns export tasks from audit to artifact."""

    def __init__(
        self,
        repository: WorkflowRepository,
        auditor: SQLAuditor,
        db_directory: DBServiceDirectory,
        connector: DBConnector,
        artifact_store: ArtifactStore,
        resolver: AuthorizationResolver,
        config: Optional[WorkflowConfig] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.auditor = auditor
        self.db_directory = db_directory
        self.connector = connector
        self.artifact_store = artifact_store
        self.resolver = resolver
        self.config = config or DEFAULT_WORKFLOW_CONFIG
        self._now = now_fn

    # ── Registration ─────────────────────────────────────────────────

    def register_task(
        self,
        db_service_uid: str,
        database_name: str,
        sql: str,
        requester_uid: str,
        *,
        project_uid: str,
        export_type: str = "sql",
        export_file_type: str = "csv",
    ) -> str:
        """Audit a SQL batch and register it as an export task.

        Returns:
            The new task uid.

        Raises:
            ValidationError: Empty SQL, malformed ids or unknown db service.
            ExternalServiceError: The auditor failed or timed out; no task
                is created.
        """
        validate_uid(db_service_uid, "db_service_uid")
        validate_uid(requester_uid, "requester_uid")
        validate_uid(project_uid, "project_uid")
        sql = validate_sql_text(sql)
        if export_file_type != "csv":
            raise ValidationError(
                f"Unsupported export file type: {export_file_type}",
                field="export_file_type",
            )

        descriptor = self.db_directory.get_db_service(db_service_uid)
        if descriptor is None:
            raise ValidationError(
                f"Unknown db service: {db_service_uid}",
                error_code=ErrorCode.UNKNOWN_DB_SERVICE,
                field="db_service_uid",
            )

        with OperationContext("register_task", project_uid=project_uid, actor_uid=requester_uid):
            verdict = self._audit(sql, descriptor.db_type)
            if not verdict.statements:
                raise ValidationError("SQL contains no statements", field="sql")

            task = DataExportTask(
                uid=uuid.uuid4().hex,
                project_uid=project_uid,
                create_user_uid=requester_uid,
                db_service_uid=db_service_uid,
                database_name=database_name or "",
                export_sql=sql,
                export_type=export_type,
                export_file_type=export_file_type,
                audit_level=verdict.level,
                audit_score=verdict.score,
                audit_pass_rate=verdict.pass_rate,
                statements=[
                    TaskStatement(
                        number=s.number,
                        sql=s.sql,
                        audit_level=s.level,
                        audit_results=list(s.results),
                    )
                    for s in sorted(verdict.statements, key=lambda s: s.number)
                ],
                export_status=ExportStatus.INIT,
                create_time=self._now(),
            )
            self.repository.add_task(task)
            logger.info(
                "Registered export task with %d statement(s), audit level %s",
                len(task.statements), task.audit_level,
                extra={"task_uid": task.uid},
            )
        return task.uid

    def _audit(self, sql: str, dialect: str) -> AuditVerdict:
        timeout = self.config.audit_timeout_seconds
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sql-audit")
        try:
            with PerformanceTimer("sql_audit"):
                future = executor.submit(self.auditor.audit, sql, dialect)
                return future.result(timeout=timeout)
        except FuturesTimeoutError as exc:
            logger.warning("SQL audit timed out after %ss", timeout)
            raise ExternalServiceError(
                f"SQL auditor timed out after {timeout}s",
                error_code=ErrorCode.EXTERNAL_TIMEOUT,
                service="sql_auditor",
            ) from exc
        except Exception as exc:
            logger.warning("SQL audit failed: %s", exc)
            raise ExternalServiceError(
                f"SQL audit failed: {exc}",
                error_code=ErrorCode.AUDIT_FAILED,
                service="sql_auditor",
            ) from exc
        finally:
            executor.shutdown(wait=False)

    # ── Queries ──────────────────────────────────────────────────────

    def get_tasks(self, task_uids: Sequence[str]) -> List[DataExportTask]:
        """Task snapshots in request order; unknown uids are omitted."""
        return self.repository.get_tasks(list(task_uids))

    def list_task_statements(
        self, task_uid: str, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE
    ) -> Tuple[List[TaskStatement], int]:
        """One page of a task's audited statements in batch order, plus the total.

        Raises:
            ValidationError: Malformed uid or pagination.
            NotFoundError: Unknown task.
        """
        validate_uid(task_uid, "task_uid")
        page, page_size = validate_pagination(page, page_size)
        self._require_task(task_uid)
        return self.repository.list_statements(
            task_uid, offset=(page - 1) * page_size, limit=page_size
        )

    def get_artifact(self, task_uid: str, requester_uid: str) -> bytes:
        """Return a task's archive for download.

        Raises:
            NotFoundError: Unknown task, never succeeded, past retention,
                or the artifact is gone.
            AuthorizationError: Requester is neither creator nor admin.
        """
        task = self._require_task(task_uid)
        if requester_uid != task.create_user_uid and not self.resolver.is_project_admin(
            task.project_uid, requester_uid
        ):
            raise AuthorizationError(
                f"User {requester_uid} may not download task {task_uid}",
                actor_uid=requester_uid,
            )
        if task.export_status != ExportStatus.SUCCESS:
            raise NotFoundError(
                f"Task {task_uid} has no artifact (status {task.export_status.value})",
                error_code=ErrorCode.ARTIFACT_NOT_FOUND,
                resource_type="artifact",
                resource_id=task_uid,
            )
        if task.export_end_time and self._now() - task.export_end_time > self.config.artifact_retention:
            raise NotFoundError(
                f"Artifact for task {task_uid} is past its retention window",
                error_code=ErrorCode.ARTIFACT_NOT_FOUND,
                resource_type="artifact",
                resource_id=task_uid,
            )
        return self.artifact_store.get(task_uid)

    def _require_task(self, task_uid: str) -> DataExportTask:
        task = self.repository.get_task(task_uid)
        if task is None:
            raise NotFoundError(
                f"Task {task_uid} not found",
                error_code=ErrorCode.TASK_NOT_FOUND,
                resource_type="task",
                resource_id=task_uid,
            )
        return task

    # ── Export ───────────────────────────────────────────────────────

    @log_performance()
    def export_all(
        self,
        task_uids: Sequence[str],
        *,
        file_name_prefix: Optional[str] = None,
    ) -> Dict[str, TaskOutcome]:
        """Export every task concurrently; one task's failure never blocks others.

        Outcomes are returned, not persisted: the caller commits them
        together with the workflow's terminal status.
        """
        task_uids = validate_uid_list(task_uids)
        tasks = {t.uid: t for t in self.repository.get_tasks(task_uids)}
        outcomes: Dict[str, TaskOutcome] = {}

        for uid in task_uids:
            if uid not in tasks:
                now = self._now()
                outcomes[uid] = TaskOutcome(
                    task_uid=uid,
                    status=ExportStatus.FAILED,
                    started_at=now,
                    finished_at=now,
                    error="task not found",
                )

        runnable = [tasks[uid] for uid in task_uids if uid in tasks]
        if runnable:
            max_workers = min(len(runnable), self.config.export_worker_pool_size)
            with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="export") as pool:
                futures = {
                    pool.submit(
                        contextvars.copy_context().run,
                        self._export_task,
                        task,
                        file_name_prefix,
                    ): task.uid
                    for task in runnable
                }
                for future in futures:
                    outcomes[futures[future]] = future.result()

        failed = sum(1 for o in outcomes.values() if not o.succeeded)
        logger.info("Exported %d task(s), %d failed", len(outcomes), failed)
        return {uid: outcomes[uid] for uid in task_uids}

    def _export_task(self, task: DataExportTask, file_name_prefix: Optional[str]) -> TaskOutcome:
        """Run one task under the per-task timeout and store its archive."""
        started_at = self._now()
        timeout = self.config.export_query_timeout_seconds
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"export-{task.uid[:8]}")
        try:
            with PerformanceTimer(f"export_task:{task.uid}"):
                future = executor.submit(contextvars.copy_context().run, self._build_archive, task)
                archive = future.result(timeout=timeout)
                self.artifact_store.put(task.uid, archive)
        except FuturesTimeoutError:
            error = f"export timed out after {timeout}s"
            logger.warning("Task export timed out", extra={"task_uid": task.uid})
            return self._failed(task.uid, started_at, error)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.warning("Task export failed: %s", error, extra={"task_uid": task.uid})
            return self._failed(task.uid, started_at, error)
        finally:
            executor.shutdown(wait=False)

        return TaskOutcome(
            task_uid=task.uid,
            status=ExportStatus.SUCCESS,
            started_at=started_at,
            finished_at=self._now(),
            file_name=export_file_name(task.uid, file_name_prefix),
        )

    def _build_archive(self, task: DataExportTask) -> bytes:
        descriptor = self.db_directory.get_db_service(task.db_service_uid)
        if descriptor is None:
            raise LookupError(f"db service {task.db_service_uid} no longer exists")

        results: List[Tuple[int, QueryResult]] = []
        for statement in task.statements:
            result = self.connector.execute(
                descriptor,
                task.database_name,
                statement.sql,
                self.config.export_query_timeout_seconds,
            )
            results.append((statement.number, result))
        return build_archive(task.uid, results)

    def _failed(self, task_uid: str, started_at: datetime, error: str) -> TaskOutcome:
        return TaskOutcome(
            task_uid=task_uid,
            status=ExportStatus.FAILED,
            started_at=started_at,
            finished_at=self._now(),
            error=error,
        )

    # ── Housekeeping ─────────────────────────────────────────────────

    def expire_artifacts(self, now: datetime, limit: int = 100) -> int:
        """Expire successful tasks past retention and delete their artifacts."""
        cutoff = now - self.config.artifact_retention
        expired = 0
        for task_uid in self.repository.find_expired_artifacts(cutoff, limit):
            if not self.repository.mark_artifact_expired(task_uid):
                continue
            self.artifact_store.delete(task_uid)
            expired += 1
            logger.info("Expired artifact", extra={"task_uid": task_uid})
        return expired

    def reclaim_orphans(self, now: datetime, limit: int = 100) -> int:
        """Delete audited tasks that were never submitted to a workflow."""
        cutoff = now - self.config.orphan_task_ttl
        deleted = 0
        for task_uid in self.repository.find_orphan_tasks(cutoff, limit):
            if self.repository.delete_orphan_task(task_uid, cutoff):
                deleted += 1
                logger.info("Deleted orphan task", extra={"task_uid": task_uid})
        return deleted
