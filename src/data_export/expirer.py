"""Data-Export Workflow Engine - Expirer.

Background sweeps on an independent timer thread:

- stale workflows (waiting on approvers or on the executor too long)
  are moved to ``expired`` by compare-and-set on the observed status
  and version, so a user transition that landed first always wins;
- successful exports past retention lose their artifact;
- audited tasks that were never submitted are deleted.
"""

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from src.api_errors import ConflictError
from src.logging_config import OperationContext
from .config import DEFAULT_WORKFLOW_CONFIG, EXPIRABLE_STATUSES, WorkflowConfig, WorkflowStatus
from .models import Workflow, WorkflowTransitionEvent, utcnow
from .notifications import NotificationDispatcher
from .repository import WorkflowRepository
from .state_machine import WORKFLOW_STATE_MACHINE
from .tasks import TaskRegistry

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


@dataclass
class SweepReport:
    """Counts from one expirer tick."""

    started_at: datetime
    expired_workflows: int = 0
    lost_races: int = 0
    expired_artifacts: int = 0
    deleted_orphans: int = 0
    failed_sweeps: List[str] = field(default_factory=list)


class Expirer:
    """Periodic reclamation of stale workflows, artifacts and orphan tasks."""

    def __init__(
        self,
        repository: WorkflowRepository,
        registry: TaskRegistry,
        dispatcher: Optional[NotificationDispatcher] = None,
        config: Optional[WorkflowConfig] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.dispatcher = dispatcher
        self.config = config or DEFAULT_WORKFLOW_CONFIG
        self._now = now_fn
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, interval_seconds: Optional[float] = None) -> None:
        """Start the timer thread; the first tick runs immediately."""
        if self.is_running:
            logger.warning("Expirer already running")
            return
        interval = interval_seconds or self.config.expirer_interval_seconds
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(interval,), daemon=True, name="dataexport-expirer"
        )
        self._thread.start()
        logger.info("Expirer started (interval %.1fs)", interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the loop to exit and wait for the current tick to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Expirer stopped")

    def _loop(self, interval: float) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            if self._stop_event.wait(interval):
                break

    # ── Sweeps ───────────────────────────────────────────────────────

    def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """Run every sweep once; a failing sweep does not stop the others."""
        now = now or self._now()
        report = SweepReport(started_at=now)
        with OperationContext("expirer_tick", actor_uid=SYSTEM_ACTOR):
            try:
                for candidate in self.find_candidates(now):
                    if self.expire(candidate, now):
                        report.expired_workflows += 1
                    else:
                        report.lost_races += 1
            except Exception:
                logger.exception("Workflow expiry sweep failed")
                report.failed_sweeps.append("workflows")

            try:
                report.expired_artifacts = self.registry.expire_artifacts(
                    now, limit=self.config.expirer_batch_size
                )
            except Exception:
                logger.exception("Artifact retention sweep failed")
                report.failed_sweeps.append("artifacts")

            try:
                report.deleted_orphans = self.registry.reclaim_orphans(
                    now, limit=self.config.expirer_batch_size
                )
            except Exception:
                logger.exception("Orphan task sweep failed")
                report.failed_sweeps.append("orphans")

        if report.expired_workflows or report.expired_artifacts or report.deleted_orphans:
            logger.info(
                "Expirer tick: %d workflow(s) expired, %d race(s) lost, "
                "%d artifact(s) expired, %d orphan task(s) deleted",
                report.expired_workflows, report.lost_races,
                report.expired_artifacts, report.deleted_orphans,
            )
        return report

    def find_candidates(self, now: datetime) -> List[Workflow]:
        """Workflows that overstayed a waiting status."""
        candidates: List[Workflow] = []
        for status in (WorkflowStatus.WAIT_FOR_AUDIT, WorkflowStatus.WAIT_FOR_EXECUTION):
            ttl = self.config.ttl_for(status)
            if ttl is None:
                continue
            candidates.extend(
                self.repository.find_stale_workflows(
                    status, now - ttl, limit=self.config.expirer_batch_size
                )
            )
        return candidates

    def expire(self, candidate: Workflow, now: datetime) -> bool:
        """Move one observed workflow to expired.

        Returns:
            False if the workflow changed since it was observed.
        """
        if candidate.status not in EXPIRABLE_STATUSES:
            return False
        WORKFLOW_STATE_MACHINE.require_transition(
            candidate.status, WorkflowStatus.EXPIRED, candidate.uid
        )
        expired = dataclasses.replace(
            candidate, status=WorkflowStatus.EXPIRED, status_changed_at=now
        )
        try:
            self.repository.commit_transition(
                expired,
                expected_version=candidate.version,
                expected_status=candidate.status,
                release_claims=True,
            )
        except ConflictError:
            logger.info(
                "Skipped expiring workflow changed since observed",
                extra={"workflow_uid": candidate.uid},
            )
            return False

        logger.info(
            "Expired workflow after %s in %s",
            now - candidate.status_changed_at, candidate.status.value,
            extra={"workflow_uid": candidate.uid, "status": "expired"},
        )
        if self.dispatcher is not None:
            self.dispatcher.dispatch(
                WorkflowTransitionEvent(
                    workflow_uid=candidate.uid,
                    project_uid=candidate.project_uid,
                    workflow_name=candidate.name,
                    from_status=candidate.status,
                    to_status=WorkflowStatus.EXPIRED,
                    actor_uid=SYSTEM_ACTOR,
                    timestamp=now,
                    recipient_uids=frozenset({candidate.create_user_uid}),
                )
            )
        return True
