"""Data-Export Workflow Engine - Notification Dispatch.

Best-effort asynchronous fan-out of committed workflow transitions to
every configured notifier. Delivery failures are logged and counted,
never raised into the engine.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from src.settings import Settings, get_settings
from .collaborators import Notifier
from .config import WorkflowStatus
from .models import WorkflowTransitionEvent

logger = logging.getLogger(__name__)


SUBJECTS = {
    WorkflowStatus.WAIT_FOR_AUDIT: "Data export workflow awaiting your approval",
    WorkflowStatus.WAIT_FOR_EXECUTION: "Data export workflow approved and ready to execute",
    WorkflowStatus.EXECUTING: "Data export workflow is executing",
    WorkflowStatus.FINISHED: "Data export workflow finished",
    WorkflowStatus.EXEC_FAILED: "Data export workflow failed",
    WorkflowStatus.REJECTED: "Data export workflow rejected",
    WorkflowStatus.CANCELED: "Data export workflow canceled",
    WorkflowStatus.EXPIRED: "Data export workflow expired",
}


def render_message(event: WorkflowTransitionEvent) -> Tuple[str, str]:
    """Subject and body for a transition event."""
    subject = SUBJECTS.get(event.to_status, "Data export workflow updated")
    from_status = event.from_status.value if event.from_status else "-"
    body = (
        f"Workflow: {event.workflow_name} ({event.workflow_uid})\n"
        f"Project: {event.project_uid}\n"
        f"Status: {from_status} -> {event.to_status.value}\n"
        f"Operator: {event.actor_uid}\n"
        f"Time: {event.timestamp.isoformat()}"
    )
    return subject, body


@dataclass
class DispatchStats:
    """Delivery counters across all notifiers."""

    dispatched: int = 0
    delivered: int = 0
    failed: int = 0


class NotificationDispatcher:
    """Submits notifier fan-out to a small thread pool."""

    def __init__(self, notifiers: Sequence[Notifier], max_workers: int = 2):
        self.notifiers = list(notifiers)
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")
        self._lock = threading.Lock()
        self._stats = DispatchStats()

    @classmethod
    def from_settings(
        cls, notifiers: Sequence[Notifier], settings: Optional[Settings] = None
    ) -> "NotificationDispatcher":
        settings = settings or get_settings()
        return cls(notifiers, max_workers=settings.notification_workers)

    @property
    def stats(self) -> DispatchStats:
        with self._lock:
            return DispatchStats(**vars(self._stats))

    def dispatch(self, event: WorkflowTransitionEvent) -> Optional[Future]:
        """Queue an event for delivery; returns None when there is nothing to send."""
        if not self.notifiers or not event.recipient_uids:
            logger.debug(
                "No notifiers or recipients for %s -> %s",
                event.from_status, event.to_status.value,
                extra={"workflow_uid": event.workflow_uid},
            )
            return None
        with self._lock:
            self._stats.dispatched += 1
        try:
            return self._pool.submit(self._fan_out, event)
        except RuntimeError:
            logger.warning(
                "Dispatcher is shut down; dropping notification",
                extra={"workflow_uid": event.workflow_uid},
            )
            return None

    def _fan_out(self, event: WorkflowTransitionEvent) -> None:
        subject, body = render_message(event)
        recipients = sorted(event.recipient_uids)
        for notifier in self.notifiers:
            try:
                notifier.notify(subject, body, recipients)
            except Exception:
                with self._lock:
                    self._stats.failed += 1
                logger.exception(
                    "Notifier %s failed", type(notifier).__name__,
                    extra={"workflow_uid": event.workflow_uid},
                )
                continue
            with self._lock:
                self._stats.delivered += 1

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting events; optionally wait for queued deliveries."""
        self._pool.shutdown(wait=wait)
