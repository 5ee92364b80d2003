"""
Poll loops that turn asynchronous remote operations into blocking steps.

- wait_for_task: one task until Success or Error
- wait_for_idle: a resource and all its children until no task is queued/running
- wait_while_status: a resource until it leaves a transient status

Every loop pauses on the workflow's cancellation event, so a cancelled
workflow stops at its next suspension point, and every loop carries an
optional deadline.
"""

import logging
import threading
import time
from typing import Callable, Optional

from config.settings import PollingSettings, get_settings
from vcloud.client import ControlPlane
from vcloud.errors import (
    CloudError,
    OperationError,
    TaskTimeoutError,
    TransientObservationError,
    WorkflowCancelledError,
)
from vcloud.models import AsyncTask, ManagedResource, ResourceStatus, TaskStatus

logger = logging.getLogger(__name__)


class Waiter:
    """
    Blocking waits bound to one workflow.

    Args:
        client: The workflow's scoped session, used for resource re-fetches
        client_factory: Opens a fresh session for each task re-fetch
        polling: Intervals and deadlines (default: get_settings().polling)
        cancel_event: Set to cancel the workflow at its next pause
        correlation_id: Prefix for log lines
    """

    def __init__(
        self,
        client: ControlPlane,
        client_factory: Callable[[], ControlPlane],
        polling: Optional[PollingSettings] = None,
        cancel_event: Optional[threading.Event] = None,
        correlation_id: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.client_factory = client_factory
        self.polling = polling or get_settings().polling
        self.cancel_event = cancel_event or threading.Event()
        self.correlation_id = correlation_id
        self._clock = clock

    # =========================================================================
    # Suspension points
    # =========================================================================

    def pause(self, interval: float) -> None:
        if self.cancel_event.wait(interval):
            raise WorkflowCancelledError(f"[{self.correlation_id}] Workflow cancelled")

    def _deadline(self, timeout: float) -> Optional[float]:
        if not timeout or timeout <= 0:
            return None
        return self._clock() + timeout

    def _check_deadline(self, deadline: Optional[float], what: str, timeout: float) -> None:
        if self.cancel_event.is_set():
            raise WorkflowCancelledError(f"[{self.correlation_id}] Workflow cancelled")
        if deadline is not None and self._clock() >= deadline:
            raise TaskTimeoutError(
                f"[{self.correlation_id}] Timed out after {timeout:g}s waiting for {what}"
            )

    # =========================================================================
    # Tasks
    # =========================================================================

    def wait_for_task(self, task: Optional[AsyncTask]) -> Optional[AsyncTask]:
        """
        Block until a task is terminal.

        A None task means the operation finished without producing one.

        Returns:
            The final task snapshot

        Raises:
            OperationError: The task ended in Error (carries the remote message)
            TaskTimeoutError: VCLOUD_TASK_TIMEOUT elapsed
            WorkflowCancelledError: The workflow was cancelled
        """
        if task is None:
            return None

        timeout = self.polling.task_timeout
        deadline = self._deadline(timeout)
        current = task

        while current.is_active:
            self._check_deadline(deadline, f"task {current.operation or current.href}", timeout)
            self.pause(self.polling.task_poll_interval)
            try:
                with self.client_factory() as session:
                    refreshed = session.fetch_task(current.href, self.correlation_id)
            except CloudError as e:
                logger.warning(f"[{self.correlation_id}] Could not refresh task {current.href}: {e}")
                continue
            if refreshed is None:
                logger.warning(f"[{self.correlation_id}] Task {current.href} not visible, retrying")
                continue
            current = refreshed

        if current.status == TaskStatus.ERROR:
            raise OperationError(current.error_message or "Remote task failed", task=current)

        logger.debug(f"[{self.correlation_id}] Task {current.operation} completed")
        return current

    # =========================================================================
    # Resources
    # =========================================================================

    def _refetch(self, href: str) -> Optional[ManagedResource]:
        return self.client.fetch_resource(href, self.correlation_id)

    def is_busy(self, resource: ManagedResource) -> bool:
        """True while the resource or any child has a queued or running task."""
        return any(task.is_active for task in self.client.list_child_tasks(resource))

    def wait_for_idle(self, resource: Optional[ManagedResource]) -> Optional[ManagedResource]:
        """
        Block until a resource and its children have no queued/running task.

        Returns:
            A fresh snapshot, or None if the resource no longer exists.
            Callers must continue with the returned snapshot.
        """
        if resource is None:
            return None

        timeout = self.polling.idle_timeout
        deadline = self._deadline(timeout)

        while True:
            try:
                current = self._refetch(resource.href)
            except TransientObservationError as e:
                logger.warning(f"[{self.correlation_id}] Could not refresh {resource.href}: {e}")
                current = resource
            else:
                if current is None:
                    logger.info(f"[{self.correlation_id}] {resource.href} no longer exists")
                    return None
                if not self.is_busy(current):
                    return current

            self._check_deadline(deadline, f"{resource.name or resource.href} to become idle", timeout)
            self.pause(self.polling.idle_poll_interval)

    def wait_while_status(
        self,
        resource: Optional[ManagedResource],
        status: ResourceStatus,
        interval: Optional[float] = None,
    ) -> Optional[ManagedResource]:
        """Re-fetch a resource until it leaves ``status``; re-fetch failures are ignored."""
        if resource is None:
            return None

        interval = self.polling.idle_poll_interval if interval is None else interval
        timeout = self.polling.idle_timeout
        deadline = self._deadline(timeout)
        current = resource

        while current.status == status:
            self._check_deadline(deadline, f"{current.name or current.href} to leave {status.name}", timeout)
            self.pause(interval)
            try:
                refreshed = self._refetch(current.href)
            except CloudError as e:
                logger.warning(f"[{self.correlation_id}] Could not refresh {current.href}: {e}")
                continue
            if refreshed is None:
                return None
            current = refreshed

        return current

    def wait_while_unresolved(self, resource: Optional[ManagedResource]) -> Optional[ManagedResource]:
        """Wait for a newly created resource to materialize."""
        return self.wait_while_status(
            resource, ResourceStatus.UNRESOLVED, self.polling.unresolved_poll_interval
        )
