"""
Workflow state management.

Tracks launch, capture and terminate workflows as jobs with step progress,
compensation records, and cleanup capabilities. Background workflows hand
their outcome to the caller through a CompletionToken.

State is kept in memory and, when a state file is configured, persisted
to JSON so job history survives restarts.
"""

import json
import logging
import threading
import uuid
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from vcloud.errors import TaskTimeoutError
from vcloud.timestamps import isonow, now, parse_timestamp

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Workflow job status values."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


class WorkflowKind(Enum):
    LAUNCH = "launch"
    CAPTURE = "capture"
    TERMINATE = "terminate"


FINISHED_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.ROLLED_BACK,
    JobStatus.CANCELLED,
})


@dataclass
class WorkflowJob:
    """
    A single workflow run with full tracking.

    Attributes:
        job_id: Unique job identifier
        correlation_id: Tag carried by every log line of the run
        workflow: Which workflow this is
        target: Template id (launch) or machine id (capture, terminate)
        status: Current job status
        step: Current step being executed
        progress_pct: Progress percentage (0-100)
        steps_completed: List of completed step names
        steps_remaining: List of remaining step names
        started_at: Job start timestamp (ISO format)
        completed_at: Job completion timestamp (ISO format)
        error: Error message if failed
        error_id: Reference id of the logged failure
        result: Machine id or image id produced by the run
        compensation_log: Outcome of every compensating/finalization action
    """

    job_id: str
    correlation_id: str
    workflow: WorkflowKind
    target: str
    status: JobStatus
    step: str = ""
    progress_pct: int = 0
    steps_completed: List[str] = field(default_factory=list)
    steps_remaining: List[str] = field(default_factory=list)
    started_at: str = ""
    completed_at: str = ""
    error: str = ""
    error_id: str = ""
    result: Optional[str] = None
    compensation_log: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        data["workflow"] = self.workflow.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowJob":
        """Create from dictionary (JSON deserialization)."""
        data = dict(data)
        data["status"] = JobStatus(data["status"])
        data["workflow"] = WorkflowKind(data["workflow"])
        return cls(**data)


class WorkflowStateManager:
    """
    Manages workflow job state with optional persistence.

    Thread-safe implementation using locks for concurrent access.

    Usage:
        manager = WorkflowStateManager()

        job = manager.create_job(WorkflowKind.TERMINATE, "/vApp/vm-42")
        manager.update_job(job.job_id, status=JobStatus.RUNNING, step="power_off")
        manager.complete_job(job.job_id)

        # Cleanup stale jobs on startup
        stale = manager.cleanup_stale_jobs()
    """

    LAUNCH_STEPS = [
        "resolve_template",
        "instantiate",
        "wait_for_materialization",
        "customize_guests",
        "select_network",
        "configure_machines",
        "deploy",
    ]

    CAPTURE_STEPS = [
        "resolve_machine",
        "power_off",
        "undeploy",
        "snapshot_networks",
        "capture",
        "register_catalog_item",
        "finalize",
    ]

    TERMINATE_STEPS = [
        "resolve_machine",
        "power_off",
        "undeploy",
        "remove_group",
    ]

    def __init__(
        self,
        state_file: Optional[Path] = None,
        stale_timeout_hours: int = 2,
        max_history: int = 100,
    ):
        """
        Initialize state manager.

        Args:
            state_file: Path to state JSON file (None keeps jobs in memory only)
            stale_timeout_hours: Hours after which running jobs are considered stale
            max_history: Maximum finished jobs to retain
        """
        self.state_file = Path(state_file) if state_file else None
        self.stale_timeout_hours = stale_timeout_hours
        self.max_history = max_history

        self._jobs: Dict[str, WorkflowJob] = {}
        self._lock = threading.RLock()

        if self.state_file:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _load_state(self) -> None:
        """Load state from disk."""
        if not self.state_file.exists():
            logger.info("No existing state file, starting fresh")
            return

        try:
            with open(self.state_file, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Corrupted state file {self.state_file}: {e}")
            return

        for job_data in data.get("jobs", []):
            try:
                job = WorkflowJob.from_dict(job_data)
                self._jobs[job.job_id] = job
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Failed to load job: {e}")

        logger.info(f"Loaded {len(self._jobs)} jobs from state file")

    def _save_state(self) -> None:
        """Persist state to disk."""
        if not self.state_file:
            return

        data = {
            "updated_at": isonow(),
            "jobs": [job.to_dict() for job in self._jobs.values()],
        }
        try:
            # Write atomically using temp file
            temp_file = self.state_file.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2)

            temp_file.replace(self.state_file)
        except OSError as e:
            logger.error(f"Failed to save state: {e}")

    def _generate_job_id(self, workflow: WorkflowKind) -> str:
        return f"{workflow.value}-{uuid.uuid4().hex[:8]}"

    def _generate_correlation_id(self) -> str:
        return f"corr-{uuid.uuid4().hex[:8]}"

    def _steps_for(self, workflow: WorkflowKind) -> List[str]:
        if workflow == WorkflowKind.LAUNCH:
            return self.LAUNCH_STEPS.copy()
        if workflow == WorkflowKind.CAPTURE:
            return self.CAPTURE_STEPS.copy()
        return self.TERMINATE_STEPS.copy()

    def create_job(
        self,
        workflow: WorkflowKind,
        target: str,
        correlation_id: Optional[str] = None,
    ) -> WorkflowJob:
        """
        Create a new workflow job.

        Args:
            workflow: Which workflow will run
            target: Template id or machine id the workflow acts on
            correlation_id: Optional caller-provided correlation ID

        Returns:
            New WorkflowJob instance
        """
        with self._lock:
            job = WorkflowJob(
                job_id=self._generate_job_id(workflow),
                correlation_id=correlation_id or self._generate_correlation_id(),
                workflow=workflow,
                target=target,
                status=JobStatus.PENDING,
                steps_remaining=self._steps_for(workflow),
                started_at=isonow(),
            )

            self._jobs[job.job_id] = job
            self._save_state()

            logger.info(
                f"[{job.correlation_id}] Created {workflow.value} job {job.job_id} for {target}"
            )

            return job

    def update_job(
        self,
        job_id: str,
        status: Optional[JobStatus] = None,
        step: Optional[str] = None,
        progress_pct: Optional[int] = None,
        error: Optional[str] = None,
        **kwargs,
    ) -> Optional[WorkflowJob]:
        """
        Update job state.

        Moving to a new step marks the previous step completed and
        recalculates progress.

        Returns:
            Updated job or None if not found
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                logger.warning(f"Job {job_id} not found")
                return None

            if status:
                job.status = status

            if step:
                if job.step and job.step in job.steps_remaining:
                    job.steps_completed.append(job.step)
                    job.steps_remaining.remove(job.step)

                job.step = step

                total_steps = len(job.steps_completed) + len(job.steps_remaining)
                if total_steps > 0:
                    job.progress_pct = int(
                        (len(job.steps_completed) / total_steps) * 100
                    )

            if progress_pct is not None:
                job.progress_pct = progress_pct

            if error:
                job.error = error

            for key, value in kwargs.items():
                if hasattr(job, key):
                    setattr(job, key, value)

            self._save_state()

            logger.debug(
                f"[{job.correlation_id}] Job {job_id} updated: "
                f"status={job.status.value}, step={job.step}"
            )

            return job

    def add_compensation_record(self, job_id: str, record: Dict[str, Any]) -> bool:
        """
        Record the outcome of a compensating or finalization action.

        Returns:
            True if added, False if job not found
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return False

            job.compensation_log.append(record)
            self._save_state()
            return True

    def complete_job(self, job_id: str, result: Optional[str] = None) -> Optional[WorkflowJob]:
        """Mark job as completed successfully."""
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return None

            job.status = JobStatus.COMPLETED
            job.completed_at = isonow()
            job.progress_pct = 100
            if result is not None:
                job.result = result

            if job.step and job.step in job.steps_remaining:
                job.steps_completed.append(job.step)
                job.steps_remaining.remove(job.step)
            job.steps_completed.extend(job.steps_remaining)
            job.steps_remaining = []

            self._save_state()
            self._prune_old_jobs()

            logger.info(f"[{job.correlation_id}] Job {job_id} completed successfully")

            return job

    def fail_job(self, job_id: str, error: str, error_id: str = "") -> Optional[WorkflowJob]:
        """Mark job as failed."""
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return None

            job.status = JobStatus.FAILED
            job.error = error
            job.error_id = error_id
            job.completed_at = isonow()

            self._save_state()
            self._prune_old_jobs()

            logger.error(f"[{job.correlation_id}] Job {job_id} failed: {error}")

            return job

    def mark_rolled_back(self, job_id: str) -> Optional[WorkflowJob]:
        """Mark a failed job whose compensations have run."""
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return None

            job.status = JobStatus.ROLLED_BACK
            job.completed_at = isonow()

            self._save_state()

            logger.info(f"[{job.correlation_id}] Job {job_id} rolled back")

            return job

    def cancel_job(self, job_id: str) -> Optional[WorkflowJob]:
        """Cancel a pending or running job."""
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return None

            if job.status not in (JobStatus.PENDING, JobStatus.RUNNING):
                logger.warning(
                    f"Cannot cancel job {job_id} in status {job.status.value}"
                )
                return job

            job.status = JobStatus.CANCELLED
            job.completed_at = isonow()

            self._save_state()

            logger.info(f"[{job.correlation_id}] Job {job_id} cancelled")

            return job

    def get_job(self, job_id: str) -> Optional[WorkflowJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        workflow: Optional[WorkflowKind] = None,
        target: Optional[str] = None,
        limit: int = 50,
    ) -> List[WorkflowJob]:
        """Jobs matching every given filter, newest first, at most ``limit``."""
        def matches(job: WorkflowJob) -> bool:
            return (
                (status is None or job.status == status)
                and (workflow is None or job.workflow == workflow)
                and (target is None or job.target == target)
            )

        with self._lock:
            jobs = sorted(
                (job for job in self._jobs.values() if matches(job)),
                key=lambda job: job.started_at,
                reverse=True,
            )
        return jobs[:limit]

    def get_active_jobs(self) -> List[WorkflowJob]:
        """Jobs that have not reached a finished status, oldest first."""
        with self._lock:
            active = [job for job in self._jobs.values() if job.status not in FINISHED_STATUSES]
        return sorted(active, key=lambda job: job.started_at)

    def cleanup_stale_jobs(self) -> List[WorkflowJob]:
        """
        Fail unfinished jobs older than ``stale_timeout_hours``.

        A job left pending or running in a persisted state file belongs to
        a process that is gone; nothing will ever finish it.

        Returns:
            The jobs that were failed
        """
        cutoff = now() - timedelta(hours=self.stale_timeout_hours)
        with self._lock:
            stale = []
            for job in self._jobs.values():
                if job.status in FINISHED_STATUSES:
                    continue
                try:
                    if parse_timestamp(job.started_at) >= cutoff:
                        continue
                except ValueError:
                    continue
                job.status = JobStatus.FAILED
                job.error = f"Job stale after {self.stale_timeout_hours}h"
                job.completed_at = isonow()
                stale.append(job)
                logger.warning(f"[{job.correlation_id}] Job {job.job_id} ({job.workflow.value}) marked stale")

            if stale:
                self._save_state()
            return stale

    def _prune_old_jobs(self) -> None:
        """Remove old finished jobs beyond max_history."""
        finished = [j for j in self._jobs.values() if j.status in FINISHED_STATUSES]

        if len(finished) > self.max_history:
            finished.sort(key=lambda j: j.completed_at or "", reverse=True)
            for job in finished[self.max_history:]:
                del self._jobs[job.job_id]
                logger.debug(f"Pruned old job {job.job_id}")

    def get_stats(self) -> Dict[str, Any]:
        """Job counts in total, per status and per workflow kind."""
        with self._lock:
            jobs = list(self._jobs.values())
        return {
            "total_jobs": len(jobs),
            "active_jobs": sum(1 for job in jobs if job.status not in FINISHED_STATUSES),
            "by_status": dict(Counter(job.status.value for job in jobs)),
            "by_workflow": dict(Counter(job.workflow.value for job in jobs)),
        }


# =============================================================================
# Completion Token
# =============================================================================


class CompletionToken:
    """
    Outcome of a workflow running in the background.

    Pending until the workflow finishes, then holds either a result or the
    error that ended the run. Errors from the finalization phase never
    become the outcome; they are listed in ``finalization_errors``.

    Usage:
        token = orchestrator.capture_image("/vApp/vm-42", "golden")
        image_id = token.result(timeout=3600)  # raises the workflow's error
    """

    def __init__(self, job_id: str, cancel_event: Optional[threading.Event] = None):
        self.job_id = job_id
        self.finalization_errors: List[str] = []
        self._cancel_event = cancel_event or threading.Event()
        self._done = threading.Event()
        self._result: Any = None
        self._error: Optional[BaseException] = None

    def set_result(self, value: Any) -> None:
        self._result = value
        self._done.set()

    def set_error(self, error: BaseException) -> None:
        self._error = error
        self._done.set()

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the workflow finishes; False if ``timeout`` elapsed first."""
        return self._done.wait(timeout)

    def result(self, timeout: Optional[float] = None) -> Any:
        """
        Return the workflow's result, re-raising its error.

        Raises:
            TaskTimeoutError: Still pending after ``timeout`` seconds
        """
        if not self._done.wait(timeout):
            raise TaskTimeoutError(f"Job {self.job_id} still running after {timeout}s")
        if self._error is not None:
            raise self._error
        return self._result

    def error(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        if not self._done.wait(timeout):
            raise TaskTimeoutError(f"Job {self.job_id} still running after {timeout}s")
        return self._error

    def cancel(self) -> bool:
        """
        Ask the workflow to stop at its next suspension point.

        Returns:
            False if the workflow has already finished
        """
        if self.done():
            return False
        self._cancel_event.set()
        return True

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def __repr__(self) -> str:
        state = "done" if self.done() else "pending"
        return f"CompletionToken({self.job_id!r}, {state})"
