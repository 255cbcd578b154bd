"""Job records for asynchronous operations.

A Job is created ``pending`` when an operation is accepted, moves to
``running`` once its governor slot is granted and ends ``done`` or
``failed``. Terminal jobs stay pollable for a retention period, then they
are discarded and polling them raises JobNotFoundError.
"""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING, Any

import structlog

from .errors import ErrorKind, JobNotFoundError
from .models import Job, JobStatus, OperationKind, OperationResult, utcnow

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Callable

logger = structlog.get_logger(__name__)


class JobManager:
    """Tracks jobs, their tasks and their retention."""

    def __init__(
        self,
        retention_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the job manager.

        Args:
            retention_seconds: How long terminal jobs remain pollable.
            clock: Monotonic time source.
        """
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._expires_at: dict[str, float] = {}
        self._listeners: list[Callable[[Job], None]] = []
        self._log = logger.bind(component="job_manager")

    def add_listener(self, listener: Callable[[Job], None]) -> None:
        """Register a callback receiving every job that reaches a terminal state."""
        self._listeners.append(listener)

    def create(
        self,
        target_id: int,
        kind: OperationKind,
        package_name: str | None = None,
    ) -> Job:
        """Create a pending job."""
        self.purge()
        job = Job(
            id=uuid.uuid4().hex,
            target_id=target_id,
            kind=kind,
            package_name=package_name,
        )
        self._jobs[job.id] = job
        self._log.debug("job_created", job_id=job.id, target=target_id, kind=kind.value)
        return job

    def attach(self, job_id: str, task: asyncio.Task[None]) -> None:
        """Associate the background task running a job."""
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))

    def task(self, job_id: str) -> asyncio.Task[None] | None:
        """Return the job's task while it is running."""
        return self._tasks.get(job_id)

    def get(self, job_id: str) -> Job:
        """Return a snapshot of a job.

        Raises:
            JobNotFoundError: If the job is unknown or was discarded.
        """
        self.purge()
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job.model_copy(deep=True)

    def list(self) -> list[Job]:
        """Return snapshots of all retained jobs, oldest first."""
        self.purge()
        return [job.model_copy(deep=True) for job in self._jobs.values()]

    def mark_running(self, job_id: str) -> Job:
        return self._update(job_id, status=JobStatus.RUNNING, started_at=utcnow())

    def finish(self, job_id: str, result: OperationResult) -> Job:
        """Mark a job done with its result."""
        return self._terminate(job_id, status=JobStatus.DONE, result=result)

    def fail(
        self,
        job_id: str,
        kind: ErrorKind,
        message: str,
        result: OperationResult | None = None,
    ) -> Job:
        """Mark a job failed."""
        return self._terminate(
            job_id,
            status=JobStatus.FAILED,
            error=message,
            error_kind=kind,
            result=result,
        )

    def update_result(self, job_id: str, **changes: Any) -> Job | None:
        """Amend a job's result after it finished (re-probe progress).

        Returns:
            The updated job, or None if it was discarded meanwhile.
        """
        job = self._jobs.get(job_id)
        if job is None or job.result is None:
            return None
        return self._update(job_id, result=job.result.model_copy(update=changes))

    def purge(self) -> int:
        """Discard terminal jobs past their retention period."""
        now = self._clock()
        expired = [job_id for job_id, deadline in self._expires_at.items() if deadline <= now]
        for job_id in expired:
            del self._expires_at[job_id]
            self._jobs.pop(job_id, None)
        if expired:
            self._log.debug("jobs_discarded", count=len(expired))
        return len(expired)

    def _update(self, job_id: str, **changes: Any) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        job = job.model_copy(update=changes)
        self._jobs[job_id] = job
        return job

    def _terminate(self, job_id: str, **changes: Any) -> Job:
        current = self._jobs.get(job_id)
        if current is None:
            raise JobNotFoundError(job_id)
        if current.status.is_terminal:
            return current

        job = self._update(job_id, finished_at=utcnow(), **changes)
        self._expires_at[job_id] = self._clock() + self.retention_seconds
        self._log.info(
            "job_finished",
            job_id=job_id,
            target=job.target_id,
            kind=job.kind.value,
            status=job.status.value,
            error_kind=job.error_kind.value if job.error_kind else None,
        )

        snapshot = job.model_copy(deep=True)
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception as e:
                self._log.exception("job_listener_failed", job_id=job_id, error=str(e))
        return job
