"""Job state machine.

QUEUED -> PROCESSING -> COMPLETED | FAILED, and any non-terminal state may
move to CANCELLED. Terminal states never change. Every transition appends
one history entry.
"""

from __future__ import annotations

import logging
from typing import Any

from takeoffcalc.core.cancellation import CancellationToken
from takeoffcalc.db.repository import TakeoffRepository
from takeoffcalc.errors import InvalidTransitionError
from takeoffcalc.models import Job, JobStatus

logger = logging.getLogger(__name__)

# Target status -> statuses it may be entered from
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PROCESSING: frozenset({JobStatus.QUEUED}),
    JobStatus.COMPLETED: frozenset({JobStatus.PROCESSING}),
    JobStatus.FAILED: frozenset({JobStatus.PROCESSING}),
    JobStatus.CANCELLED: frozenset({JobStatus.QUEUED, JobStatus.PROCESSING}),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return current in ALLOWED_TRANSITIONS.get(target, frozenset())


class JobService:
    """Owns job status changes and the per-job cancellation tokens."""

    def __init__(self, repository: TakeoffRepository):
        self.repository = repository
        self._tokens: dict[str, CancellationToken] = {}

    async def submit(
        self,
        file_path: str | None = None,
        name: str | None = None,
        rule_set_id: str | None = None,
        webhook_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Job:
        """Create a QUEUED job."""
        job = await self.repository.create_job(
            name=name,
            file_path=file_path,
            rule_set_id=rule_set_id,
            webhook_url=webhook_url,
            metadata=metadata or {},
        )
        logger.info(f"Job {job.id} submitted")
        return job

    async def transition(
        self,
        job_id: str,
        target: JobStatus,
        progress: int | None = None,
        message: str | None = None,
        error: str | None = None,
    ) -> Job:
        """Move a job to ``target``.

        Raises:
            InvalidTransitionError: If the state machine does not allow it
            JobNotFoundError: If the job does not exist
        """
        allowed = ALLOWED_TRANSITIONS.get(target)
        if allowed is None:
            raise InvalidTransitionError(f"No transition leads to {target.value}")
        job = await self.repository.update_job_status(
            job_id,
            target,
            progress=progress,
            message=message,
            error=error,
            allowed_from=allowed,
        )
        logger.info(f"Job {job_id} -> {target.value}")
        return job

    async def start(self, job_id: str) -> Job:
        return await self.transition(job_id, JobStatus.PROCESSING, progress=5, message="Processing started")

    async def set_progress(self, job_id: str, progress: int) -> None:
        await self.repository.update_job_progress(job_id, progress)

    async def complete(self, job_id: str, message: str = "Takeoff completed") -> Job:
        return await self.transition(job_id, JobStatus.COMPLETED, progress=100, message=message)

    async def fail(self, job_id: str, error: str) -> Job:
        return await self.transition(job_id, JobStatus.FAILED, error=error)

    async def cancel(self, job_id: str, reason: str = "Cancelled by request") -> Job:
        """Cancel a QUEUED or PROCESSING job and signal its running pipeline.

        Raises:
            InvalidTransitionError: If the job already finished
        """
        job = await self.transition(job_id, JobStatus.CANCELLED, message=reason)
        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel(reason)
        return job

    async def is_cancelled(self, job_id: str) -> bool:
        job = await self.repository.get_job(job_id)
        return job.status == JobStatus.CANCELLED

    def token_for(self, job_id: str) -> CancellationToken:
        token = self._tokens.get(job_id)
        if token is None:
            token = self._tokens[job_id] = CancellationToken()
        return token

    def release(self, job_id: str) -> None:
        self._tokens.pop(job_id, None)
