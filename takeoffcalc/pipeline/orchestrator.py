"""Job orchestrator - single-consumer job queue driving the takeoff pipeline.

Job ids are sent on an asyncio queue and one consumer task processes them
one at a time:

1. Clear the job's previous sheets, features and materials
2. Rasterize the drawing set
3. Run the extraction stages (fusion and feature analysis included)
4. Persist sheets and validated features, run the consistency checks
5. Apply the materials rules and store the takeoff snapshot

Any failure moves the job to FAILED with the error on the job, as does
stopping the consumer mid-job. Cancellation is cooperative: the job's token
is checked between major steps, right before materials are stored, and by
the extraction workers between sheets. A cancelled job never keeps
materials.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from takeoffcalc.config import AppConfig, get_config
from takeoffcalc.consistency import ConsistencyChecker
from takeoffcalc.core.cancellation import CancellationToken
from takeoffcalc.core.logging import bind_job_context, clear_job_context
from takeoffcalc.core.webhooks import JobWebhookNotifier
from takeoffcalc.db.repository import TakeoffRepository
from takeoffcalc.errors import InvalidTransitionError, JobCancelledError, StageError
from takeoffcalc.extraction.coordinator import ExtractionCoordinator
from takeoffcalc.extraction.pool import with_timeout
from takeoffcalc.extraction.provider import Rasterizer, RenderedPage
from takeoffcalc.models import Job, JobStatus
from takeoffcalc.pipeline.jobs import JobService
from takeoffcalc.rules.catalog import resolve_rule_set
from takeoffcalc.rules.engine import MaterialsRuleEngine

logger = logging.getLogger(__name__)

FileReader = Callable[[str], Awaitable[bytes]]


async def read_file(path: str) -> bytes:
    return await asyncio.to_thread(Path(path).read_bytes)


class JobOrchestrator:
    """Serialized job pipeline behind a FIFO channel of job ids."""

    def __init__(
        self,
        repository: TakeoffRepository,
        coordinator: ExtractionCoordinator,
        rasterizer: Rasterizer | None = None,
        jobs: JobService | None = None,
        rule_engine: MaterialsRuleEngine | None = None,
        checker: ConsistencyChecker | None = None,
        notifier: JobWebhookNotifier | None = None,
        config: AppConfig | None = None,
        reader: FileReader = read_file,
    ):
        self.config = config or get_config()
        self.repository = repository
        self.coordinator = coordinator
        self.rasterizer = rasterizer
        self.jobs = jobs or JobService(repository)
        self.rule_engine = rule_engine or MaterialsRuleEngine(currency=self.config.pricing.currency)
        self.checker = checker or ConsistencyChecker()
        self.notifier = notifier or JobWebhookNotifier(
            secret=self.config.webhooks.secret, timeout=self.config.webhooks.timeout_seconds
        )
        self.reader = reader

        self._queue: asyncio.Queue[tuple[str, int]] = asyncio.Queue()
        # job id -> ticket of its live queue entry; stale entries are skipped
        self._pending: dict[str, int] = {}
        self._ticket = 0
        self._consumer: asyncio.Task[None] | None = None
        self.current_job_id: str | None = None

    # --- queue control -------------------------------------------------------

    @property
    def pending(self) -> list[str]:
        """Queued job ids in processing order."""
        return sorted(self._pending, key=self._pending.__getitem__)

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def enqueue(self, job_id: str) -> bool:
        """Queue a job unless it is already queued; starts the consumer if idle.

        Must be called from within the running event loop.

        Returns:
            True if the job was added, False if it was already queued
        """
        if job_id in self._pending:
            return False
        self._ticket += 1
        self._pending[job_id] = self._ticket
        self._queue.put_nowait((job_id, self._ticket))
        logger.info(f"Enqueued job {job_id} ({len(self._pending)} pending)")
        self.start()
        return True

    def remove(self, job_id: str) -> bool:
        """Drop a job that has not started yet."""
        removed = self._pending.pop(job_id, None) is not None
        if removed:
            logger.info(f"Removed job {job_id} from queue")
        return removed

    def reset(self) -> int:
        """Empty the queue; a job already running is not touched."""
        dropped = len(self._pending)
        self._pending.clear()
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
        logger.info(f"Queue reset ({dropped} jobs dropped)")
        return dropped

    async def process_queued_jobs(self) -> int:
        """Enqueue every QUEUED job in the repository. Returns how many were added."""
        added = 0
        for job in await self.repository.list_queued_jobs():
            if self.enqueue(job.id):
                added += 1
        return added

    async def cancel(self, job_id: str, reason: str = "Cancelled by request") -> Job:
        """Cancel a queued or running job.

        Raises:
            InvalidTransitionError: If the job already finished
        """
        self.remove(job_id)
        return await self.jobs.cancel(job_id, reason)

    def start(self) -> None:
        if not self.running:
            self._consumer = asyncio.get_running_loop().create_task(self._consume(), name="takeoff-jobs")

    async def stop(self) -> None:
        """Stop the consumer after aborting whatever it was doing."""
        if self._consumer is None:
            return
        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def _consume(self) -> None:
        while True:
            job_id, ticket = await self._queue.get()
            try:
                if self._pending.get(job_id) != ticket:
                    continue
                del self._pending[job_id]
                self.current_job_id = job_id
                await self.process_job(job_id)
            except Exception as e:
                # process_job records failures on the job; this guards the loop itself
                logger.error(f"Unhandled error processing job {job_id}: {e}", exc_info=True)
            finally:
                self.current_job_id = None
                self._queue.task_done()

    # --- pipeline ------------------------------------------------------------

    async def process_job(self, job_id: str) -> Job:
        """Run the full pipeline for one job and return its final state."""
        bind_job_context(job_id)
        token = self.jobs.token_for(job_id)
        try:
            job = await self.repository.get_job(job_id)
            if job.status != JobStatus.QUEUED:
                logger.info(f"Skipping job {job_id} in status {job.status.value}")
                return job

            await self.repository.clear_job_data(job_id)
            job = await self.jobs.start(job_id)
            await self.notifier.notify("job.processing", job)

            try:
                await self.run_pipeline(job, token)
                job = await self.jobs.complete(job_id)
                await self.notifier.notify("job.completed", job)
            except JobCancelledError as e:
                job = await self._mark_cancelled(job_id, str(e))
            except InvalidTransitionError:
                # Cancelled between the last check and completion
                job = await self.repository.get_job(job_id)
                if job.status != JobStatus.CANCELLED:
                    raise
                job = await self._mark_cancelled(job_id, "Cancelled before completion")
            except asyncio.CancelledError:
                logger.warning(f"Job {job_id} interrupted: consumer stopped")
                await self._mark_failed(job_id, "Job interrupted: consumer stopped")
                raise
            except Exception as e:
                logger.error(f"Job {job_id} failed: {e}", exc_info=True)
                job = await self._mark_failed(job_id, str(e) or type(e).__name__)
            return job
        finally:
            self.jobs.release(job_id)
            clear_job_context()

    async def run_pipeline(self, job: Job, token: CancellationToken) -> None:
        job_id = job.id
        await self._checkpoint(job_id, token)

        pages = await self.rasterize(job)
        await self._checkpoint(job_id, token)

        async def on_stage_complete(stage: str, output: Any) -> None:
            await self.repository.merge_job_metadata(job_id, {stage: output})

        async def on_progress(progress: int) -> None:
            await self.jobs.set_progress(job_id, progress)

        result = await self.coordinator.run(
            job_id,
            pages,
            token=token,
            on_stage_complete=on_stage_complete,
            on_progress=on_progress,
        )
        await self._checkpoint(job_id, token)

        await self.repository.add_sheets(job_id, result.sheets)
        await self.repository.add_features(job_id, result.features)
        report = self.checker.check(result.sheets, result.features)
        await self.repository.merge_job_metadata(job_id, {"consistency": report.model_dump(mode="json")})
        if result.dropped_features:
            logger.warning(f"Dropped {result.dropped_features} features that failed validation")
        await self._checkpoint(job_id, token)

        rule_set = await resolve_rule_set(self.repository, job.rule_set_id)
        materials = self.rule_engine.generate_materials(result.features, rule_set)
        await self._checkpoint(job_id, token)
        await self.repository.replace_materials(job_id, materials)
        logger.info(f"Stored {len(materials)} materials")
        await self.jobs.set_progress(job_id, 90)

        await self.repository.merge_job_metadata(
            job_id,
            {
                "takeoff_snapshot": {
                    "feature_count": len(result.features),
                    "material_count": len(materials),
                    "features_by_type": result.takeoff.get("features_by_type", {}),
                }
            },
        )

    async def rasterize(self, job: Job) -> list[RenderedPage]:
        """Read and rasterize the job's document.

        Raises:
            StageError: If the job has no file, no rasterizer is configured,
                or rendering times out
        """
        if not job.file_path:
            raise StageError("rasterize", "Job has no document to process")
        if self.rasterizer is None:
            raise StageError("rasterize", "No rasterizer configured")
        document = await self.reader(job.file_path)
        extraction = self.config.extraction
        pages = await with_timeout(
            self.rasterizer.rasterize(document, extraction.render_dpi, extraction.render_max_pages),
            extraction.render_timeout_seconds,
            "rasterize",
            what="document rendering",
        )
        failed = sum(1 for page in pages if page.error)
        logger.info(f"Rasterized {len(pages)} pages ({failed} failed)")
        return pages

    async def _checkpoint(self, job_id: str, token: CancellationToken) -> None:
        """Abort when the job was cancelled, either by token or in the repository."""
        token.raise_if_cancelled()
        if await self.jobs.is_cancelled(job_id):
            token.cancel("Job was cancelled")
            token.raise_if_cancelled()

    async def _mark_cancelled(self, job_id: str, reason: str) -> Job:
        job = await self.repository.get_job(job_id)
        if job.status != JobStatus.CANCELLED:
            job = await self.jobs.transition(job_id, JobStatus.CANCELLED, message=reason)
        # a cancelled job keeps no materials, even when the write already happened
        await self.repository.replace_materials(job_id, [])
        logger.info(f"Job {job_id} cancelled: {reason}")
        await self.notifier.notify("job.cancelled", job)
        return job

    async def _mark_failed(self, job_id: str, error: str) -> Job:
        try:
            job = await self.jobs.fail(job_id, error)
        except InvalidTransitionError:
            return await self.repository.get_job(job_id)
        await self.notifier.notify("job.failed", job)
        return job
