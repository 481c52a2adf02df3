"""Integration tests for the job state machine."""

from __future__ import annotations

import pytest

from takeoffcalc.errors import InvalidTransitionError
from takeoffcalc.models import JobStatus
from takeoffcalc.pipeline.jobs import JobService, can_transition

pytestmark = pytest.mark.integration


@pytest.fixture
def jobs(repository) -> JobService:
    return JobService(repository)


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (JobStatus.QUEUED, JobStatus.PROCESSING, True),
        (JobStatus.QUEUED, JobStatus.CANCELLED, True),
        (JobStatus.QUEUED, JobStatus.COMPLETED, False),
        (JobStatus.PROCESSING, JobStatus.COMPLETED, True),
        (JobStatus.PROCESSING, JobStatus.FAILED, True),
        (JobStatus.PROCESSING, JobStatus.CANCELLED, True),
        (JobStatus.PROCESSING, JobStatus.QUEUED, False),
        (JobStatus.COMPLETED, JobStatus.CANCELLED, False),
        (JobStatus.FAILED, JobStatus.PROCESSING, False),
        (JobStatus.CANCELLED, JobStatus.PROCESSING, False),
    ],
)
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_happy_path(self, jobs):
        job = await jobs.submit(file_path="/plans/a.pdf", name="A")

        await jobs.start(job.id)
        await jobs.set_progress(job.id, 60)
        done = await jobs.complete(job.id)

        assert done.status == JobStatus.COMPLETED
        assert done.progress == 100
        assert [h.status for h in done.history] == [
            JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_failure_records_error(self, jobs):
        job = await jobs.submit()
        await jobs.start(job.id)

        failed = await jobs.fail(job.id, "[rasterize] corrupt document")

        assert failed.status == JobStatus.FAILED
        assert failed.error == "[rasterize] corrupt document"

    @pytest.mark.asyncio
    async def test_terminal_states_never_change(self, jobs):
        job = await jobs.submit()
        await jobs.start(job.id)
        await jobs.complete(job.id)

        with pytest.raises(InvalidTransitionError, match="COMPLETED to CANCELLED"):
            await jobs.cancel(job.id)
        with pytest.raises(InvalidTransitionError):
            await jobs.fail(job.id, "late failure")

        stored = await jobs.repository.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert len(stored.history) == 3

    @pytest.mark.asyncio
    async def test_cannot_complete_a_queued_job(self, jobs):
        job = await jobs.submit()

        with pytest.raises(InvalidTransitionError):
            await jobs.complete(job.id)

    @pytest.mark.asyncio
    async def test_queued_transition_has_no_source(self, jobs):
        job = await jobs.submit()

        with pytest.raises(InvalidTransitionError):
            await jobs.transition(job.id, JobStatus.QUEUED)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_signals_the_running_token(self, jobs):
        job = await jobs.submit()
        await jobs.start(job.id)
        token = jobs.token_for(job.id)

        cancelled = await jobs.cancel(job.id, "Stopped by estimator")

        assert cancelled.status == JobStatus.CANCELLED
        assert token.cancelled
        assert token.reason == "Stopped by estimator"
        assert await jobs.is_cancelled(job.id)

    @pytest.mark.asyncio
    async def test_token_is_reused_until_released(self, jobs):
        token = jobs.token_for("job-1")

        assert jobs.token_for("job-1") is token
        jobs.release("job-1")
        assert jobs.token_for("job-1") is not token
