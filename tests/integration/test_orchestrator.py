"""Integration tests for the job queue and full takeoff pipeline.

Extraction and rasterization are scripted; persistence, rules and the
consistency checks run for real against in-memory SQLite.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
import pytest_asyncio

from takeoffcalc.core.webhooks import JobWebhookNotifier
from takeoffcalc.errors import InvalidTransitionError
from takeoffcalc.extraction import ExtractionCoordinator
from takeoffcalc.models import JobStatus
from takeoffcalc.pipeline import JobOrchestrator, JobService
from takeoffcalc.rules import parse_rule_set

pytestmark = pytest.mark.integration

WALL_PLAN = {
    "classification": {"category": "floor", "title": "First Floor Plan"},
    "scale": {"annotations": [{"viewport_label": "Floor Plan", "scale_note": "1/4\" = 1'-0\""}]},
    "feature_analysis": {"walls": [{"id": "w1", "partitionType": "PT-1", "lengthFt": 20}]},
}


class FakeRasterizer:
    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    async def rasterize(self, document, dpi, max_pages):
        self.calls.append((document, dpi, max_pages))
        return self.pages


async def read_document(path: str) -> bytes:
    return b"%PDF-1.7 " + path.encode()


@pytest.fixture
def jobs(repository) -> JobService:
    return JobService(repository)


@pytest_asyncio.fixture()
async def build_orchestrator(repository, jobs, app_config, fake_provider, make_pages):
    """Factory for orchestrators sharing the test repository; stopped on teardown."""
    built = []

    def _build(provider=None, pages=None, notifier=None):
        provider = provider if provider is not None else fake_provider(WALL_PLAN)
        orchestrator = JobOrchestrator(
            repository,
            ExtractionCoordinator(provider, config=app_config.extraction),
            rasterizer=FakeRasterizer(pages if pages is not None else make_pages(1)),
            jobs=jobs,
            notifier=notifier,
            config=app_config,
            reader=read_document,
        )
        built.append(orchestrator)
        return orchestrator

    yield _build
    for orchestrator in built:
        await orchestrator.stop()


class TestPipeline:
    """One job through every step."""

    @pytest.mark.asyncio
    async def test_job_completes_with_materials(self, repository, jobs, build_orchestrator):
        orchestrator = build_orchestrator()
        job = await jobs.submit(file_path="/plans/level1.pdf", name="Level 1")

        final = await orchestrator.process_job(job.id)

        assert final.status == JobStatus.COMPLETED
        assert final.progress == 100
        assert [h.status for h in final.history] == [
            JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.COMPLETED,
        ]

        materials = {m.sku: m for m in await repository.list_materials(job.id)}
        assert materials["STUD-362-20GA"].qty == 15.0
        assert materials["STUD-362-20GA"].pricing.total_price == 127.5
        assert materials["GWB-58X-TypeX"].qty == 12.5

        features = await repository.list_features(job.id)
        sheets = await repository.list_sheets(job.id)
        assert [f.type for f in features] == ["WALL"]
        assert features[0].sheet_id == str(sheets[0].id)
        assert sheets[0].scale == "1/4\" = 1'-0\""

        stored = await repository.get_job(job.id)
        assert stored.metadata["classification"]["0"]["category"] == "floor"
        assert stored.metadata["takeoff_snapshot"] == {
            "feature_count": 1,
            "material_count": 3,
            "features_by_type": {"walls": 1},
        }
        assert stored.metadata["consistency"]["is_valid"] is True

    @pytest.mark.asyncio
    async def test_rasterizer_gets_document_and_render_settings(self, jobs, build_orchestrator, app_config):
        orchestrator = build_orchestrator()
        job = await jobs.submit(file_path="/plans/a.pdf")

        await orchestrator.process_job(job.id)

        document, dpi, max_pages = orchestrator.rasterizer.calls[0]
        assert document == b"%PDF-1.7 /plans/a.pdf"
        assert (dpi, max_pages) == (app_config.extraction.render_dpi, app_config.extraction.render_max_pages)

    @pytest.mark.asyncio
    async def test_reprocessing_replaces_previous_data(self, repository, jobs, build_orchestrator):
        orchestrator = build_orchestrator()
        job = await jobs.submit(file_path="/plans/a.pdf")
        await orchestrator.process_job(job.id)
        await repository.update_job_status(job.id, JobStatus.QUEUED, message="Requeued")

        await orchestrator.process_job(job.id)

        assert len(await repository.list_features(job.id)) == 1
        assert len(await repository.list_sheets(job.id)) == 1

    @pytest.mark.asyncio
    async def test_stored_rule_set_is_used(self, repository, jobs, build_orchestrator):
        rule_set_id = await repository.save_rule_set(
            "Walls only",
            "1",
            parse_rule_set({
                "version": 1,
                "units": {"linear": "ft", "area": "ft2"},
                "rules": [{"when": {"feature": "wall"}, "materials": [{"sku": "TRACK", "qty": "length * 2"}]}],
            }),
        )
        orchestrator = build_orchestrator()
        job = await jobs.submit(file_path="/plans/a.pdf", rule_set_id=rule_set_id)

        await orchestrator.process_job(job.id)

        materials = await repository.list_materials(job.id)
        assert [(m.sku, m.qty, m.uom) for m in materials] == [("TRACK", 40.0, "ft")]


class TestFailures:
    """Errors land on the job as FAILED."""

    @pytest.mark.asyncio
    async def test_quantity_error_fails_job_without_materials(self, repository, jobs, build_orchestrator):
        rule_set_id = await repository.save_rule_set(
            "Broken",
            "1",
            parse_rule_set({
                "version": 1,
                "units": {"linear": "ft", "area": "ft2"},
                "rules": [{"when": {"feature": "wall"}, "materials": [{"sku": "X", "qty": "length * nope"}]}],
            }),
        )
        orchestrator = build_orchestrator()
        job = await jobs.submit(file_path="/plans/a.pdf", rule_set_id=rule_set_id)

        final = await orchestrator.process_job(job.id)

        assert final.status == JobStatus.FAILED
        assert "nope" in final.error
        assert await repository.list_materials(job.id) == []

    @pytest.mark.asyncio
    async def test_missing_document(self, jobs, build_orchestrator):
        final = await build_orchestrator().process_job((await jobs.submit()).id)

        assert final.status == JobStatus.FAILED
        assert final.error.startswith("[rasterize]")

    @pytest.mark.asyncio
    async def test_mandatory_stage_failure(self, jobs, build_orchestrator, fake_provider):
        orchestrator = build_orchestrator(provider=fake_provider(WALL_PLAN, fail={"feature_analysis": None}))
        job = await jobs.submit(file_path="/plans/a.pdf")

        final = await orchestrator.process_job(job.id)

        assert final.status == JobStatus.FAILED
        assert "feature_analysis" in final.error

    @pytest.mark.asyncio
    async def test_only_queued_jobs_are_processed(self, jobs, build_orchestrator):
        orchestrator = build_orchestrator()
        job = await jobs.submit(file_path="/plans/a.pdf")
        await jobs.cancel(job.id)

        final = await orchestrator.process_job(job.id)

        assert final.status == JobStatus.CANCELLED
        assert orchestrator.rasterizer.calls == []


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_extraction(self, repository, jobs, build_orchestrator, fake_provider, make_pages):
        job = await jobs.submit(file_path="/plans/a.pdf")
        orchestrator = None

        class CancellingProvider(fake_provider):
            async def extract(self, request):
                payload = await super().extract(request)
                if len(self.calls) == 2:
                    await orchestrator.cancel(job.id, "Cancelled by estimator")
                return payload

        provider = CancellingProvider(WALL_PLAN)
        orchestrator = build_orchestrator(provider=provider, pages=make_pages(5))

        final = await orchestrator.process_job(job.id)

        assert final.status == JobStatus.CANCELLED
        assert len(provider.calls) == 2
        assert await repository.list_materials(job.id) == []
        assert await repository.list_features(job.id) == []
        assert [h.status for h in final.history][-1] == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_after_materials_are_written_clears_them(
        self, repository, jobs, build_orchestrator, monkeypatch
    ):
        orchestrator = build_orchestrator()
        job = await jobs.submit(file_path="/plans/a.pdf")
        real_replace = repository.replace_materials

        async def replace_then_cancel(job_id, materials):
            count = await real_replace(job_id, materials)
            if materials:
                await orchestrator.cancel(job_id, "Cancelled after rules")
            return count

        monkeypatch.setattr(repository, "replace_materials", replace_then_cancel)

        final = await orchestrator.process_job(job.id)

        assert final.status == JobStatus.CANCELLED
        assert await repository.list_materials(job.id) == []
        assert [h.status for h in final.history] == [
            JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.CANCELLED,
        ]

    @pytest.mark.asyncio
    async def test_cancel_during_rules_stops_before_the_write(
        self, repository, jobs, build_orchestrator, monkeypatch
    ):
        orchestrator = build_orchestrator()
        job = await jobs.submit(file_path="/plans/a.pdf")
        real_get_rule_set = repository.get_rule_set
        real_replace = repository.replace_materials
        writes = []

        async def get_rule_set_then_cancel(rule_set_id):
            rule_set = await real_get_rule_set(rule_set_id)
            await orchestrator.cancel(job.id, "Cancelled during rules")
            return rule_set

        async def recording_replace(job_id, materials):
            writes.append(list(materials))
            return await real_replace(job_id, materials)

        monkeypatch.setattr(repository, "get_rule_set", get_rule_set_then_cancel)
        monkeypatch.setattr(repository, "replace_materials", recording_replace)

        final = await orchestrator.process_job(job.id)

        assert final.status == JobStatus.CANCELLED
        assert writes == [[]]
        assert await repository.list_materials(job.id) == []

    @pytest.mark.asyncio
    async def test_stopping_the_consumer_fails_the_running_job(
        self, repository, jobs, build_orchestrator, fake_provider
    ):
        started = asyncio.Event()

        class StallingProvider(fake_provider):
            async def extract(self, request):
                started.set()
                await asyncio.Event().wait()

        orchestrator = build_orchestrator(provider=StallingProvider(WALL_PLAN))
        job = await jobs.submit(file_path="/plans/a.pdf")
        orchestrator.enqueue(job.id)
        await asyncio.wait_for(started.wait(), timeout=5)

        await orchestrator.stop()

        stopped = await repository.get_job(job.id)
        assert orchestrator.running is False
        assert stopped.status == JobStatus.FAILED
        assert stopped.error == "Job interrupted: consumer stopped"
        assert stopped.history[-1].status == JobStatus.FAILED
        assert "consumer stopped" in stopped.history[-1].message

    @pytest.mark.asyncio
    async def test_cancel_queued_job_removes_it(self, jobs, build_orchestrator):
        orchestrator = build_orchestrator()
        job = await jobs.submit(file_path="/plans/a.pdf")
        orchestrator.enqueue(job.id)

        cancelled = await orchestrator.cancel(job.id)
        await orchestrator.join()

        assert cancelled.status == JobStatus.CANCELLED
        assert orchestrator.pending == []
        assert orchestrator.rasterizer.calls == []

    @pytest.mark.asyncio
    async def test_cancel_finished_job_is_rejected(self, jobs, build_orchestrator):
        orchestrator = build_orchestrator()
        job = await jobs.submit(file_path="/plans/a.pdf")
        await orchestrator.process_job(job.id)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.cancel(job.id)


class TestQueue:
    """Single-consumer FIFO behaviour."""

    @pytest.mark.asyncio
    async def test_enqueue_is_idempotent(self, repository, jobs, build_orchestrator):
        orchestrator = build_orchestrator()
        job = await jobs.submit(file_path="/plans/a.pdf")

        assert orchestrator.enqueue(job.id) is True
        assert orchestrator.enqueue(job.id) is False
        assert orchestrator.pending == [job.id]
        await orchestrator.join()

        assert (await repository.get_job(job.id)).status == JobStatus.COMPLETED
        assert len(orchestrator.rasterizer.calls) == 1

    @pytest.mark.asyncio
    async def test_jobs_run_in_fifo_order(self, repository, jobs, build_orchestrator):
        orchestrator = build_orchestrator()
        first = await jobs.submit(file_path="/plans/1.pdf")
        second = await jobs.submit(file_path="/plans/2.pdf")

        assert await orchestrator.process_queued_jobs() == 2
        await orchestrator.join()

        documents = [call[0] for call in orchestrator.rasterizer.calls]
        assert documents == [b"%PDF-1.7 /plans/1.pdf", b"%PDF-1.7 /plans/2.pdf"]
        for job in (first, second):
            assert (await repository.get_job(job.id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_remove_skips_job(self, repository, jobs, build_orchestrator):
        orchestrator = build_orchestrator()
        kept = await jobs.submit(file_path="/plans/1.pdf")
        removed = await jobs.submit(file_path="/plans/2.pdf")
        orchestrator.enqueue(removed.id)
        orchestrator.enqueue(kept.id)

        assert orchestrator.remove(removed.id) is True
        assert orchestrator.remove(removed.id) is False
        await orchestrator.join()

        assert (await repository.get_job(removed.id)).status == JobStatus.QUEUED
        assert (await repository.get_job(kept.id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_removed_job_can_be_queued_again(self, repository, jobs, build_orchestrator):
        orchestrator = build_orchestrator()
        job = await jobs.submit(file_path="/plans/a.pdf")
        orchestrator.enqueue(job.id)
        orchestrator.remove(job.id)
        orchestrator.enqueue(job.id)

        await orchestrator.join()

        assert len(orchestrator.rasterizer.calls) == 1
        assert (await repository.get_job(job.id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_reset_drops_everything_pending(self, repository, jobs, build_orchestrator):
        orchestrator = build_orchestrator()
        queued = [await jobs.submit(file_path=f"/plans/{i}.pdf") for i in range(3)]
        for job in queued:
            orchestrator.enqueue(job.id)

        assert orchestrator.reset() == 3
        await orchestrator.join()

        assert orchestrator.pending == []
        assert orchestrator.rasterizer.calls == []
        for job in queued:
            assert (await repository.get_job(job.id)).status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_consumer_survives_a_failed_job(self, repository, jobs, build_orchestrator):
        orchestrator = build_orchestrator()
        broken = await jobs.submit()
        good = await jobs.submit(file_path="/plans/a.pdf")
        orchestrator.enqueue(broken.id)
        orchestrator.enqueue(good.id)

        await orchestrator.join()

        assert (await repository.get_job(broken.id)).status == JobStatus.FAILED
        assert (await repository.get_job(good.id)).status == JobStatus.COMPLETED
        assert orchestrator.running


class TestWebhooks:
    @pytest.mark.asyncio
    async def test_lifecycle_events_are_posted(self, jobs, build_orchestrator):
        events = []

        def handler(request: httpx.Request) -> httpx.Response:
            events.append(json.loads(request.content)["event"])
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            orchestrator = build_orchestrator(notifier=JobWebhookNotifier(client=client))
            job = await jobs.submit(file_path="/plans/a.pdf", webhook_url="https://hooks.example.com/t")
            await orchestrator.process_job(job.id)

        assert events == ["job.processing", "job.completed"]

    @pytest.mark.asyncio
    async def test_webhook_failure_does_not_fail_job(self, jobs, build_orchestrator):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))) as client:
            orchestrator = build_orchestrator(notifier=JobWebhookNotifier(client=client))
            job = await jobs.submit(file_path="/plans/a.pdf", webhook_url="https://hooks.example.com/t")
            final = await orchestrator.process_job(job.id)

        assert final.status == JobStatus.COMPLETED
