"""Unit tests for outbound job webhooks."""

from __future__ import annotations

import json

import httpx
import pytest

from takeoffcalc.core.webhooks import EVENT_HEADER, SIGNATURE_HEADER, JobWebhookNotifier, sign_payload
from takeoffcalc.models import Job, JobStatus


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def job() -> Job:
    return Job(id="job-1", status=JobStatus.COMPLETED, progress=100, webhook_url="https://hooks.example.com/takeoff")


class TestNotify:
    @pytest.mark.asyncio
    async def test_signed_delivery(self, job):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(204)

        async with _client(handler) as client:
            notifier = JobWebhookNotifier(secret="s3cret", client=client)
            delivered = await notifier.notify("job.completed", job, {"materialCount": 4})

        assert delivered is True
        request = received[0]
        body = request.content.decode()
        payload = json.loads(body)
        assert payload["event"] == "job.completed"
        assert payload["data"] == {"jobId": "job-1", "status": "COMPLETED", "progress": 100, "materialCount": 4}
        assert request.headers[EVENT_HEADER] == "job.completed"
        assert request.headers[SIGNATURE_HEADER] == sign_payload("s3cret", body)

    @pytest.mark.asyncio
    async def test_unsigned_without_secret(self, job):
        received = []

        async with _client(lambda r: received.append(r) or httpx.Response(200)) as client:
            await JobWebhookNotifier(client=client).notify("job.processing", job)

        assert SIGNATURE_HEADER not in received[0].headers

    @pytest.mark.asyncio
    async def test_no_url_sends_nothing(self):
        async with _client(lambda r: pytest.fail("unexpected request")) as client:
            assert await JobWebhookNotifier(client=client).notify("job.completed", Job()) is False

    @pytest.mark.asyncio
    async def test_http_error_status_is_reported_not_raised(self, job):
        async with _client(lambda r: httpx.Response(500)) as client:
            assert await JobWebhookNotifier(client=client).notify("job.failed", job) is False

    @pytest.mark.asyncio
    async def test_transport_error_is_swallowed(self, job):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            assert await JobWebhookNotifier(client=client).notify("job.failed", job) is False


def test_payload_includes_error(job):
    failed = job.model_copy(update={"status": JobStatus.FAILED, "error": "boom"})

    payload = JobWebhookNotifier().build_payload("job.failed", failed)

    assert payload["data"]["error"] == "boom"
    assert payload["data"]["status"] == "FAILED"
