"""Outbound job lifecycle webhooks."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any

import httpx

from takeoffcalc.models import Job, utcnow

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Takeoff-Signature"
EVENT_HEADER = "X-Takeoff-Event"


def sign_payload(secret: str, body: str) -> str:
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


class JobWebhookNotifier:
    """Posts job.* events to the job's webhook URL.

    Delivery is best effort: failures are logged and never propagate to the job.
    """

    def __init__(
        self,
        secret: str | None = None,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.secret = secret
        self.timeout = timeout
        self._client = client

    def build_payload(self, event_type: str, job: Job, extra: dict[str, Any] | None = None) -> dict[str, Any]:
        data: dict[str, Any] = {
            "jobId": job.id,
            "status": job.status.value,
            "progress": job.progress,
        }
        if job.error:
            data["error"] = job.error
        if extra:
            data.update(extra)
        return {
            "event": event_type,
            "timestamp": utcnow().isoformat(),
            "data": data,
        }

    async def notify(self, event_type: str, job: Job, extra: dict[str, Any] | None = None) -> bool:
        """Send one event. Returns True when the endpoint answered 2xx."""
        if not job.webhook_url:
            return False

        body = json.dumps(self.build_payload(event_type, job, extra))
        headers = {
            "Content-Type": "application/json",
            EVENT_HEADER: event_type,
            "User-Agent": "TakeoffCalc-Webhook/1.0",
        }
        if self.secret:
            headers[SIGNATURE_HEADER] = sign_payload(self.secret, body)

        try:
            if self._client is not None:
                response = await self._client.post(
                    job.webhook_url, content=body, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        job.webhook_url, content=body, headers=headers, timeout=self.timeout
                    )
        except httpx.HTTPError as e:
            logger.warning(f"Webhook delivery failed to {job.webhook_url} ({event_type}): {e}")
            return False

        if response.is_success:
            return True
        logger.warning(
            f"Webhook {event_type} to {job.webhook_url} returned HTTP {response.status_code}"
        )
        return False
