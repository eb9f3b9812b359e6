"""
Terminal-status notifications.

Each terminal transition becomes one event per sink, tagged with the
idempotency key `<job_id>:<status>`. Delivery is at-least-once: failures are
retried with the step backoff policy and dropped (with an error log) once the
attempt budget is spent.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from render_worker.errors import NotificationDeliveryError
from render_worker.models.job import JobRecord, utcnow
from render_worker.services.pipeline import compute_backoff

logger = logging.getLogger(__name__)


def idempotency_key(job: JobRecord) -> str:
    return f"{job.job_id}:{job.status.value}"


def build_event(job: JobRecord) -> Dict[str, Any]:
    return {
        "job_id": job.job_id,
        "status": job.status.value,
        "reason": job.reason,
        "artifacts": job.artifacts,
        "history": [entry.model_dump(mode="json") for entry in job.history],
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "idempotency_key": idempotency_key(job),
        "timestamp": utcnow().isoformat(),
    }


class NotificationSink:
    name = "sink"

    async def deliver(self, event: Dict[str, Any], key: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LogSink(NotificationSink):
    name = "log"

    async def deliver(self, event: Dict[str, Any], key: str) -> None:
        logger.info("Job %s finished: %s %s", event["job_id"], event["status"], event.get("reason") or "")


class WebhookSink(NotificationSink):
    """POSTs the event as JSON with an Idempotency-Key header."""
    name = "webhook"

    def __init__(self, url: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def deliver(self, event: Dict[str, Any], key: str) -> None:
        try:
            response = await self._client.post(self.url, json=event, headers={"Idempotency-Key": key})
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(f"webhook {self.url} failed: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()


class WebSocketSink(NotificationSink):
    """Pushes the event to websocket subscribers of the job."""
    name = "websocket"

    def __init__(self, hub):
        self.hub = hub

    async def deliver(self, event: Dict[str, Any], key: str) -> None:
        await self.hub.publish(event["job_id"], f"job_{event['status']}", event)


class Notifier:
    def __init__(self, sinks: List[NotificationSink], max_attempts: int = 5,
                 backoff_base: float = 1.0, backoff_cap: float = 30.0):
        self.sinks = list(sinks)
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap

    async def notify(self, job: JobRecord) -> bool:
        """Deliver a terminal transition to every sink. Returns False if any sink gave up."""
        if not job.is_terminal:
            raise ValueError(f"Job {job.job_id} is not terminal ({job.status.value})")
        event = build_event(job)
        key = idempotency_key(job)
        delivered = True
        for sink in self.sinks:
            if not await self._deliver_with_retry(sink, event, key):
                delivered = False
        return delivered

    async def _deliver_with_retry(self, sink: NotificationSink, event: Dict[str, Any], key: str) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await sink.deliver(event, key)
                return True
            except Exception as e:
                if attempt >= self.max_attempts:
                    logger.error("Dropping %s notification %s after %d attempts: %s",
                                 sink.name, key, attempt, e)
                    return False
                delay = compute_backoff(attempt, self.backoff_base, self.backoff_cap)
                logger.warning("%s notification %s failed (%s), retrying in %.2fs", sink.name, key, e, delay)
                await asyncio.sleep(delay)
        return False

    async def close(self):
        for sink in self.sinks:
            await sink.close()
