"""
WebSocket routes for real-time job status updates.

A subscriber to `/ws/jobs/{job_id}` first receives a `connected` message with
the job's current snapshot (or `null` when the job is not known yet), then one
`job_updated` message per step transition and a single terminal
`job_succeeded` / `job_failed` event.
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from typing import Any, Dict, Optional, Set
import logging
import json
from datetime import datetime, timezone

from render_worker.errors import JobNotFound
from render_worker.services.scheduler import get_worker_pool

logger = logging.getLogger(__name__)
router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def job_snapshot(job_id: str) -> Optional[Dict[str, Any]]:
    """Current status of a job as seen by the worker pool, None if unknown."""
    pool = get_worker_pool()
    if pool is None:
        return None
    try:
        job = pool.get(job_id)
    except JobNotFound:
        return None
    return {
        "status": job.status.value,
        "phase": job.phase,
        "step": job.step.value if job.step else None,
        "attempt": job.attempt,
        "cancel_requested": job.cancel_requested,
        "reason": job.reason,
    }


class JobUpdateHub:
    """Fans job transitions out to the websockets subscribed to each job."""

    def __init__(self):
        self.subscribers: Dict[str, Set[WebSocket]] = {}

    def subscriber_count(self, job_id: str) -> int:
        return len(self.subscribers.get(job_id, ()))

    async def subscribe(self, websocket: WebSocket, job_id: str):
        await websocket.accept()
        self.subscribers.setdefault(job_id, set()).add(websocket)
        logger.info(f"WebSocket subscribed to job {job_id} ({self.subscriber_count(job_id)} open)")

    def unsubscribe(self, websocket: WebSocket, job_id: str):
        sockets = self.subscribers.get(job_id)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self.subscribers[job_id]
        logger.info(f"WebSocket unsubscribed from job {job_id}")

    async def publish(self, job_id: str, message_type: str, data: dict):
        """Send one update to every subscriber of `job_id`; dead sockets are dropped."""
        sockets = self.subscribers.get(job_id)
        if not sockets:
            return

        message_json = json.dumps({
            "type": message_type,
            "job_id": job_id,
            "timestamp": _now(),
            "data": data,
        }, default=str)

        for websocket in list(sockets):
            try:
                await websocket.send_text(message_json)
            except Exception as e:
                logger.warning(f"Dropping subscriber of job {job_id}: {e}")
                self.unsubscribe(websocket, job_id)


hub = JobUpdateHub()


@router.websocket("/ws/jobs/{job_id}")
async def websocket_endpoint(websocket: WebSocket, job_id: str):
    """
    Streams status transitions of one job. Clients may send {"type": "ping"}
    or {"type": "status"} to get a fresh snapshot.
    """
    await hub.subscribe(websocket, job_id)
    try:
        await websocket.send_json({
            "type": "connected",
            "job_id": job_id,
            "timestamp": _now(),
            "job": job_snapshot(job_id),
        })

        while True:
            try:
                message = json.loads(await websocket.receive_text())
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON received from WebSocket for job {job_id}")
                continue

            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "ping":
                await websocket.send_json({"type": "pong", "timestamp": _now()})
            elif kind == "status":
                await websocket.send_json({
                    "type": "status",
                    "job_id": job_id,
                    "timestamp": _now(),
                    "job": job_snapshot(job_id),
                })

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error for job {job_id}: {e}")
    finally:
        hub.unsubscribe(websocket, job_id)
