from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import JSONResponse
import logging
from typing import Optional

from render_worker.errors import JobNotFound
from render_worker.models.job import JobRecord
from render_worker.services.gateway import get_gateway
from render_worker.services.scheduler import get_worker_pool

logger = logging.getLogger(__name__)
router = APIRouter()


def _job_to_dict(job: JobRecord) -> dict:
    return {
        "job_id": job.job_id,
        "status": job.status.value,
        "phase": job.phase,
        "step": job.step.value if job.step else None,
        "reason": job.reason,
        "attempt": job.attempt,
        "cancel_requested": job.cancel_requested,
        "payload": job.payload,
        "artifacts": job.artifacts,
        "history": [entry.model_dump(mode="json") for entry in job.history],
        "submitted_at": job.submitted_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


def _require_pool():
    pool = get_worker_pool()
    if pool is None:
        raise HTTPException(status_code=503, detail="Worker pool is not running")
    return pool


@router.post("/create-video", status_code=202)
async def create_video(request: Request, x_api_key: Optional[str] = Header(default=None)):
    """
    Accept a video rendering job.

    Responds 202 as soon as the job is admitted; rendering continues in the
    background.
    """
    gateway = get_gateway()
    if gateway is None:
        raise HTTPException(status_code=503, detail="Worker pool is not running")

    try:
        body = await request.json()
    except ValueError:
        body = None
    logger.debug(f"Received video creation request: {body}")

    job = gateway.submit(body, x_api_key)
    return {
        "status": "Accepted",
        "message": "Video rendering job accepted and will be processed in the background.",
        "job_id": job.job_id,
    }


@router.get("/jobs/{job_id}")
async def get_job(job_id: str):
    """Get job status and history"""
    pool = _require_pool()
    try:
        job = pool.get(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_to_dict(job)


@router.get("/jobs")
async def list_jobs(limit: Optional[int] = None, offset: int = 0):
    """List jobs, newest first."""
    pool = _require_pool()
    jobs = pool.list(limit=limit, offset=offset)
    return {"jobs": [_job_to_dict(job) for job in jobs]}


@router.delete("/jobs/{job_id}")
async def cancel_job(job_id: str):
    """
    Request cancellation. The running step is allowed to finish; the job
    fails with reason "cancelled" at the next step boundary.
    """
    pool = _require_pool()
    try:
        job = pool.cancel(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")

    if job.is_terminal:
        message = f"Job already {job.status.value}"
    else:
        message = "Cancellation requested"
    return JSONResponse(status_code=202, content={
        "job_id": job.job_id,
        "status": job.status.value,
        "cancel_requested": job.cancel_requested,
        "message": message,
    })
