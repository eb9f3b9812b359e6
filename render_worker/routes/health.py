from fastapi import APIRouter
from datetime import datetime, timezone
import logging

from render_worker.config import settings
from render_worker.services.scheduler import get_worker_pool

logger = logging.getLogger(__name__)
router = APIRouter()

@router.get("/")
async def liveness():
    """
    Liveness endpoint used by monitoring to verify the worker is running
    """
    return {
        "status": "success",
        "message": "FFmpeg Worker is alive and ready!"
    }

@router.get("/healthz")
async def health_check():
    """
    Health check endpoint
    Returns OK status plus worker pool occupancy
    """
    logger.info("Health check requested")
    pool = get_worker_pool()
    return {
        "status": "OK" if pool is not None else "DEGRADED",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "ffmpeg-render-worker",
        "version": settings.app_version,
        "pool": pool.get_queue_status() if pool is not None else None,
    }
