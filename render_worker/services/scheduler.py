import asyncio
import logging
import uuid
from typing import Dict, List, Optional, Set

from render_worker.config import Settings
from render_worker.errors import JobNotFound, OwnershipLost, QueueFull
from render_worker.models.job import HistoryEntry, JobRecord, JobStatus, PipelineStep, StepOutcome
from render_worker.services.job_store import JobStore, create_job_store
from render_worker.services.media_steps import build_step_handlers
from render_worker.services.notifier import LogSink, Notifier, WebhookSink, WebSocketSink
from render_worker.services.pipeline import JobPipeline
from render_worker.services.step_executor import StepExecutor

logger = logging.getLogger(__name__)


class WorkerPool:
    """Fixed set of asyncio workers fed by one FIFO pending queue."""

    def __init__(self, store: JobStore, pipeline: JobPipeline, notifier: Optional[Notifier] = None,
                 concurrency: int = 1, queue_capacity: int = 100, recovery_mode: str = "resume"):
        self.store = store
        self.pipeline = pipeline
        self.notifier = notifier
        self.concurrency = max(1, concurrency)
        self.queue_capacity = queue_capacity
        self.recovery_mode = recovery_mode
        self.pool_id = uuid.uuid4().hex[:8]
        self.queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self.workers: List[asyncio.Task] = []
        self._queued: Set[str] = set()
        self._restart: Set[str] = set()
        self._running: Dict[str, str] = {}
        self._stop_event = asyncio.Event()

    async def start(self):
        logger.info("Starting worker pool %s with %s workers", self.pool_id, self.concurrency)
        self._stop_event.clear()
        self.recover()
        for i in range(self.concurrency):
            task = asyncio.create_task(self._worker_loop(i))
            self.workers.append(task)

    async def stop(self):
        logger.info("Stopping worker pool %s", self.pool_id)
        self._stop_event.set()
        for _ in self.workers:
            self.queue.put_nowait(None)
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers.clear()

    def enqueue(self, job: JobRecord) -> JobRecord:
        """
        Admit a new job without blocking.

        Raises QueueFull, leaving the store untouched, when `queue_capacity`
        jobs are already waiting.
        """
        if len(self._queued) >= self.queue_capacity:
            raise QueueFull(f"Pending queue is full ({self.queue_capacity} jobs)")
        stored = self.store.put(job)
        self._push(stored.job_id)
        logger.info("Job %s enqueued (%d pending)", stored.job_id, len(self._queued))
        return stored

    def recover(self) -> int:
        """
        Re-queue every non-terminal job in submission order, plus terminal jobs
        whose completion event was never delivered.
        """
        pending = list(self.store.list_unfinished())
        if self.notifier is not None:
            pending.extend(self.store.list_unnotified())

        recovered = 0
        for job in pending:
            if job.job_id in self._queued or job.job_id in self._running:
                continue
            if self.recovery_mode == "restart" and not job.is_terminal:
                self._restart.add(job.job_id)
            self._push(job.job_id)
            recovered += 1
            logger.info("Recovered job %s (%s, step=%s)", job.job_id, job.status.value,
                        job.step.value if job.step else None)
        if recovered:
            logger.info("Recovery sweep re-queued %d jobs", recovered)
        return recovered

    def _push(self, job_id: str):
        self._queued.add(job_id)
        self.queue.put_nowait(job_id)

    def get(self, job_id: str) -> JobRecord:
        return self.store.get(job_id)

    def list(self, limit: Optional[int] = None, offset: int = 0) -> List[JobRecord]:
        return self.store.list_jobs(limit=limit, offset=offset)

    def cancel(self, job_id: str) -> JobRecord:
        """Flag a job for cancellation; the pipeline stops it at the next step boundary."""
        job = self.store.request_cancel(job_id)
        logger.info("Cancellation requested for job %s", job_id)
        return job

    async def join(self):
        """Wait until every queued job has been processed."""
        await self.queue.join()

    def get_queue_status(self) -> Dict[str, object]:
        return {
            "max_concurrency": self.concurrency,
            "queue_capacity": self.queue_capacity,
            "running_jobs": len(self._running),
            "queued_jobs": len(self._queued),
            "running_job_ids": list(self._running.keys()),
        }

    async def _worker_loop(self, worker_idx: int):
        worker_id = f"{self.pool_id}-worker-{worker_idx}"
        while not self._stop_event.is_set():
            job_id = await self.queue.get()
            if job_id is None or self._stop_event.is_set():
                # jobs left in the queue stay non-terminal in the store and are recovered on restart
                self.queue.task_done()
                break
            self._queued.discard(job_id)
            restart = job_id in self._restart
            self._restart.discard(job_id)
            self._running[job_id] = worker_id
            try:
                job = await self.pipeline.run(job_id, worker_id, restart=restart)
                if job.is_terminal and not job.notified:
                    await self._notify(job)
            except OwnershipLost as e:
                logger.warning("Worker %s dropped job %s: %s", worker_id, job_id, e)
            except JobNotFound:
                logger.warning("Job %s disappeared from the store", job_id)
            except Exception as e:
                logger.exception("Job %s failed: %s", job_id, e)
                await self._fail_unexpected(job_id, worker_id, e)
            finally:
                self._running.pop(job_id, None)
                self.queue.task_done()

    async def _fail_unexpected(self, job_id: str, worker_id: str, exc: Exception):
        """Move a job whose pipeline raised unexpectedly to FAILED, if this worker still owns it."""
        try:
            job = self.store.get(job_id)
            if job.is_terminal or job.owner != worker_id:
                return
            entry = HistoryEntry(step=job.step or PipelineStep.DOWNLOAD, outcome=StepOutcome.FAILED,
                                 attempt=max(job.attempt, 1), detail=f"internal error: {exc}")
            job = self.store.update_status(job_id, JobStatus.FAILED, entry,
                                           expected_version=job.version, reason="internal error")
        except Exception as e:
            logger.error("Could not mark job %s failed: %s", job_id, e)
            return
        await self._notify(job)

    async def _notify(self, job: JobRecord):
        if self.notifier is None:
            return
        await self.notifier.notify(job)
        self.store.mark_notified(job.job_id)


# Global worker pool instance for app
worker_pool: Optional[WorkerPool] = None


def build_worker_pool(settings: Settings, store: Optional[JobStore] = None) -> WorkerPool:
    """Wire store, executor, pipeline and notifier from settings."""
    from render_worker.routes.websocket import hub

    store = store or create_job_store(settings.job_store, settings.db_path)
    executor = StepExecutor(build_step_handlers(settings))

    async def _on_transition(job: JobRecord):
        await hub.publish(job.job_id, "job_updated", {
            "status": job.status.value,
            "phase": job.phase,
            "attempt": job.attempt,
        })

    pipeline = JobPipeline(
        store,
        executor,
        max_attempts=settings.max_attempts,
        step_timeout=settings.step_timeout_seconds,
        backoff_base=settings.backoff_base_seconds,
        backoff_cap=settings.backoff_cap_seconds,
        work_dir=settings.work_dir,
        on_transition=_on_transition,
    )

    sinks = [LogSink(), WebSocketSink(hub)]
    if settings.notify_webhook_url:
        sinks.append(WebhookSink(settings.notify_webhook_url, timeout=settings.notify_timeout_seconds))
    notifier = Notifier(
        sinks,
        max_attempts=settings.notify_max_attempts,
        backoff_base=settings.backoff_base_seconds,
        backoff_cap=settings.backoff_cap_seconds,
    )

    return WorkerPool(
        store,
        pipeline,
        notifier,
        concurrency=settings.max_concurrency,
        queue_capacity=settings.queue_capacity,
        recovery_mode=settings.recovery_mode,
    )


async def init_worker_pool(settings: Settings, store: Optional[JobStore] = None):
    global worker_pool
    if worker_pool is None:
        worker_pool = build_worker_pool(settings, store)
        if settings.retention_days > 0:
            worker_pool.store.cleanup_terminal_jobs(settings.retention_days)
        await worker_pool.start()


async def shutdown_worker_pool():
    global worker_pool
    if worker_pool is not None:
        await worker_pool.stop()
        if worker_pool.notifier is not None:
            await worker_pool.notifier.close()
        worker_pool = None


def get_worker_pool() -> Optional[WorkerPool]:
    return worker_pool
