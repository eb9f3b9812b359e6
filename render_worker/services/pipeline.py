import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

from render_worker.errors import OwnershipLost, PersistenceConflict, StepError
from render_worker.models.job import (
    HistoryEntry,
    JobRecord,
    JobStatus,
    PipelineStep,
    StepOutcome,
)
from render_worker.services.job_store import JobStore
from render_worker.services.step_executor import StepContext, StepExecutor

logger = logging.getLogger(__name__)

MAX_CONFLICT_RETRIES = 5
CANCELLED_REASON = "cancelled"

TransitionCallback = Callable[[JobRecord], Awaitable[None]]


def compute_backoff(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff after the `attempt`-th failure: base, 2*base, 4*base ... capped."""
    return min(cap, base * (2 ** max(attempt - 1, 0)))


class JobPipeline:
    """
    Drives one job through download -> transcode -> upload -> finalize.

    Every step outcome is written to the store before the next step starts,
    so a job picked up again after a crash continues at the first step that
    has not succeeded instead of starting over.
    """

    def __init__(self, store: JobStore, executor: StepExecutor, max_attempts: int = 3,
                 step_timeout: Optional[float] = 600.0, backoff_base: float = 1.0,
                 backoff_cap: float = 30.0, work_dir: Optional[str] = None,
                 on_transition: Optional[TransitionCallback] = None):
        self.store = store
        self.executor = executor
        self.max_attempts = max(1, max_attempts)
        self.step_timeout = step_timeout
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.work_dir = Path(work_dir) if work_dir else None
        self.on_transition = on_transition

    async def run(self, job_id: str, worker_id: str, restart: bool = False) -> JobRecord:
        """Run a job to a terminal state and return the final record."""
        job = self._claim(job_id, worker_id, restart)
        if job.is_terminal:
            return job
        await self._emit(job)

        while not job.is_terminal:
            step = job.resume_step()
            if step is None:
                job = self._persist(job, JobStatus.SUCCEEDED)
                logger.info("Process complete for job %s", job.job_id)
                break
            if job.cancel_requested:
                entry = HistoryEntry(step=step, outcome=StepOutcome.CANCELLED, detail=CANCELLED_REASON)
                job = self._persist(job, JobStatus.FAILED, entry, reason=CANCELLED_REASON)
                logger.info("Job %s cancelled before %s", job.job_id, step.value)
                break
            job = await self._run_step(job, step)
            if not job.is_terminal:
                await self._emit(job)

        await self._emit(job)
        return job

    def _claim(self, job_id: str, worker_id: str, restart: bool) -> JobRecord:
        job = self.store.get(job_id)
        if job.is_terminal:
            logger.info("Job %s already %s, nothing to do", job_id, job.status.value)
            return job

        entry = None
        if restart:
            entry = HistoryEntry(step=PipelineStep.DOWNLOAD, outcome=StepOutcome.RESTARTED,
                                 detail=f"full restart by {worker_id}")
            step = PipelineStep.DOWNLOAD
            attempt = 1
        else:
            step = job.resume_step() or PipelineStep.FINALIZE
            attempt = job.failed_attempts(step) + 1

        try:
            claimed = self.store.update_status(
                job_id, JobStatus.RUNNING, entry, expected_version=job.version,
                step=step, attempt=attempt, owner=worker_id,
            )
        except PersistenceConflict as e:
            raise OwnershipLost(f"Job {job_id} was claimed concurrently") from e

        if job.status == JobStatus.RUNNING and not restart:
            logger.info("Resuming job %s at step %s (previous owner %s)", job_id, step.value, job.owner)
        else:
            logger.info("Job %s claimed by %s at step %s", job_id, worker_id, step.value)
        return claimed

    def _persist(self, job: JobRecord, status: JobStatus,
                 entry: Optional[HistoryEntry] = None, **changes) -> JobRecord:
        """CAS write; on conflict re-read and re-apply while this worker still owns the job."""
        for _ in range(MAX_CONFLICT_RETRIES):
            try:
                return self.store.update_status(
                    job.job_id, status, entry, expected_version=job.version, **changes
                )
            except PersistenceConflict as e:
                fresh = self.store.get(job.job_id)
                if fresh.owner != job.owner or fresh.is_terminal:
                    raise OwnershipLost(f"Job {job.job_id} is now owned by {fresh.owner}") from e
                logger.debug("Retrying write for job %s at version %d", job.job_id, fresh.version)
                job = fresh
        raise OwnershipLost(f"Job {job.job_id}: gave up after {MAX_CONFLICT_RETRIES} conflicts")

    async def _run_step(self, job: JobRecord, step: PipelineStep) -> JobRecord:
        attempt = job.failed_attempts(step) + 1
        if job.step != step or job.attempt != attempt:
            job = self._persist(job, JobStatus.RUNNING, step=step, attempt=attempt)

        logger.info("Job %s: running %s (attempt %d/%d)", job.job_id, step.value, attempt, self.max_attempts)
        context = StepContext(
            job_id=job.job_id,
            attempt=attempt,
            artifacts=dict(job.artifacts),
            work_dir=self.work_dir,
        )
        try:
            result = await self.executor.run(step, job.payload, self.step_timeout, context)
        except StepError as e:
            entry = HistoryEntry(step=step, outcome=StepOutcome.FAILED, attempt=attempt, detail=str(e))
            if e.retryable and attempt < self.max_attempts:
                job = self._persist(job, JobStatus.RUNNING, entry, step=step, attempt=attempt)
                delay = compute_backoff(attempt, self.backoff_base, self.backoff_cap)
                logger.warning("Job %s: %s failed (%s), retrying in %.2fs", job.job_id, step.value, e, delay)
                await asyncio.sleep(delay)
                # pick up a cancel requested while waiting
                fresh = self.store.get(job.job_id)
                if fresh.owner != job.owner:
                    raise OwnershipLost(f"Job {job.job_id} is now owned by {fresh.owner}")
                return fresh

            reason = f"{step.value}: {e}"
            if e.retryable:
                reason = f"{reason} (gave up after {attempt} attempts)"
            logger.error("Job %s failed: %s", job.job_id, reason)
            return self._persist(job, JobStatus.FAILED, entry, reason=reason)

        entry = HistoryEntry(step=step, outcome=StepOutcome.SUCCEEDED, attempt=attempt,
                             detail=f"{result.duration_ms}ms")
        artifacts = {**job.artifacts, **result.data}
        logger.info("Job %s: %s succeeded in %dms", job.job_id, step.value, result.duration_ms)
        return self._persist(job, JobStatus.RUNNING, entry, step=step, attempt=attempt, artifacts=artifacts)

    async def _emit(self, job: JobRecord):
        if self.on_transition is None:
            return
        try:
            await self.on_transition(job)
        except Exception as e:
            logger.warning(f"Transition callback failed for job {job.job_id}: {e}")
