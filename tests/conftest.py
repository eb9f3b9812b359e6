import asyncio
from functools import partial

import pytest

from render_worker.models.job import PipelineStep
from render_worker.services.job_store import InMemoryJobStore, SQLiteJobStore
from render_worker.services.pipeline import JobPipeline
from render_worker.services.step_executor import StepExecutor


class ScriptedHandlers:
    """Step handlers that record calls and raise queued errors per step."""

    def __init__(self, failures=None, delays=None):
        self.calls = []
        self.failures = {step: list(errs) for step, errs in (failures or {}).items()}
        self.delays = delays or {}

    def handlers(self):
        return {step: partial(self._handle, step) for step in PipelineStep}

    async def _handle(self, step, payload, context):
        self.calls.append((context.job_id, step))
        pending = self.failures.get(step)
        if pending:
            raise pending.pop(0)
        delay = self.delays.get(step, 0)
        if delay:
            await asyncio.sleep(delay)
        return {f"{step.value}_done": True}

    def steps_for(self, job_id):
        return [step for jid, step in self.calls if jid == job_id]


@pytest.fixture
def memory_store():
    return InMemoryJobStore()


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLiteJobStore(str(tmp_path / "jobs.db"))


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryJobStore()
    return SQLiteJobStore(str(tmp_path / "jobs.db"))


@pytest.fixture
def scripted():
    return ScriptedHandlers()


@pytest.fixture
def make_pipeline():
    def _make(store, handlers, **kwargs):
        kwargs.setdefault("backoff_base", 0.0)
        kwargs.setdefault("step_timeout", 5.0)
        return JobPipeline(store, StepExecutor(handlers), **kwargs)
    return _make


@pytest.fixture
def scripted_handlers():
    return ScriptedHandlers
