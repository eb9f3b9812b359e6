"""
Runs one pipeline step with a timeout and classifies how it ended.

The executor knows nothing about media; each step is an async handler that
receives the job payload and the artifacts of earlier steps. Anything the
handler raises is mapped onto a StepError so the pipeline can decide whether
to retry.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from render_worker.errors import StepError, StepErrorKind
from render_worker.models.job import PipelineStep

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 2000


@dataclass
class StepContext:
    """What a handler may know about the job besides its payload"""
    job_id: str
    attempt: int = 1
    artifacts: Dict[str, Any] = field(default_factory=dict)
    work_dir: Optional[Path] = None


@dataclass
class StepResult:
    step: PipelineStep
    data: Dict[str, Any]
    duration_ms: int


@dataclass
class ToolResult:
    exit_code: int
    stdout: str
    stderr: str


StepHandler = Callable[[Dict[str, Any], StepContext], Awaitable[Optional[Dict[str, Any]]]]


def classify_exception(exc: Exception) -> StepError:
    """Map an arbitrary handler exception onto the step error taxonomy."""
    if isinstance(exc, StepError):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return StepError(StepErrorKind.TIMEOUT, str(exc) or "step timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status >= 500 or status == 429:
            return StepError(StepErrorKind.TRANSIENT_IO_FAILURE, f"HTTP {status} from {exc.request.url}")
        return StepError(StepErrorKind.INVALID_INPUT, f"HTTP {status} from {exc.request.url}")
    if isinstance(exc, (httpx.UnsupportedProtocol, httpx.InvalidURL)):
        return StepError(StepErrorKind.INVALID_INPUT, f"{type(exc).__name__}: {exc}")
    if isinstance(exc, (httpx.TransportError, OSError)):
        return StepError(StepErrorKind.TRANSIENT_IO_FAILURE, f"{type(exc).__name__}: {exc}")
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return StepError(StepErrorKind.INVALID_INPUT, f"{type(exc).__name__}: {exc}")
    return StepError(StepErrorKind.EXTERNAL_TOOL_FAILURE, f"{type(exc).__name__}: {exc}")


class StepExecutor:
    """Executes named steps through registered handlers."""

    def __init__(self, handlers: Dict[PipelineStep, StepHandler]):
        missing = [s.value for s in PipelineStep if s not in handlers]
        if missing:
            raise ValueError(f"No handler registered for steps: {missing}")
        self.handlers = dict(handlers)

    async def run(self, step: PipelineStep, payload: Dict[str, Any], timeout: Optional[float],
                  context: Optional[StepContext] = None) -> StepResult:
        """Run `step` once. Returns a StepResult or raises StepError."""
        handler = self.handlers[step]
        context = context or StepContext(job_id=str(payload.get("sutra_id", "")))
        started = time.monotonic()
        try:
            data = await asyncio.wait_for(handler(payload, context), timeout=timeout)
        except asyncio.TimeoutError:
            raise StepError(StepErrorKind.TIMEOUT, f"{step.value} exceeded {timeout}s") from None
        except StepError:
            raise
        except Exception as e:
            error = classify_exception(e)
            logger.debug("Step %s for job %s raised %r", step.value, context.job_id, e)
            raise error from e
        duration_ms = int((time.monotonic() - started) * 1000)
        return StepResult(step=step, data=data or {}, duration_ms=duration_ms)


async def run_external_tool(args: List[str], timeout: Optional[float] = None,
                            cwd: Optional[str] = None) -> ToolResult:
    """
    Run an external program and capture its exit status.

    Non-zero exit raises EXTERNAL_TOOL_FAILURE, a missing binary raises a
    non-retryable EXTERNAL_TOOL_FAILURE, and exceeding `timeout` kills the
    process and raises TIMEOUT.
    """
    logger.info("Running: %s", " ".join(args))
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    except FileNotFoundError:
        raise StepError(StepErrorKind.EXTERNAL_TOOL_FAILURE, f"{args[0]} not found", retryable=False)

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise StepError(StepErrorKind.TIMEOUT, f"{args[0]} exceeded {timeout}s") from None
    except asyncio.CancelledError:
        proc.kill()
        raise

    result = ToolResult(
        exit_code=proc.returncode,
        stdout=stdout.decode("utf-8", errors="ignore"),
        stderr=stderr.decode("utf-8", errors="ignore"),
    )
    if result.exit_code != 0:
        raise StepError(
            StepErrorKind.EXTERNAL_TOOL_FAILURE,
            f"{args[0]} exited with {result.exit_code}: {result.stderr[-STDERR_TAIL_CHARS:]}",
            exit_code=result.exit_code,
        )
    return result
