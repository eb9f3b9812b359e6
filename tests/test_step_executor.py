"""
Tests for step execution, timeouts and error classification.
"""

import asyncio
import sys

import httpx
import pytest

from render_worker.errors import StepError, StepErrorKind
from render_worker.models.job import PipelineStep
from render_worker.services.step_executor import (
    StepContext,
    StepExecutor,
    classify_exception,
    run_external_tool,
)


def _executor_with(step, handler):
    async def ok(payload, context):
        return {}
    handlers = {s: ok for s in PipelineStep}
    handlers[step] = handler
    return StepExecutor(handlers)


def test_missing_handlers_rejected():
    with pytest.raises(ValueError):
        StepExecutor({PipelineStep.DOWNLOAD: None})


@pytest.mark.asyncio
async def test_successful_step_returns_data():
    async def download(payload, context):
        return {"inputs": [f"{context.job_id}/a.mp4"]}

    executor = _executor_with(PipelineStep.DOWNLOAD, download)
    result = await executor.run(PipelineStep.DOWNLOAD, {}, 1.0, StepContext(job_id="abc123"))
    assert result.step == PipelineStep.DOWNLOAD
    assert result.data == {"inputs": ["abc123/a.mp4"]}
    assert result.duration_ms >= 0


@pytest.mark.asyncio
async def test_handler_returning_none_gives_empty_data():
    async def finalize(payload, context):
        return None

    executor = _executor_with(PipelineStep.FINALIZE, finalize)
    result = await executor.run(PipelineStep.FINALIZE, {}, None, StepContext(job_id="j"))
    assert result.data == {}


@pytest.mark.asyncio
async def test_timeout_is_retryable():
    async def slow(payload, context):
        await asyncio.sleep(5)

    executor = _executor_with(PipelineStep.TRANSCODE, slow)
    with pytest.raises(StepError) as exc_info:
        await executor.run(PipelineStep.TRANSCODE, {}, 0.05, StepContext(job_id="j"))
    assert exc_info.value.kind == StepErrorKind.TIMEOUT
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_value_error_is_invalid_input():
    async def bad(payload, context):
        raise ValueError("no assets")

    executor = _executor_with(PipelineStep.DOWNLOAD, bad)
    with pytest.raises(StepError) as exc_info:
        await executor.run(PipelineStep.DOWNLOAD, {}, 1.0, StepContext(job_id="j"))
    assert exc_info.value.kind == StepErrorKind.INVALID_INPUT
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_step_error_passes_through():
    async def tool(payload, context):
        raise StepError(StepErrorKind.EXTERNAL_TOOL_FAILURE, "boom", retryable=False)

    executor = _executor_with(PipelineStep.TRANSCODE, tool)
    with pytest.raises(StepError) as exc_info:
        await executor.run(PipelineStep.TRANSCODE, {}, 1.0, StepContext(job_id="j"))
    assert exc_info.value.kind == StepErrorKind.EXTERNAL_TOOL_FAILURE
    assert exc_info.value.retryable is False


@pytest.mark.parametrize("exc, kind, retryable", [
    (ConnectionResetError("reset"), StepErrorKind.TRANSIENT_IO_FAILURE, True),
    (httpx.ConnectError("refused"), StepErrorKind.TRANSIENT_IO_FAILURE, True),
    (KeyError("url"), StepErrorKind.INVALID_INPUT, False),
    (httpx.UnsupportedProtocol("Request URL has an unsupported protocol 'file://'."), StepErrorKind.INVALID_INPUT, False),
    (httpx.InvalidURL("Invalid port: 'http'"), StepErrorKind.INVALID_INPUT, False),
    (RuntimeError("weird"), StepErrorKind.EXTERNAL_TOOL_FAILURE, True),
])
def test_classify_exception(exc, kind, retryable):
    error = classify_exception(exc)
    assert error.kind == kind
    assert error.retryable is retryable


@pytest.mark.parametrize("status, kind", [
    (503, StepErrorKind.TRANSIENT_IO_FAILURE),
    (429, StepErrorKind.TRANSIENT_IO_FAILURE),
    (404, StepErrorKind.INVALID_INPUT),
])
def test_classify_http_status(status, kind):
    request = httpx.Request("GET", "http://assets.example/a.mp4")
    response = httpx.Response(status, request=request)
    exc = httpx.HTTPStatusError("bad status", request=request, response=response)
    assert classify_exception(exc).kind == kind


@pytest.mark.asyncio
async def test_external_tool_success():
    result = await run_external_tool([sys.executable, "-c", "print('rendered')"], timeout=10)
    assert result.exit_code == 0
    assert "rendered" in result.stdout


@pytest.mark.asyncio
async def test_external_tool_nonzero_exit():
    with pytest.raises(StepError) as exc_info:
        await run_external_tool(
            [sys.executable, "-c", "import sys; sys.stderr.write('bad codec'); sys.exit(3)"],
            timeout=10,
        )
    assert exc_info.value.kind == StepErrorKind.EXTERNAL_TOOL_FAILURE
    assert exc_info.value.exit_code == 3
    assert "bad codec" in exc_info.value.message
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_external_tool_missing_binary_not_retryable():
    with pytest.raises(StepError) as exc_info:
        await run_external_tool(["definitely-not-a-real-ffmpeg-binary"], timeout=5)
    assert exc_info.value.kind == StepErrorKind.EXTERNAL_TOOL_FAILURE
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_external_tool_timeout():
    with pytest.raises(StepError) as exc_info:
        await run_external_tool([sys.executable, "-c", "import time; time.sleep(10)"], timeout=0.2)
    assert exc_info.value.kind == StepErrorKind.TIMEOUT
