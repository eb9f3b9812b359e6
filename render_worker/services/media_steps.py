"""
Concrete step handlers.

`simulate` mode reproduces the placeholder worker: every step just waits and
logs. `ffmpeg` mode downloads the assets, runs ffmpeg on them, publishes the
result and writes a manifest.
"""

import asyncio
import json
import logging
import shutil
from functools import partial
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from render_worker.config import Settings
from render_worker.errors import StepError, StepErrorKind
from render_worker.models.job import PipelineStep, validate_ffmpeg_args
from render_worker.services.step_executor import StepContext, StepHandler, run_external_tool

logger = logging.getLogger(__name__)

# Per-step delays (seconds) in simulate mode
SIMULATED_DELAYS = {
    PipelineStep.DOWNLOAD: 1.0,
    PipelineStep.TRANSCODE: 3.0,
    PipelineStep.UPLOAD: 2.0,
    PipelineStep.FINALIZE: 1.0,
}

SIMULATED_MESSAGES = {
    PipelineStep.DOWNLOAD: "Downloading assets",
    PipelineStep.TRANSCODE: "Running FFmpeg command",
    PipelineStep.UPLOAD: "Uploading final video to storage",
    PipelineStep.FINALIZE: "Updating status in database",
}

DEFAULT_FFMPEG_ARGS = ["-c:v", "libx264", "-pix_fmt", "yuv420p", "-c:a", "aac"]
DOWNLOAD_CHUNK_BYTES = 1 << 16
UPLOAD_CHUNK_BYTES = 1 << 20


async def simulated_step(step: PipelineStep, delay: float, payload: Dict[str, Any],
                         context: StepContext) -> Dict[str, Any]:
    logger.info(f"{SIMULATED_MESSAGES[step]} for sutra_id: {context.job_id}...")
    await asyncio.sleep(delay)
    return {}


def _job_dir(context: StepContext) -> Path:
    if context.work_dir is None:
        raise ValueError("work_dir is required for media steps")
    return context.work_dir / context.job_id


async def download_assets(payload: Dict[str, Any], context: StepContext,
                          transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[str, Any]:
    """Fetch every asset URL into the job's work dir."""
    assets = payload.get("assets") or []
    if not assets:
        raise StepError(StepErrorKind.INVALID_INPUT, "payload has no assets to download")

    target_dir = _job_dir(context) / "assets"
    target_dir.mkdir(parents=True, exist_ok=True)
    paths: List[str] = []
    async with httpx.AsyncClient(follow_redirects=True, timeout=60.0, transport=transport) as client:
        for idx, asset in enumerate(assets):
            url = asset["url"]
            name = asset.get("name") or f"asset_{idx}{Path(httpx.URL(url).path).suffix}"
            local = target_dir / name
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                with open(local, "wb") as f:
                    async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_BYTES):
                        await asyncio.to_thread(f.write, chunk)
            logger.info(f"Downloaded {url} -> {local}")
            paths.append(str(local))
    return {"inputs": paths}


async def transcode(payload: Dict[str, Any], context: StepContext, ffmpeg_bin: str = "ffmpeg") -> Dict[str, Any]:
    """Run ffmpeg over the downloaded inputs."""
    inputs = context.artifacts.get("inputs") or []
    if not inputs:
        raise StepError(StepErrorKind.INVALID_INPUT, "no downloaded inputs to transcode")

    out_dir = _job_dir(context) / "render"
    out_dir.mkdir(parents=True, exist_ok=True)
    output = out_dir / (payload.get("output_name") or f"{context.job_id}.mp4")

    cmd = [ffmpeg_bin, "-y", "-nostdin", "-hide_banner", "-loglevel", "error"]
    for path in inputs:
        cmd += ["-i", path]
    cmd += validate_ffmpeg_args(list(payload.get("ffmpeg_args") or DEFAULT_FFMPEG_ARGS))
    cmd.append(str(output))

    await run_external_tool(cmd)
    return {"render": str(output)}


async def _read_chunks(path: str, chunk_size: int = UPLOAD_CHUNK_BYTES) -> AsyncIterator[bytes]:
    with open(path, "rb") as f:
        while True:
            chunk = await asyncio.to_thread(f.read, chunk_size)
            if not chunk:
                break
            yield chunk


async def upload_result(payload: Dict[str, Any], context: StepContext,
                        output_dir: str = "/tmp/render_worker/output",
                        transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[str, Any]:
    """PUT the render to `output_url`, or copy it into the output dir."""
    render = context.artifacts.get("render")
    if not render or not Path(render).exists():
        raise StepError(StepErrorKind.INVALID_INPUT, "rendered file is missing")

    output_url = payload.get("output_url")
    if output_url:
        size = Path(render).stat().st_size
        async with httpx.AsyncClient(timeout=120.0, transport=transport) as client:
            response = await client.put(output_url, content=_read_chunks(render), headers={
                "Content-Type": "video/mp4",
                "Content-Length": str(size),
            })
            response.raise_for_status()
        logger.info(f"Uploaded {render} ({size} bytes) -> {output_url}")
        return {"output": output_url}

    dest_dir = Path(output_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / Path(render).name
    await asyncio.to_thread(shutil.copyfile, render, dest)
    logger.info(f"Copied {render} -> {dest}")
    return {"output": str(dest)}


async def finalize(payload: Dict[str, Any], context: StepContext) -> Dict[str, Any]:
    """Write the job manifest and drop the job's intermediate files."""
    job_dir = _job_dir(context)
    job_dir.mkdir(parents=True, exist_ok=True)
    manifest = job_dir / "manifest.json"
    output = context.artifacts.get("output")
    manifest.write_text(json.dumps({
        "job_id": context.job_id,
        "output": output,
        "inputs": context.artifacts.get("inputs", []),
    }, indent=2))
    shutil.rmtree(job_dir / "assets", ignore_errors=True)
    render_dir = job_dir / "render"
    # the render is only disposable once it has been published somewhere else
    if output and render_dir.resolve() not in Path(output).resolve().parents:
        shutil.rmtree(render_dir, ignore_errors=True)
    return {"manifest": str(manifest)}


def build_step_handlers(settings: Settings) -> Dict[PipelineStep, StepHandler]:
    """Handlers for the configured STEP_MODE."""
    if settings.step_mode == "simulate":
        return {
            step: partial(simulated_step, step, delay * settings.simulated_step_scale)
            for step, delay in SIMULATED_DELAYS.items()
        }
    if settings.step_mode == "ffmpeg":
        return {
            PipelineStep.DOWNLOAD: download_assets,
            PipelineStep.TRANSCODE: partial(transcode, ffmpeg_bin=settings.ffmpeg_bin),
            PipelineStep.UPLOAD: partial(upload_result, output_dir=settings.output_dir),
            PipelineStep.FINALIZE: finalize,
        }
    raise ValueError(f"Unknown step mode: {settings.step_mode}")
