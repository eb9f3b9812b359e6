import re
from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator
from typing import Optional, Dict, Any, List
from enum import Enum
from datetime import datetime, timezone

from render_worker.errors import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job status enumeration"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATUSES = {JobStatus.SUCCEEDED, JobStatus.FAILED}


class PipelineStep(str, Enum):
    """Rendering steps in execution order"""
    DOWNLOAD = "download"
    TRANSCODE = "transcode"
    UPLOAD = "upload"
    FINALIZE = "finalize"


STEP_ORDER: List[PipelineStep] = [
    PipelineStep.DOWNLOAD,
    PipelineStep.TRANSCODE,
    PipelineStep.UPLOAD,
    PipelineStep.FINALIZE,
]

STEP_PHASES = {
    PipelineStep.DOWNLOAD: "downloading_assets",
    PipelineStep.TRANSCODE: "transcoding",
    PipelineStep.UPLOAD: "uploading_result",
    PipelineStep.FINALIZE: "finalizing",
}


class StepOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RESTARTED = "restarted"


class HistoryEntry(BaseModel):
    """One audit record: a step attempt outcome or a lifecycle marker"""
    step: PipelineStep
    outcome: StepOutcome
    timestamp: datetime = Field(default_factory=utcnow)
    attempt: int = 1
    detail: Optional[str] = None


class JobRecord(BaseModel):
    """Job record schema"""
    job_id: str
    status: JobStatus = JobStatus.PENDING
    step: Optional[PipelineStep] = None
    reason: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    artifacts: Dict[str, Any] = Field(default_factory=dict)
    attempt: int = 0
    history: List[HistoryEntry] = Field(default_factory=list)
    version: int = 0
    owner: Optional[str] = None
    cancel_requested: bool = False
    notified: bool = False
    submitted_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def phase(self) -> str:
        if self.status == JobStatus.RUNNING and self.step is not None:
            return STEP_PHASES[self.step]
        return self.status.value

    def active_history(self) -> List[HistoryEntry]:
        """History since the most recent full restart"""
        for idx in range(len(self.history) - 1, -1, -1):
            if self.history[idx].outcome == StepOutcome.RESTARTED:
                return self.history[idx + 1:]
        return list(self.history)

    def completed_steps(self) -> List[PipelineStep]:
        return [e.step for e in self.active_history() if e.outcome == StepOutcome.SUCCEEDED]

    def resume_step(self) -> Optional[PipelineStep]:
        """First step that has not succeeded yet, or None when all have"""
        done = set(self.completed_steps())
        for step in STEP_ORDER:
            if step not in done:
                return step
        return None

    def failed_attempts(self, step: PipelineStep) -> int:
        return sum(
            1 for e in self.active_history()
            if e.step == step and e.outcome == StepOutcome.FAILED
        )


class JobStateMachine:
    """Validates job status transitions before they are persisted."""

    VALID_TRANSITIONS = {
        JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
        JobStatus.RUNNING: {JobStatus.RUNNING, JobStatus.SUCCEEDED, JobStatus.FAILED},
        JobStatus.SUCCEEDED: set(),
        JobStatus.FAILED: set(),
    }

    @staticmethod
    def check(job: JobRecord, new_status: JobStatus, new_step: Optional[PipelineStep] = None,
              entry: Optional[HistoryEntry] = None):
        if new_status not in JobStateMachine.VALID_TRANSITIONS[job.status]:
            raise InvalidTransition(f"Invalid transition: {job.status.value} -> {new_status.value}")

        restarting = entry is not None and entry.outcome == StepOutcome.RESTARTED
        if new_status == JobStatus.RUNNING:
            if new_step is None:
                raise InvalidTransition("A running job must name its step")
            if job.status == JobStatus.RUNNING and job.step is not None and not restarting:
                if STEP_ORDER.index(new_step) < STEP_ORDER.index(job.step):
                    raise InvalidTransition(
                        f"Step order violated: {job.step.value} -> {new_step.value}"
                    )
        if new_status == JobStatus.SUCCEEDED and job.resume_step() is not None:
            raise InvalidTransition(f"Job {job.job_id} has unfinished steps")

        if entry is not None and entry.outcome == StepOutcome.SUCCEEDED:
            if entry.step in job.completed_steps():
                raise InvalidTransition(f"Step {entry.step.value} already succeeded for {job.job_id}")


NAME_PATTERN = r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$"

# Encoder options a submitter may pass through to ffmpeg. Inputs, outputs and
# container format are always chosen by the worker.
FFMPEG_FLAGS = {"-shortest", "-an", "-vn", "-sn", "-dn"}
FFMPEG_VALUE_OPTIONS = {
    "-c:v", "-c:a", "-codec:v", "-codec:a", "-vcodec", "-acodec",
    "-b:v", "-b:a", "-maxrate", "-bufsize", "-crf", "-qp", "-preset", "-tune",
    "-profile:v", "-level", "-pix_fmt", "-r", "-s", "-aspect", "-ar", "-ac", "-g",
    "-t", "-ss", "-movflags",
}
FFMPEG_FILTER_OPTIONS = {"-vf", "-af", "-filter:v", "-filter:a"}
# Filters that only transform the stream; none of them opens files or devices
FFMPEG_FILTERS = {
    "scale", "fps", "format", "crop", "pad", "setsar", "setdar", "transpose",
    "hflip", "vflip", "setpts", "trim", "fade", "null",
    "volume", "aresample", "loudnorm", "atempo", "atrim", "asetpts", "afade", "anull",
}
FFMPEG_VALUE_RE = re.compile(r"^[A-Za-z0-9_.:=,+-]+$")
NUMBER_RE = re.compile(r"^-?[0-9]+(\.[0-9]+)?$")


def _check_ffmpeg_value(option: str, value: str):
    if not FFMPEG_VALUE_RE.match(value):
        raise ValueError(f"invalid value for {option}: {value!r}")
    if value.startswith("-") and not NUMBER_RE.match(value):
        raise ValueError(f"missing value for {option}")


def _check_filtergraph(option: str, graph: str):
    for chain in graph.split(";"):
        for filter_spec in chain.split(","):
            name = filter_spec.split("=", 1)[0]
            if name not in FFMPEG_FILTERS:
                raise ValueError(f"filter {name!r} is not allowed in {option}")


def validate_ffmpeg_args(args: List[str]) -> List[str]:
    """
    Check submitter-supplied encoder arguments against the allowlist.

    Raises ValueError on an unknown option, a missing value, or a value that
    could name a file, URL or device.
    """
    idx = 0
    while idx < len(args):
        option = args[idx]
        if option in FFMPEG_FLAGS:
            idx += 1
            continue
        if option not in FFMPEG_VALUE_OPTIONS and option not in FFMPEG_FILTER_OPTIONS:
            raise ValueError(f"ffmpeg option {option!r} is not allowed")
        if idx + 1 >= len(args):
            raise ValueError(f"missing value for {option}")
        value = args[idx + 1]
        _check_ffmpeg_value(option, value)
        if option in FFMPEG_FILTER_OPTIONS:
            _check_filtergraph(option, value)
        idx += 2
    return args


class AssetRef(BaseModel):
    url: HttpUrl
    name: Optional[str] = Field(default=None, pattern=NAME_PATTERN)


class VideoRequest(BaseModel):
    """Request body for POST /create-video; unknown fields are kept in the payload."""
    model_config = ConfigDict(extra="allow")

    sutra_id: Optional[str] = Field(default=None, pattern=NAME_PATTERN)
    assets: List[AssetRef] = Field(default_factory=list)
    output_url: Optional[HttpUrl] = None
    output_name: Optional[str] = Field(default=None, pattern=NAME_PATTERN)
    ffmpeg_args: Optional[List[str]] = None

    @field_validator("ffmpeg_args")
    @classmethod
    def _allowed_ffmpeg_args(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return value
        return validate_ffmpeg_args(value)
