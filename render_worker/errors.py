"""
Error taxonomy for the render worker.

Admission errors are surfaced synchronously to the submitter, step errors are
handled inside the pipeline, persistence conflicts are retried by the owning
worker and notification errors are retried and eventually dropped.
"""

from enum import Enum
from typing import Optional


class AdmissionError(Exception):
    """Base class for rejected submissions"""
    status_code: int = 400
    code: str = "ADMISSION_ERROR"
    hint: str = "Check the request and try again"
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthorized(AdmissionError):
    status_code = 401
    code = "UNAUTHORIZED"
    hint = "Provide a valid x-api-key header"


class InvalidPayload(AdmissionError):
    status_code = 400
    code = "INVALID_PAYLOAD"
    hint = "Check the request body against the documented fields"


class DuplicateJob(AdmissionError):
    status_code = 409
    code = "DUPLICATE_JOB"
    hint = "Job ids are unique; submit with a different sutra_id"


class QueueFull(AdmissionError):
    status_code = 503
    code = "QUEUE_FULL"
    hint = "The pending queue is at capacity, retry later"
    retryable = True


class StepErrorKind(str, Enum):
    """Classification of a failed step"""
    TIMEOUT = "timeout"
    EXTERNAL_TOOL_FAILURE = "external_tool_failure"
    TRANSIENT_IO_FAILURE = "transient_io_failure"
    INVALID_INPUT = "invalid_input"


RETRYABLE_STEP_ERRORS = {
    StepErrorKind.TIMEOUT,
    StepErrorKind.EXTERNAL_TOOL_FAILURE,
    StepErrorKind.TRANSIENT_IO_FAILURE,
}


class StepError(Exception):
    """A step failed; `retryable` decides whether the pipeline tries again"""

    def __init__(self, kind: StepErrorKind, message: str,
                 retryable: Optional[bool] = None, exit_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retryable = kind in RETRYABLE_STEP_ERRORS if retryable is None else retryable
        self.exit_code = exit_code

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class JobNotFound(KeyError):
    def __init__(self, job_id: str):
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"Job {self.job_id} not found"


class PersistenceConflict(Exception):
    """Compare-and-swap lost: the stored version moved on"""

    def __init__(self, job_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Version conflict on job {job_id}: expected {expected_version}, found {actual_version}"
        )
        self.job_id = job_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class InvalidTransition(ValueError):
    pass


class OwnershipLost(Exception):
    """Another worker claimed the job while this one held it"""


class NotificationDeliveryError(Exception):
    pass
