"""
Admission decisions for new render jobs.

The gateway is the only component that talks to submitters. It authorizes
the request, validates the body, picks the job id and hands the job to the
worker pool. An accepted job is admitted, not guaranteed to succeed.
"""

import hmac
import logging
import uuid
from typing import Any, Callable, Optional

from pydantic import ValidationError

from render_worker.errors import InvalidPayload, Unauthorized
from render_worker.models.job import JobRecord, VideoRequest

logger = logging.getLogger(__name__)

Authorizer = Callable[[Optional[str]], bool]


class ApiKeyAuthorizer:
    """Constant-time comparison against a shared key. No key configured means open access."""

    def __init__(self, api_key: Optional[str]):
        self.api_key = api_key
        if not api_key:
            logger.warning("API_KEY is not set; job submission is unauthenticated")

    def __call__(self, presented: Optional[str]) -> bool:
        if not self.api_key:
            return True
        if not presented:
            return False
        return hmac.compare_digest(presented.encode(), self.api_key.encode())


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "body"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


class SubmissionGateway:
    def __init__(self, pool, authorizer: Authorizer):
        self.pool = pool
        self.authorizer = authorizer

    def submit(self, body: Any, api_key: Optional[str] = None) -> JobRecord:
        """
        Admit a job or raise an AdmissionError.

        Raises Unauthorized, InvalidPayload, DuplicateJob or QueueFull.
        """
        if not self.authorizer(api_key):
            raise Unauthorized("Invalid or missing API key")

        if not isinstance(body, dict):
            raise InvalidPayload("Request body must be a JSON object")
        try:
            request = VideoRequest.model_validate(body)
        except ValidationError as e:
            raise InvalidPayload(_format_validation_error(e)) from e

        job_id = request.sutra_id or uuid.uuid4().hex
        payload = request.model_dump(mode="json")
        payload["sutra_id"] = job_id

        job = self.pool.enqueue(JobRecord(job_id=job_id, payload=payload))
        logger.info(f"Accepted video creation request for sutra_id: {job_id}")
        return job


# Global gateway instance for app
gateway: Optional[SubmissionGateway] = None


def init_gateway(pool, api_key: Optional[str]):
    global gateway
    gateway = SubmissionGateway(pool, ApiKeyAuthorizer(api_key))


def shutdown_gateway():
    global gateway
    gateway = None


def get_gateway() -> Optional[SubmissionGateway]:
    return gateway
