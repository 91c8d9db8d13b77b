# jobs/errors.py
"""
Exception types for the job core, plus the coarse error
classification recorded on failed jobs.
"""
from __future__ import annotations

import asyncio
from datetime import datetime

import httpx
from pydantic import ValidationError

MAX_ERROR_LENGTH = 500


class JobQueueError(Exception):
    """Base class for job-core errors."""


class JobNotFoundError(JobQueueError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobOwnershipLostError(JobQueueError):
    """Raised inside a worker when another process has reclaimed its job."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} is no longer owned by this worker")
        self.job_id = job_id


class AdmissionError(JobQueueError):
    """A submission was rejected by the daily or per-caller quota."""

    def __init__(
        self,
        scope: str,
        limit: int,
        current: int,
        resets_at: datetime,
    ) -> None:
        super().__init__(
            f"{scope} limit reached ({current}/{limit}), resets at {resets_at.isoformat()}"
        )
        self.scope = scope
        self.limit = limit
        self.current = current
        self.resets_at = resets_at


class GenerationLimitError(JobQueueError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"Daily image generation limit reached ({limit})")
        self.limit = limit


class RenderError(JobQueueError):
    pass


class RenderTimeoutError(RenderError):
    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Render exceeded {timeout_seconds:g}s timeout")
        self.timeout_seconds = timeout_seconds


def classify_error(exc: BaseException) -> str:
    """Map an execution failure to a coarse kind stored next to the message."""
    if isinstance(exc, (RenderTimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return "timeout"
    if isinstance(exc, GenerationLimitError):
        return "quota"
    if isinstance(exc, RenderError):
        return "render"
    if isinstance(exc, (ValidationError, KeyError, ValueError, TypeError, FileNotFoundError)):
        return "invalid_payload"
    if isinstance(exc, (httpx.HTTPError, ConnectionError)):
        return "network"
    return "internal"


def describe_error(exc: BaseException) -> str:
    """Single-line, user-presentable message. Never includes a traceback."""
    text = str(exc).strip().splitlines()[0] if str(exc).strip() else ""
    message = f"{type(exc).__name__}: {text}" if text else type(exc).__name__
    if len(message) > MAX_ERROR_LENGTH:
        message = message[: MAX_ERROR_LENGTH - 3] + "..."
    return message
