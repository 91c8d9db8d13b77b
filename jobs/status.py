# jobs/status.py
"""
Read-only job lookups, always served from the jobs table.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobs.errors import JobNotFoundError
from jobs.queue import get_job
from models.job import ACTIVE, COMPLETED, FAILED, JOB_STATES, PENDING, Job

logger = logging.getLogger(__name__)

# external name for pending jobs
STATUS_ALIASES = {"waiting": PENDING}

MIXED_GROUP_SIZE = 3


class JobStatusView(BaseModel):
    id: str
    status: str
    progress: float
    stage: str | None = None
    attempts: int
    max_attempts: int
    city: str | None = None
    language: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    error_kind: str | None = None
    last_error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None


def to_status_view(job: Job) -> JobStatusView:
    payload = job.payload or {}
    return JobStatusView(
        id=job.id,
        status=job.status,
        progress=job.progress or 0.0,
        stage=job.stage,
        attempts=job.attempts or 0,
        max_attempts=job.max_attempts,
        city=payload.get("city"),
        language=payload.get("language"),
        result=job.result if job.status == COMPLETED else None,
        error=job.error if job.status == FAILED else None,
        error_kind=job.error_kind if job.status == FAILED else None,
        last_error=job.last_error if job.status in (PENDING, ACTIVE) else None,
        created_at=job.created_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
    )


async def get_job_status(db: AsyncSession, job_id: str) -> JobStatusView:
    job = await get_job(db, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return to_status_view(job)


def normalize_status(status: str | None) -> str | None:
    if status is None or status == "":
        return None
    status = STATUS_ALIASES.get(status, status)
    if status not in JOB_STATES:
        raise ValueError(f"Unknown job status: {status}")
    return status


async def _recent(db: AsyncSession, status: str, limit: int) -> list[Job]:
    if limit <= 0:
        return []
    stmt = (
        select(Job)
        .where(Job.status == status)
        .order_by(Job.created_at.desc())
        .limit(limit)
    )
    return list((await db.scalars(stmt)).all())


async def list_jobs(
    db: AsyncSession,
    status: str | None = None,
    limit: int = 10,
) -> list[JobStatusView]:
    """
    Jobs newest first. Without a filter, returns a mix: a few active and
    waiting jobs first, then recent completed ones, then a few failed.
    """
    limit = max(1, min(limit, 100))
    status = normalize_status(status)
    if status is not None:
        jobs = await _recent(db, status, limit)
    else:
        jobs = [
            *await _recent(db, ACTIVE, MIXED_GROUP_SIZE),
            *await _recent(db, PENDING, MIXED_GROUP_SIZE),
            *await _recent(db, COMPLETED, max(limit - 4, 1)),
            *await _recent(db, FAILED, MIXED_GROUP_SIZE),
        ]
    return [to_status_view(job) for job in jobs[:limit]]
