# jobs/queue.py
"""
Durable job queue on PostgreSQL.

State transitions are plain functions over `Job` rows so the
claim / progress / completion / retry rules stay in one place.
The async functions below load and lock rows, apply a transition
and flush; committing is the caller's job.
"""
from __future__ import annotations

import logging
import random
import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobs.ids import make_job_id
from models.job import (
    ACTIVE,
    COMPLETED,
    FAILED,
    PENDING,
    TERMINAL_STATES,
    Job,
)

logger = logging.getLogger(__name__)

RENDER_VIDEO = "render_video"

# pg_advisory_xact_lock id serializing claims across worker processes
CLAIM_LOCK_ID = 734501


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def backoff_delay(
    attempts: int,
    base_seconds: float,
    jitter: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff: base * 2^(attempts-1), spread by +/- jitter."""
    delay = base_seconds * (2 ** max(attempts - 1, 0))
    if jitter:
        delay *= (rng or random).uniform(1.0 - jitter, 1.0 + jitter)
    return max(delay, 0.0)


# ─────────────────────────────────────────────
# transitions
# ─────────────────────────────────────────────

def mark_claimed(job: Job, worker_id: str, now: datetime) -> None:
    job.status = ACTIVE
    job.locked_by = worker_id
    job.claimed_at = now
    job.heartbeat_at = now
    job.attempts = (job.attempts or 0) + 1
    if job.started_at is None:
        job.started_at = now
    if job.progress is None:
        job.progress = 0.0
    job.stage = "started"


def apply_progress(job: Job, progress: float, stage: str | None, now: datetime) -> float:
    """
    Record a progress report and return the stored value.
    Progress is a high-water mark: lower reports (e.g. from a retry)
    never move it backwards.
    """
    value = min(max(float(progress), 0.0), 100.0)
    current = job.progress or 0.0
    if value > current:
        job.progress = value
    if stage:
        job.stage = stage
    job.heartbeat_at = now
    return job.progress if job.progress is not None else current


def _release(job: Job) -> None:
    job.locked_by = None
    job.heartbeat_at = None


def mark_completed(job: Job, result: dict, now: datetime) -> None:
    job.status = COMPLETED
    job.result = result
    job.progress = 100.0
    job.stage = "completed"
    job.error = None
    job.error_kind = None
    job.finished_at = now
    _release(job)


def mark_attempt_failed(
    job: Job,
    error: str,
    error_kind: str,
    now: datetime,
    retry_delay: float,
) -> bool:
    """
    Schedule a retry, or fail the job for good once attempts are used up.
    Returns True when the job went back to pending.
    """
    _release(job)
    job.last_error = error
    if job.attempts < job.max_attempts:
        job.status = PENDING
        job.run_after = now + timedelta(seconds=retry_delay)
        job.stage = "retrying"
        return True

    job.status = FAILED
    job.error = error
    job.error_kind = error_kind
    job.finished_at = now
    return False


# ─────────────────────────────────────────────
# submission / reads
# ─────────────────────────────────────────────

async def enqueue(
    db: AsyncSession,
    payload: dict,
    *,
    subject: str,
    job_type: str = RENDER_VIDEO,
    max_attempts: int = 2,
    now: datetime | None = None,
) -> tuple[Job, bool]:
    """
    Persist a new pending job. Returns (job, created).

    Ids are derived from subject + submission time, so two submissions
    for the same subject within the same millisecond collapse onto the
    first job instead of violating the primary key.
    """
    now = now or utcnow()
    job_id = make_job_id(subject, now)

    existing = await db.get(Job, job_id)
    if existing is not None:
        logger.info("Submission collapsed onto existing job %s", job_id)
        return existing, False

    job = Job(
        id=job_id,
        job_type=job_type,
        status=PENDING,
        payload=payload,
        progress=0.0,
        attempts=0,
        max_attempts=max_attempts,
        run_after=now,
        created_at=now,
        trace_id=uuid.uuid4(),
    )
    db.add(job)
    await db.flush()
    logger.info("Enqueued job %s [%s] trace=%s", job.id, job.job_type, job.trace_id)
    return job, True


async def get_job(db: AsyncSession, job_id: str) -> Job | None:
    stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
    return (await db.execute(stmt)).scalar_one_or_none()


# ─────────────────────────────────────────────
# worker side
# ─────────────────────────────────────────────

async def dequeue(
    db: AsyncSession,
    worker_id: str,
    *,
    concurrency: int,
    rate_max: int,
    rate_window_seconds: float,
    stall_timeout: float,
    job_types: list[str] | None = None,
    now: datetime | None = None,
) -> Job | None:
    """
    Claims the next runnable job, or returns None when nothing is
    runnable or the global concurrency / start-rate budget is spent.

    The advisory lock is transaction-scoped: it is held until the
    caller commits, which makes the count-then-claim step atomic
    across worker processes.
    """
    now = now or utcnow()
    await db.execute(text("SELECT pg_advisory_xact_lock(:lock_id)"), {"lock_id": CLAIM_LOCK_ID})

    live_cutoff = now - timedelta(seconds=stall_timeout)
    active = await db.scalar(
        select(func.count())
        .select_from(Job)
        .where(Job.status == ACTIVE, Job.heartbeat_at > live_cutoff)
    )
    if (active or 0) >= concurrency:
        return None

    window_start = now - timedelta(seconds=rate_window_seconds)
    started = await db.scalar(
        select(func.count()).select_from(Job).where(Job.claimed_at > window_start)
    )
    if (started or 0) >= rate_max:
        return None

    stmt = (
        select(Job)
        .where(Job.status == PENDING, Job.run_after <= now)
        .order_by(Job.run_after.asc(), Job.created_at.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    if job_types:
        stmt = stmt.where(Job.job_type.in_(job_types))

    job = (await db.execute(stmt)).scalar_one_or_none()
    if job is None:
        return None

    mark_claimed(job, worker_id, now)
    await db.flush()

    logger.info(
        "Worker %s claimed job %s [%s] attempt %d/%d trace=%s",
        worker_id,
        job.id,
        job.job_type,
        job.attempts,
        job.max_attempts,
        job.trace_id,
    )
    return job


async def _load_owned(db: AsyncSession, job_id: str, worker_id: str) -> Job | None:
    stmt = (
        select(Job)
        .where(Job.id == job_id, Job.status == ACTIVE, Job.locked_by == worker_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def heartbeat(
    db: AsyncSession,
    job_id: str,
    worker_id: str,
    now: datetime | None = None,
) -> bool:
    """Touch the heartbeat of an owned job. False if ownership was lost."""
    result = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == ACTIVE, Job.locked_by == worker_id)
        .values(heartbeat_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def record_progress(
    db: AsyncSession,
    job_id: str,
    worker_id: str,
    progress: float,
    stage: str | None,
    now: datetime | None = None,
) -> Job | None:
    job = await _load_owned(db, job_id, worker_id)
    if job is None:
        return None
    apply_progress(job, progress, stage, now or utcnow())
    await db.flush()
    return job


async def complete_job(
    db: AsyncSession,
    job_id: str,
    worker_id: str,
    result: dict,
    now: datetime | None = None,
) -> Job | None:
    job = await _load_owned(db, job_id, worker_id)
    if job is None:
        logger.warning("Job %s finished on %s after ownership was lost", job_id, worker_id)
        return None
    mark_completed(job, result, now or utcnow())
    await db.flush()
    logger.info("Job %s completed (attempt %d)", job_id, job.attempts)
    return job


async def fail_job(
    db: AsyncSession,
    job_id: str,
    worker_id: str,
    error: str,
    error_kind: str,
    *,
    backoff_base: float,
    jitter: float = 0.0,
    now: datetime | None = None,
) -> Job | None:
    """
    Schedules retry with backoff or marks permanently failed.
    No sleeping here.
    """
    job = await _load_owned(db, job_id, worker_id)
    if job is None:
        logger.warning("Job %s failed on %s after ownership was lost", job_id, worker_id)
        return None

    now = now or utcnow()
    delay = backoff_delay(job.attempts, backoff_base, jitter)
    if mark_attempt_failed(job, error, error_kind, now, delay):
        logger.warning(
            "Job %s retry %d/%d in %.0fs trace=%s",
            job.id,
            job.attempts,
            job.max_attempts,
            delay,
            job.trace_id,
        )
    else:
        logger.error(
            "Job %s permanently failed after %d attempts trace=%s",
            job.id,
            job.attempts,
            job.trace_id,
        )
    await db.flush()
    return job


async def recover_stalled(
    db: AsyncSession,
    *,
    stall_timeout: float,
    backoff_base: float,
    jitter: float = 0.0,
    now: datetime | None = None,
) -> list[Job]:
    """
    Return active jobs whose heartbeat is older than the stall timeout
    to pending (or failed, when out of attempts). The stalled attempt
    counts like a failed one.
    """
    now = now or utcnow()
    cutoff = now - timedelta(seconds=stall_timeout)
    stmt = (
        select(Job)
        .where(Job.status == ACTIVE, Job.heartbeat_at < cutoff)
        .with_for_update(skip_locked=True)
    )
    jobs = list((await db.execute(stmt)).scalars().all())

    for job in jobs:
        owner = job.locked_by
        delay = backoff_delay(job.attempts, backoff_base, jitter)
        retrying = mark_attempt_failed(
            job,
            f"Stalled: no heartbeat from {owner} for {stall_timeout:g}s",
            "stalled",
            now,
            delay,
        )
        logger.warning(
            "Job %s stalled on %s (attempt %d/%d), %s",
            job.id,
            owner,
            job.attempts,
            job.max_attempts,
            "re-queued" if retrying else "failed",
        )

    if jobs:
        await db.flush()
    return jobs


# ─────────────────────────────────────────────
# retention
# ─────────────────────────────────────────────

def expired_job_ids(
    rows: Iterable[tuple[str, str, datetime | None]],
    *,
    now: datetime,
    retention_days: int,
    keep_counts: dict[str, int],
    hard_cap: int | None = None,
) -> list[str]:
    """
    Select terminal jobs eligible for deletion.

    A job survives when it is among the `keep_counts[status]` most recent
    jobs in its terminal state, or when it finished within the retention
    window, whichever keeps more. On top of that, terminal jobs beyond
    `hard_cap` are evicted oldest first regardless of age.

    `rows` are (id, status, finished_at) tuples.
    """
    cutoff = now - timedelta(days=retention_days)
    floor = datetime.min.replace(tzinfo=timezone.utc)

    def recency(row: tuple[str, str, datetime | None]) -> tuple[datetime, str]:
        return (row[2] or floor, row[0])

    ordered = sorted(
        (r for r in rows if r[1] in TERMINAL_STATES), key=recency, reverse=True
    )

    survivors: list[str] = []
    expired: list[str] = []
    seen: dict[str, int] = {}
    for job_id, status, finished_at in ordered:
        rank = seen.get(status, 0)
        seen[status] = rank + 1
        recent = finished_at is not None and finished_at >= cutoff
        if rank < keep_counts.get(status, 0) or recent:
            survivors.append(job_id)
        else:
            expired.append(job_id)

    if hard_cap is not None and len(survivors) > hard_cap:
        expired.extend(survivors[hard_cap:])
    return expired


async def purge_terminal_jobs(
    db: AsyncSession,
    *,
    retention_days: int,
    keep_counts: dict[str, int],
    hard_cap: int | None = None,
    now: datetime | None = None,
    batch_size: int = 500,
) -> int:
    rows = (
        await db.execute(
            select(Job.id, Job.status, Job.finished_at).where(Job.status.in_(TERMINAL_STATES))
        )
    ).all()
    doomed = expired_job_ids(
        [tuple(r) for r in rows],
        now=now or utcnow(),
        retention_days=retention_days,
        keep_counts=keep_counts,
        hard_cap=hard_cap,
    )

    deleted = 0
    for batch in _chunks(doomed, batch_size):
        result = await db.execute(
            delete(Job)
            .where(Job.id.in_(batch), Job.status.in_(TERMINAL_STATES))
            .execution_options(synchronize_session=False)
        )
        deleted += result.rowcount or 0

    logger.info("Purged %d of %d terminal jobs", deleted, len(rows))
    return deleted


def _chunks(items: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]
