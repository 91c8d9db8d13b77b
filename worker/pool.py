# worker/pool.py
"""
Worker pool: claims pending jobs and runs them concurrently.

Each claim, progress report and resolution runs in its own short
transaction, so no DB transaction is held across a render. The global
concurrency and start-rate budgets are enforced inside `dequeue`; the
local slot count only keeps one process from hoarding work.
"""
from __future__ import annotations

import asyncio
import logging
import platform
import uuid
from collections.abc import Mapping
from dataclasses import dataclass

from jobs.context import JobContext
from jobs.errors import (
    JobOwnershipLostError,
    RenderTimeoutError,
    classify_error,
    describe_error,
)
from jobs.handlers import HANDLERS, Handler, ProgressReporter
from jobs.queue import (
    complete_job,
    dequeue,
    fail_job,
    heartbeat,
    recover_stalled,
    record_progress,
    utcnow,
)
from models.job import FAILED, PENDING, Job
from services.observability import log_event

logger = logging.getLogger(__name__)


def make_worker_id() -> str:
    return f"worker-{platform.node()}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    job_type: str
    payload: dict
    attempts: int
    max_attempts: int


class WorkerPool:
    def __init__(
        self,
        ctx: JobContext,
        *,
        worker_id: str | None = None,
        handlers: Mapping[str, Handler] | None = None,
    ) -> None:
        self.ctx = ctx
        self.settings = ctx.settings
        self.worker_id = worker_id or make_worker_id()
        self.handlers = dict(HANDLERS if handlers is None else handlers)
        self._tasks: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    @property
    def is_stopping(self) -> bool:
        return self._stopping.is_set()

    # ─────────────────────────────────────────────
    # main loop
    # ─────────────────────────────────────────────

    async def run(self) -> None:
        settings = self.settings
        logger.info(
            "Worker %s starting (concurrency=%d, rate=%d/%.1fs, poll=%.1fs)",
            self.worker_id,
            settings.worker_concurrency,
            settings.worker_rate_max,
            settings.worker_rate_window_seconds,
            settings.worker_poll_interval,
        )
        while not self._stopping.is_set():
            try:
                await self.recover_stalled()
                await self.fill_slots()
            except Exception as exc:
                logger.exception("Worker loop error: %s", exc)

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=settings.worker_poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Worker %s loop exited", self.worker_id)

    async def stop(self, grace_seconds: float | None = None) -> None:
        """
        Stop claiming work and wait for running jobs. Jobs still running
        after the grace period are cancelled; stall detection returns
        them to the queue later.
        """
        grace = self.settings.worker_shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self._stopping.set()
        if not self._tasks:
            return

        logger.info("Worker %s waiting up to %.0fs for %d jobs", self.worker_id, grace, len(self._tasks))
        _, pending = await asyncio.wait(set(self._tasks), timeout=grace)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Worker %s cancelled %d unfinished jobs", self.worker_id, len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ─────────────────────────────────────────────
    # claiming
    # ─────────────────────────────────────────────

    async def recover_stalled(self) -> list[Job]:
        settings = self.settings
        async with self.ctx.session_factory() as db:
            jobs = await recover_stalled(
                db,
                stall_timeout=settings.worker_stall_timeout,
                backoff_base=settings.queue_backoff_base_seconds,
                jitter=settings.queue_backoff_jitter,
            )
            for job in jobs:
                failed = job.status == FAILED
                await log_event(
                    db,
                    "job_failed" if failed else "job_stalled",
                    "error" if failed else "warning",
                    source="worker",
                    message=job.error if failed else job.last_error,
                    metadata={"error_kind": "stalled", "attempts": job.attempts},
                    job_id=job.id,
                )
            await db.commit()

        for job in jobs:
            if job.status == PENDING:
                self.ctx.events.emit_progress(
                    job.id,
                    PENDING,
                    job.progress or 0.0,
                    f"Attempt {job.attempts}/{job.max_attempts} stalled. Retrying...",
                )
            else:
                self.ctx.events.emit_failed(job.id, job.error or "Job stalled")
        return jobs

    async def fill_slots(self) -> int:
        """Claim jobs into free local slots. Returns how many were started."""
        started = 0
        while len(self._tasks) < self.settings.worker_concurrency and not self._stopping.is_set():
            claimed = await self._claim_next()
            if claimed is None:
                break
            task = asyncio.create_task(self._execute(claimed), name=f"job:{claimed.id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started += 1
        return started

    async def _claim_next(self) -> ClaimedJob | None:
        """
        Claim one job and announce its start. On a retry the start event
        carries the stored high-water progress rather than 0, so the
        progress a subscriber observes never goes backwards.
        """
        settings = self.settings
        async with self.ctx.session_factory() as db:
            job = await dequeue(
                db,
                self.worker_id,
                concurrency=settings.worker_concurrency,
                rate_max=settings.worker_rate_max,
                rate_window_seconds=settings.worker_rate_window_seconds,
                stall_timeout=settings.worker_stall_timeout,
                job_types=list(self.handlers) or None,
            )
            if job is None:
                await db.commit()
                return None
            claimed = ClaimedJob(
                id=job.id,
                job_type=job.job_type,
                payload=dict(job.payload or {}),
                attempts=job.attempts,
                max_attempts=job.max_attempts,
            )
            progress = job.progress or 0.0
            await db.commit()

        self.ctx.events.emit_progress(claimed.id, "active", progress, "Starting video render...")
        return claimed

    # ─────────────────────────────────────────────
    # execution
    # ─────────────────────────────────────────────

    def _reporter(self, job_id: str) -> ProgressReporter:
        async def report(progress: float, stage: str) -> None:
            async with self.ctx.session_factory() as db:
                job = await record_progress(db, job_id, self.worker_id, progress, stage)
                stored = job.progress if job is not None else None
                await db.commit()
            if stored is None:
                raise JobOwnershipLostError(job_id)
            self.ctx.events.emit_progress(job_id, "active", stored, f"{stage}: {round(stored)}%")

        return report

    async def _heartbeat_loop(self, job_id: str) -> None:
        interval = self.settings.worker_heartbeat_interval
        while True:
            await asyncio.sleep(interval)
            try:
                async with self.ctx.session_factory() as db:
                    owned = await heartbeat(db, job_id, self.worker_id)
                    await db.commit()
            except Exception as exc:
                logger.warning("Heartbeat for job %s failed: %s", job_id, exc)
                continue
            if not owned:
                logger.warning("Job %s is no longer owned by %s", job_id, self.worker_id)
                return

    async def _execute(self, claimed: ClaimedJob) -> None:
        logger.info(
            "Processing job %s [%s] attempt %d/%d",
            claimed.id,
            claimed.job_type,
            claimed.attempts,
            claimed.max_attempts,
        )
        beat = asyncio.create_task(self._heartbeat_loop(claimed.id))
        try:
            handler = self.handlers.get(claimed.job_type)
            if handler is None:
                raise ValueError(f"Unknown job type: {claimed.job_type}")
            timeout = self.settings.render_timeout_seconds
            try:
                result = await asyncio.wait_for(
                    handler(self.ctx, claimed.id, claimed.payload, self._reporter(claimed.id)),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as exc:
                raise RenderTimeoutError(timeout) from exc
        except JobOwnershipLostError:
            logger.warning("Abandoning job %s: ownership lost", claimed.id)
        except Exception as exc:
            await self._record_failure(claimed, exc)
        else:
            await self._record_success(claimed, result)
        finally:
            beat.cancel()
            await asyncio.gather(beat, return_exceptions=True)

    async def _record_success(self, claimed: ClaimedJob, result: dict) -> None:
        try:
            async with self.ctx.session_factory() as db:
                job = await complete_job(db, claimed.id, self.worker_id, result)
                await db.commit()
        except Exception as exc:
            logger.exception("Could not record completion of job %s: %s", claimed.id, exc)
            return
        if job is not None:
            logger.info("Job %s completed successfully", claimed.id)
            self.ctx.events.emit_completed(claimed.id, result)

    async def _record_failure(self, claimed: ClaimedJob, exc: Exception) -> None:
        message = describe_error(exc)
        kind = classify_error(exc)
        logger.error(
            "Job %s attempt %d/%d failed (%s): %s",
            claimed.id,
            claimed.attempts,
            claimed.max_attempts,
            kind,
            message,
            exc_info=exc,
        )
        settings = self.settings
        try:
            async with self.ctx.session_factory() as db:
                job = await fail_job(
                    db,
                    claimed.id,
                    self.worker_id,
                    message,
                    kind,
                    backoff_base=settings.queue_backoff_base_seconds,
                    jitter=settings.queue_backoff_jitter,
                )
                if job is None:
                    await db.commit()
                    return
                if job.status == FAILED:
                    await log_event(
                        db,
                        "job_failed",
                        "error",
                        source="worker",
                        message=message,
                        metadata={
                            "job_type": claimed.job_type,
                            "error_kind": kind,
                            "attempts": job.attempts,
                        },
                        job_id=claimed.id,
                    )
                status, progress, run_after = job.status, job.progress or 0.0, job.run_after
                await db.commit()
        except Exception as record_exc:
            logger.exception("Could not record failure of job %s: %s", claimed.id, record_exc)
            return

        if status == PENDING:
            delay = max((run_after - utcnow()).total_seconds(), 0.0)
            self.ctx.events.emit_progress(
                claimed.id,
                PENDING,
                progress,
                f"Attempt {claimed.attempts}/{claimed.max_attempts} failed: {message}. "
                f"Retrying in {delay:.0f}s",
            )
        else:
            self.ctx.events.emit_failed(claimed.id, message)
