# jobs/cleanup.py
"""
Recurring cleanup of old videos and old job records.

Runs on APScheduler inside the API or worker process. Each run takes a
PostgreSQL advisory lock so only one instance does the work when several
processes carry a scheduler; the others skip.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobs.context import JobContext
from jobs.queue import purge_terminal_jobs
from services.artifact_store import ArtifactStore
from services.metadata_store import delete_videos
from services.observability import log_event

logger = logging.getLogger(__name__)

# Advisory lock IDs, one per cleanup job
ARTIFACT_CLEANUP_LOCK_ID = 734502
JOB_CLEANUP_LOCK_ID = 734503

ARTIFACT_CLEANUP_JOB = "cleanup-videos"
JOB_CLEANUP_JOB = "cleanup-jobs"


@asynccontextmanager
async def advisory_lock(
    session_factory: async_sessionmaker[AsyncSession],
    lock_id: int,
) -> AsyncIterator[bool]:
    """
    Hold a session-level advisory lock for the duration of the context.
    Yields False immediately when another process holds it.
    """
    async with session_factory() as session:
        acquired = await session.scalar(
            text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": lock_id}
        )
        if not acquired:
            yield False
            return

        try:
            yield True
        finally:
            await session.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": lock_id}
            )
            await session.commit()


@dataclass
class CleanupReport:
    scanned: int = 0
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


async def cleanup_old_artifacts(
    store: ArtifactStore,
    *,
    retention_days: int,
    prefix: str = "",
    now: datetime | None = None,
) -> CleanupReport:
    """Delete artifacts uploaded before the retention window. Per-item failures are logged."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=retention_days)
    report = CleanupReport()

    for artifact in await store.list(prefix):
        report.scanned += 1
        if artifact.uploaded_at >= cutoff:
            continue
        try:
            await store.delete(artifact.name)
        except Exception as exc:
            logger.error("Failed to delete %s: %s", artifact.name, exc)
            report.failed.append(artifact.name)
            continue
        report.deleted.append(artifact.name)
        logger.info("Deleted old artifact: %s", artifact.name)

    logger.info(
        "Artifact cleanup complete: %d deleted, %d failed, %d scanned",
        len(report.deleted),
        len(report.failed),
        report.scanned,
    )
    return report


async def cleanup_old_jobs(
    db: AsyncSession,
    *,
    retention_days: int,
    keep_counts: dict[str, int],
    hard_cap: int | None = None,
    now: datetime | None = None,
) -> int:
    return await purge_terminal_jobs(
        db,
        retention_days=retention_days,
        keep_counts=keep_counts,
        hard_cap=hard_cap,
        now=now,
    )


async def run_artifact_cleanup(ctx: JobContext) -> CleanupReport | None:
    """Returns None when skipped (lock held elsewhere) or on error."""
    settings = ctx.settings
    async with advisory_lock(ctx.session_factory, ARTIFACT_CLEANUP_LOCK_ID) as acquired:
        if not acquired:
            logger.info("[cleanup] Videos: skipped (another instance is running)")
            return None

        logger.info("[cleanup] Videos: starting")
        try:
            report = await cleanup_old_artifacts(
                ctx.artifact_store,
                retention_days=settings.artifact_retention_days,
                prefix=settings.videos_prefix,
            )
            async with ctx.session_factory() as db:
                filenames = [name.rsplit("/", 1)[-1] for name in report.deleted]
                removed = await delete_videos(db, filenames)
                await log_event(
                    db,
                    "artifact_cleanup",
                    "warning" if report.failed else "info",
                    source="scheduler",
                    message=f"{len(report.deleted)} videos deleted",
                    metadata={
                        "scanned": report.scanned,
                        "deleted": len(report.deleted),
                        "failed": report.failed,
                        "catalog_rows_removed": removed,
                    },
                )
                await db.commit()
            return report
        except Exception as exc:
            logger.exception("[cleanup] Videos: failed with error: %s", exc)
            return None


async def run_job_cleanup(ctx: JobContext) -> int | None:
    settings = ctx.settings
    async with advisory_lock(ctx.session_factory, JOB_CLEANUP_LOCK_ID) as acquired:
        if not acquired:
            logger.info("[cleanup] Jobs: skipped (another instance is running)")
            return None

        logger.info("[cleanup] Jobs: starting")
        try:
            async with ctx.session_factory() as db:
                deleted = await cleanup_old_jobs(
                    db,
                    retention_days=settings.job_retention_days,
                    keep_counts=settings.retention_keep_counts,
                    hard_cap=settings.job_hard_cap,
                )
                await log_event(
                    db,
                    "job_cleanup",
                    source="scheduler",
                    message=f"{deleted} job records deleted",
                    metadata={"deleted": deleted},
                )
                await db.commit()
            return deleted
        except Exception as exc:
            logger.exception("[cleanup] Jobs: failed with error: %s", exc)
            return None


class CleanupScheduler:
    """Registers the two daily cleanup triggers on an APScheduler instance."""

    def __init__(self, ctx: JobContext, scheduler: AsyncIOScheduler | None = None) -> None:
        self.ctx = ctx
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)

    @property
    def scheduler(self) -> AsyncIOScheduler:
        return self._scheduler

    def _specs(self) -> list[tuple[str, str, object, int]]:
        settings = self.ctx.settings
        return [
            (ARTIFACT_CLEANUP_JOB, "Old video cleanup", run_artifact_cleanup, settings.artifact_cleanup_hour),
            (JOB_CLEANUP_JOB, "Old job record cleanup", run_job_cleanup, settings.job_cleanup_hour),
        ]

    def register(self) -> list[str]:
        """Add any trigger not registered yet. Returns the ids added."""
        added: list[str] = []
        for job_id, name, func, hour in self._specs():
            if self._scheduler.get_job(job_id) is not None:
                logger.debug("[cleanup] Trigger %s already registered", job_id)
                continue
            self._scheduler.add_job(
                func,
                trigger=CronTrigger(hour=hour, minute=0, timezone=timezone.utc),
                args=[self.ctx],
                id=job_id,
                name=name,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
            added.append(job_id)
        return added

    def start(self) -> None:
        if not self.ctx.settings.scheduler_enabled:
            logger.info("[cleanup] Scheduler disabled via SCHEDULER_ENABLED=false")
            return
        self.register()
        if not self._scheduler.running:
            self._scheduler.start()
        settings = self.ctx.settings
        logger.info(
            "[cleanup] Scheduler started: videos at %02d:00 UTC, jobs at %02d:00 UTC",
            settings.artifact_cleanup_hour,
            settings.job_cleanup_hour,
        )

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("[cleanup] Scheduler stopped")

    async def trigger_now(self, job_id: str):
        """Run a cleanup immediately. Returns None for unknown ids."""
        if job_id == ARTIFACT_CLEANUP_JOB:
            return await run_artifact_cleanup(self.ctx)
        if job_id == JOB_CLEANUP_JOB:
            return await run_job_cleanup(self.ctx)
        return None
