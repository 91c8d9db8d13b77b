# jobs/context.py
"""
Service objects shared by the submission path, the worker pool and the
cleanup scheduler.

Everything is constructed once per process by `build_context` and handed
to its consumers, rather than reached through module globals.
`get_context` is the get-or-create accessor used by entry points.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.app.config import Settings, get_settings
from db.session import get_session_factory
from jobs.events import JobEvents
from jobs.rate_limit import CallerRateLimiter, DailyRateLimiter
from services.artifact_store import ArtifactStore, LocalArtifactStore
from services.renderer import CommandRenderer, Renderer

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    events: JobEvents
    daily_limiter: DailyRateLimiter
    caller_limiter: CallerRateLimiter
    artifact_store: ArtifactStore
    renderer: Renderer


def build_context(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    artifact_store: ArtifactStore | None = None,
    renderer: Renderer | None = None,
    events: JobEvents | None = None,
) -> JobContext:
    settings = settings or get_settings()
    return JobContext(
        settings=settings,
        session_factory=session_factory or get_session_factory(),
        events=events or JobEvents(),
        daily_limiter=DailyRateLimiter(settings.max_videos_per_day),
        caller_limiter=CallerRateLimiter(
            settings.caller_daily_limit,
            sweep_interval_seconds=settings.caller_sweep_interval_seconds,
        ),
        artifact_store=artifact_store
        or LocalArtifactStore(settings.artifact_dir, settings.artifact_base_url),
        renderer=renderer or CommandRenderer(settings.render_command, settings.render_work_dir),
    )


_context: JobContext | None = None


def get_context() -> JobContext:
    global _context
    if _context is None:
        _context = build_context()
        logger.info("Job context initialized")
    return _context
