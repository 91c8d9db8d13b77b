# jobs/submission.py
"""
Submission path: admission checks, then enqueue.

Per-caller and daily quotas are checked before anything is written;
counters are only incremented when a new job was actually created.
The whole submission runs in the caller's transaction, so the job is
visible to workers exactly when the counters are.
"""
from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from jobs.context import JobContext
from jobs.errors import AdmissionError
from jobs.queue import RENDER_VIDEO, enqueue
from jobs.schemas import RenderJobPayload, WeatherData
from services.backgrounds import resolve_background
from services.observability import log_event
from services.weather import WeatherReport, fetch_weather

logger = logging.getLogger(__name__)


async def check_admission(ctx: JobContext, db: AsyncSession, caller: str | None = None) -> None:
    """Raise AdmissionError when the caller's or the global quota is spent."""
    if caller is not None:
        status = await ctx.caller_limiter.check(db, caller)
        if not status.is_allowed:
            logger.warning("Caller %s over daily limit (%d/%d)", caller, status.current_count, status.limit)
            raise AdmissionError("caller", status.limit, status.current_count, status.resets_at)

    status = await ctx.daily_limiter.check_daily_limit(db)
    if not status.is_allowed:
        logger.warning("Daily video limit reached (%d/%d)", status.current_count, status.limit)
        raise AdmissionError("daily", status.limit, status.current_count, status.resets_at)


async def submit_render_job(
    ctx: JobContext,
    db: AsyncSession,
    payload: dict,
    *,
    caller: str | None = None,
) -> str:
    """Admit and persist a render job. Returns the job id; commit is the caller's job."""
    await check_admission(ctx, db, caller)

    subject = str(payload.get("city") or "job")
    job, created = await enqueue(
        db,
        payload,
        subject=subject,
        job_type=RENDER_VIDEO,
        max_attempts=ctx.settings.queue_max_attempts,
    )
    if not created:
        return job.id

    count = await ctx.daily_limiter.increment_daily_counter(db)
    if caller is not None:
        await ctx.caller_limiter.hit(db, caller)
        await ctx.caller_limiter.maybe_sweep(db)

    await log_event(
        db,
        "job_submitted",
        source="api",
        message=f"Render job queued for {subject}",
        metadata={"daily_count": count, "limit": ctx.daily_limiter.limit},
        job_id=job.id,
    )
    return job.id


async def prepare_render_payload(
    ctx: JobContext,
    db: AsyncSession,
    city: str,
    *,
    language: str = "en",
    weather: WeatherReport | None = None,
    image_filename: str | None = None,
) -> dict:
    """
    Build a complete render payload for `city`: current weather, plus a
    background image resolved (reused or generated) for its condition.
    """
    weather = weather or await fetch_weather(city)
    if image_filename is None:
        background = await resolve_background(
            db,
            ctx.artifact_store,
            city,
            weather.condition,
            prefix=ctx.settings.backgrounds_prefix,
            limit=ctx.settings.max_image_generations_per_day,
        )
        image_filename = background.filename

    payload = RenderJobPayload(
        city=city,
        weather_data=WeatherData(**weather.to_payload()),
        image_filename=image_filename,
        language=language,
    )
    return payload.model_dump()
