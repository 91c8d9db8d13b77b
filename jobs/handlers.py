# jobs/handlers.py
"""
Job handlers for each job type.

A handler receives the job context, the job id, the stored payload and
a progress reporter, and returns the job result. Handlers do not touch the job row
themselves; the worker pool owns state transitions.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path

from jobs.context import JobContext
from jobs.ids import slugify
from jobs.queue import RENDER_VIDEO
from jobs.schemas import RenderJobPayload
from services.metadata_store import save_video

logger = logging.getLogger(__name__)

# (progress 0..100, stage label)
ProgressReporter = Callable[[float, str], Awaitable[None]]
Handler = Callable[[JobContext, str, dict, ProgressReporter], Awaitable[dict]]

# renderer-reported stage -> overall progress range
STAGE_RANGES = {
    "bundling": (10.0, 30.0),
    "composition": (35.0, 40.0),
    "rendering": (45.0, 85.0),
}


def map_stage_progress(stage: str, fraction: float) -> float | None:
    bounds = STAGE_RANGES.get(stage)
    if bounds is None:
        return None
    low, high = bounds
    return low + (high - low) * min(max(fraction, 0.0), 1.0)


def output_filename(city: str, epoch_ms: int | None = None) -> str:
    epoch_ms = epoch_ms if epoch_ms is not None else int(time.time() * 1000)
    return f"weather-{slugify(city)}-{epoch_ms}.mp4"


def render_props(payload: RenderJobPayload) -> dict:
    weather = payload.weather_data
    return {
        "city": weather.city,
        "temperature": weather.temperature,
        "condition": weather.condition,
        "date": weather.date,
        "imageFilename": payload.image_filename,
        "useAI": True,
        "language": payload.language,
    }


async def handle_render_video(
    ctx: JobContext,
    job_id: str,
    raw_payload: dict,
    report: ProgressReporter,
) -> dict:
    payload = RenderJobPayload.model_validate(raw_payload)
    settings = ctx.settings
    weather = payload.weather_data

    logger.info("Job %s: starting video render for %s (%s)", job_id, payload.city, payload.language)
    await report(0, "bundling")

    filename = output_filename(payload.city)
    output_path = settings.render_output_dir / filename
    await report(10, "bundling")

    async def on_stage(stage: str, fraction: float) -> None:
        mapped = map_stage_progress(stage, fraction)
        if mapped is not None:
            await report(mapped, stage)

    rendered = Path(await ctx.renderer.render(render_props(payload), output_path, on_stage))
    logger.info("Video rendered successfully: %s", filename)
    await report(85, "uploading")

    file_size = rendered.stat().st_size
    uploaded = await ctx.artifact_store.upload(
        rendered,
        f"{settings.videos_prefix}/{filename}",
        {
            "city": weather.city,
            "temperature": weather.temperature,
            "condition": weather.condition,
            "date": weather.date,
        },
    )
    await report(95, "uploading")

    async with ctx.session_factory() as db:
        await save_video(
            db,
            {
                "filename": filename,
                "url": uploaded.url,
                "city": weather.city,
                "temperature": weather.temperature,
                "condition": weather.condition,
                "weather_description": weather.description,
                "weather_date": weather.date,
                "language": payload.language,
                "file_size": file_size,
                "etag": uploaded.etag,
                "job_id": job_id,
            },
        )
        await db.commit()

    try:
        rendered.unlink()
        logger.info("Local file deleted: %s", filename)
    except OSError as exc:
        logger.warning("Could not delete local file %s: %s", rendered, exc)

    await report(100, "completed")
    return {
        "video_url": uploaded.url,
        "filename": filename,
        "etag": uploaded.etag,
        "completed_at": datetime.now(timezone.utc).isoformat(),
    }


HANDLERS: dict[str, Handler] = {
    RENDER_VIDEO: handle_render_video,
}
