# api/app/routes/rate_limit.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.dependencies import get_job_context, get_session
from api.app.schemas.rate_limit import (
    DailyCount,
    GenerationLimitInfo,
    RateLimitStatus,
    ResetsIn,
)
from jobs.context import JobContext
from services.generation_limit import get_limit_info
from services.observability import log_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rate-limit", tags=["rate-limit"])


@router.get("", response_model=RateLimitStatus)
async def rate_limit_status(
    ctx: JobContext = Depends(get_job_context),
    db: AsyncSession = Depends(get_session),
):
    limit_check = await ctx.daily_limiter.check_daily_limit(db)
    until_reset = await ctx.daily_limiter.get_time_until_reset(db)
    hours, rest = divmod(int(until_reset.total_seconds()), 3600)
    minutes, seconds = divmod(rest, 60)
    return RateLimitStatus(
        limit=limit_check.limit,
        current=limit_check.current_count,
        remaining=limit_check.remaining,
        is_allowed=limit_check.is_allowed,
        resets_at=limit_check.resets_at,
        resets_in=ResetsIn(hours=hours, minutes=minutes, seconds=seconds),
    )


@router.get("/current", response_model=DailyCount)
async def current_count(
    ctx: JobContext = Depends(get_job_context),
    db: AsyncSession = Depends(get_session),
):
    return DailyCount(count=await ctx.daily_limiter.get_current_daily_count(db))


@router.get("/generations", response_model=GenerationLimitInfo)
async def generation_limit(
    ctx: JobContext = Depends(get_job_context),
    db: AsyncSession = Depends(get_session),
):
    return GenerationLimitInfo(
        **await get_limit_info(db, limit=ctx.settings.max_image_generations_per_day)
    )


# TODO: protect with admin auth once an admin identity exists
@router.post("/reset")
async def reset_rate_limit(
    ctx: JobContext = Depends(get_job_context),
    db: AsyncSession = Depends(get_session),
):
    await ctx.daily_limiter.reset_daily_counter(db)
    await log_event(db, "daily_limit_reset", "warning", source="api", message="Daily counter reset")
    await db.commit()
    return {"success": True, "message": "Daily counter has been reset"}
