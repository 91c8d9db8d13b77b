# services/generation_limit.py
"""
Daily image-generation quota.

Tracks generated vs. reused background images per UTC day. Only true
generations count against the quota. Rows are keyed by date, so a new
day starts from zero without an explicit reset.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.config import get_settings
from models.generation_stats import GenerationStats

logger = logging.getLogger(__name__)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass(frozen=True)
class DailyStats:
    day: date
    generated_count: int
    reused_count: int


async def get_stats(db: AsyncSession, today: date | None = None) -> DailyStats:
    today = today or utc_today()
    row = (
        await db.execute(
            select(GenerationStats.generated_count, GenerationStats.reused_count).where(
                GenerationStats.day == today
            )
        )
    ).one_or_none()
    if row is None:
        return DailyStats(day=today, generated_count=0, reused_count=0)
    return DailyStats(day=today, generated_count=row.generated_count, reused_count=row.reused_count)


async def _bump(db: AsyncSession, column: str, today: date) -> DailyStats:
    values = {"day": today, "generated_count": 0, "reused_count": 0}
    values[column] = 1
    stmt = pg_insert(GenerationStats).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[GenerationStats.day],
        set_={column: getattr(GenerationStats, column) + 1},
    ).returning(GenerationStats.generated_count, GenerationStats.reused_count)
    row = (await db.execute(stmt)).one()
    return DailyStats(day=today, generated_count=row.generated_count, reused_count=row.reused_count)


async def can_generate_image(
    db: AsyncSession,
    *,
    limit: int | None = None,
    today: date | None = None,
) -> bool:
    limit = get_settings().max_image_generations_per_day if limit is None else limit
    stats = await get_stats(db, today)
    return stats.generated_count < limit


async def get_remaining_generations(
    db: AsyncSession,
    *,
    limit: int | None = None,
    today: date | None = None,
) -> int:
    limit = get_settings().max_image_generations_per_day if limit is None else limit
    stats = await get_stats(db, today)
    return max(0, limit - stats.generated_count)


async def increment_generated(
    db: AsyncSession,
    *,
    limit: int | None = None,
    today: date | None = None,
) -> DailyStats:
    limit = get_settings().max_image_generations_per_day if limit is None else limit
    stats = await _bump(db, "generated_count", today or utc_today())
    logger.info("Generation stats: %d/%d used today", stats.generated_count, limit)
    return stats


async def increment_reused(db: AsyncSession, *, today: date | None = None) -> DailyStats:
    stats = await _bump(db, "reused_count", today or utc_today())
    logger.info("Reuse stats: %d images reused today", stats.reused_count)
    return stats


async def get_limit_info(
    db: AsyncSession,
    *,
    limit: int | None = None,
    today: date | None = None,
) -> dict:
    limit = get_settings().max_image_generations_per_day if limit is None else limit
    stats = await get_stats(db, today)
    return {
        "max_daily": limit,
        "used": stats.generated_count,
        "remaining": max(0, limit - stats.generated_count),
        "reused": stats.reused_count,
        "can_generate": stats.generated_count < limit,
    }
