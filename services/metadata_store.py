# services/metadata_store.py
"""
Catalog of produced videos, independent of the job queue.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from models.video import Video

logger = logging.getLogger(__name__)

_UPSERT_COLUMNS = (
    "url",
    "city",
    "temperature",
    "condition",
    "weather_description",
    "weather_date",
    "language",
    "file_size",
    "etag",
    "job_id",
)


async def save_video(db: AsyncSession, record: dict) -> None:
    """Insert or update a catalog entry keyed by filename."""
    values = {"filename": record["filename"], **{k: record.get(k) for k in _UPSERT_COLUMNS}}
    values["language"] = values["language"] or "es"
    stmt = pg_insert(Video).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Video.filename],
        set_={**{k: stmt.excluded[k] for k in _UPSERT_COLUMNS}, "updated_at": func.now()},
    )
    await db.execute(stmt)
    logger.info("Video saved to catalog: %s", record["filename"])


async def query_videos(
    db: AsyncSession,
    *,
    city: str | None = None,
    condition: str | None = None,
    limit: int = 6,
) -> Sequence[Video]:
    stmt = select(Video).order_by(Video.created_at.desc()).limit(limit)
    if city:
        stmt = stmt.where(func.lower(Video.city) == city.lower())
    if condition:
        stmt = stmt.where(Video.condition == condition)
    return (await db.scalars(stmt)).all()


async def delete_videos(db: AsyncSession, filenames: Sequence[str]) -> int:
    if not filenames:
        return 0
    result = await db.execute(
        delete(Video)
        .where(Video.filename.in_(list(filenames)))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
