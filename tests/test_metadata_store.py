# tests/test_metadata_store.py
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

import services.metadata_store as metadata_store
from services.metadata_store import delete_videos, query_videos, save_video


def _sql(stmt) -> str:
    return " ".join(str(stmt.compile(dialect=postgresql.dialect())).split())


def test_catalog_surface_is_save_query_delete():
    public = {
        name
        for name, value in vars(metadata_store).items()
        if callable(value) and not name.startswith("_") and value.__module__ == metadata_store.__name__
    }
    assert public == {"save_video", "query_videos", "delete_videos"}


@pytest.mark.asyncio
async def test_save_video_upserts_on_filename(mock_db):
    await save_video(mock_db, {"filename": "weather-lima-1.mp4", "city": "Lima", "language": None})

    sql = _sql(mock_db.execute.await_args.args[0])
    assert "INSERT INTO videos" in sql
    assert "ON CONFLICT (filename) DO UPDATE" in sql


@pytest.mark.asyncio
async def test_query_videos_filters_city_case_insensitively(mock_db):
    result = MagicMock()
    result.all.return_value = []
    mock_db.scalars = AsyncMock(return_value=result)

    await query_videos(mock_db, city="LIMA", condition="sunny", limit=3)

    stmt = mock_db.scalars.await_args.args[0]
    sql = _sql(stmt)
    assert "lower(videos.city)" in sql
    assert "videos.condition" in sql
    assert "ORDER BY videos.created_at DESC" in sql
    assert "lima" in stmt.compile(dialect=postgresql.dialect()).params.values()


@pytest.mark.asyncio
async def test_delete_videos_skips_empty_batch(mock_db):
    assert await delete_videos(mock_db, []) == 0
    mock_db.execute.assert_not_awaited()

    mock_db.execute.return_value = MagicMock(rowcount=2)
    assert await delete_videos(mock_db, ["a.mp4", "b.mp4"]) == 2
