# api/app/routes/videos.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.dependencies import get_session
from api.app.schemas.videos import VideoListResponse, VideoOut
from services.metadata_store import query_videos

router = APIRouter(tags=["videos"])


@router.get("/videos", response_model=VideoListResponse)
async def list_videos(
    limit: int = Query(6, ge=1, le=50),
    city: str | None = None,
    condition: str | None = None,
    db: AsyncSession = Depends(get_session),
):
    """Most recent rendered videos from the catalog."""
    rows = await query_videos(db, city=city, condition=condition, limit=limit)
    videos = [VideoOut.model_validate(row) for row in rows]
    return VideoListResponse(videos=videos, count=len(videos))
