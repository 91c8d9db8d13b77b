# api/app/schemas/videos.py
from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict


class VideoOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    filename: str
    url: str
    city: str
    temperature: float
    condition: str
    weather_description: str | None = None
    weather_date: str
    language: str
    file_size: int | None = None
    created_at: datetime


class VideoListResponse(BaseModel):
    videos: list[VideoOut]
    count: int
