# api/app/schemas/jobs.py
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from jobs.schemas import WeatherData
from jobs.status import JobStatusView


class RenderJobRequest(BaseModel):
    city: str = Field(min_length=1, max_length=255)
    language: str = Field(default="en", max_length=8)
    # Optional: skip the weather lookup / background resolution
    weather_data: WeatherData | None = None
    image_filename: str | None = None


class JobSubmittedResponse(BaseModel):
    job_id: str
    status: str = "pending"
    message: str


class JobListResponse(BaseModel):
    jobs: list[JobStatusView]
    count: int


class JobEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_type: str
    level: str
    source: str | None = None
    message: str | None = None
    metadata: dict | None = Field(default=None, validation_alias="metadata_")
    created_at: datetime
