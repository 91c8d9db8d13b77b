# jobs/schemas.py
from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class WeatherData(BaseModel):
    city: str
    temperature: float
    condition: str
    description: str = ""
    date: str


class RenderJobPayload(BaseModel):
    """Immutable input of a render_video job, stored as the job payload."""

    city: str = Field(min_length=1, max_length=255)
    weather_data: WeatherData
    image_filename: str = Field(min_length=1)
    language: str = Field(default="en", max_length=8)

    @field_validator("city")
    @classmethod
    def strip_city(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("city must not be blank")
        return value
