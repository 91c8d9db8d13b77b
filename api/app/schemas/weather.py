# api/app/schemas/weather.py
from __future__ import annotations

from pydantic import BaseModel, Field


class WeatherRequest(BaseModel):
    city: str = Field(min_length=1, max_length=255)


class WeatherResponse(BaseModel):
    city: str
    temperature: int
    condition: str
    description: str
    date: str
    is_fallback: bool = False
