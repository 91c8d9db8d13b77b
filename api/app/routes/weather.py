# api/app/routes/weather.py
from __future__ import annotations

from fastapi import APIRouter

from api.app.schemas.weather import WeatherRequest, WeatherResponse
from services.weather import fetch_weather

router = APIRouter(tags=["weather"])


@router.post("/weather", response_model=WeatherResponse)
async def get_weather(body: WeatherRequest):
    report = await fetch_weather(body.city.strip())
    return WeatherResponse(**report.to_payload(), is_fallback=report.is_fallback)
