# services/weather.py
"""
Current weather lookup via the OpenWeather API.

Any upstream failure (timeout, HTTP error, malformed body, missing key)
yields a fallback report flagged `is_fallback` instead of raising, so a
submission can always proceed.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

import httpx

from api.app.config import get_settings

logger = logging.getLogger(__name__)

CONDITIONS = ("sunny", "cloudy", "rain", "storm")

FALLBACK_TEMPERATURE = 25
FALLBACK_DESCRIPTION = "clear sky (mock data - API unavailable)"

_client: httpx.AsyncClient | None = None


def get_weather_client() -> httpx.AsyncClient:
    """Get or create the shared HTTP client for weather lookups."""
    global _client
    if _client is None or _client.is_closed:
        settings = get_settings()
        _client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.weather_timeout_seconds, connect=5.0),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        logger.debug("Created weather HTTP client")
    return _client


async def close_weather_client() -> None:
    global _client
    if _client is not None and not _client.is_closed:
        await _client.aclose()
        _client = None
        logger.debug("Closed weather HTTP client")


@dataclass(frozen=True)
class WeatherReport:
    city: str
    temperature: int
    condition: str
    description: str
    date: str
    is_fallback: bool = False

    def to_payload(self) -> dict:
        data = asdict(self)
        data.pop("is_fallback")
        return data


def display_date(moment: datetime | None = None) -> str:
    """e.g. 'Monday, October 19, 2026'"""
    moment = moment or datetime.now(timezone.utc)
    return f"{moment:%A}, {moment:%B} {moment.day}, {moment.year}"


def classify_condition(main: str) -> str:
    """Map OpenWeather's `main` field onto one of CONDITIONS."""
    value = (main or "").lower()
    if "rain" in value:
        return "rain"
    if "cloud" in value:
        return "cloudy"
    if "thunder" in value or "storm" in value:
        return "storm"
    return "sunny"


def fallback_weather(city: str) -> WeatherReport:
    return WeatherReport(
        city=city,
        temperature=FALLBACK_TEMPERATURE,
        condition="sunny",
        description=FALLBACK_DESCRIPTION,
        date=display_date(),
        is_fallback=True,
    )


def parse_weather(city: str, data: dict) -> WeatherReport:
    entry = data["weather"][0]
    return WeatherReport(
        city=city,
        temperature=round(float(data["main"]["temp"])),
        condition=classify_condition(entry["main"]),
        description=entry.get("description", ""),
        date=display_date(),
    )


async def fetch_weather(city: str, client: httpx.AsyncClient | None = None) -> WeatherReport:
    settings = get_settings()
    if not settings.openweather_api_key:
        logger.warning("OpenWeather API key not configured, using fallback weather for %s", city)
        return fallback_weather(city)

    client = client or get_weather_client()
    logger.info("Fetching weather data for %s", city)
    try:
        response = await client.get(
            settings.openweather_url,
            params={"q": city, "units": "metric", "appid": settings.openweather_api_key},
            timeout=settings.weather_timeout_seconds,
        )
        response.raise_for_status()
        report = parse_weather(city, response.json())
    except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as exc:
        logger.warning("Weather lookup failed for %s, using fallback: %s", city, exc)
        return fallback_weather(city)

    logger.info("Weather for %s: %d°C, %s", city, report.temperature, report.condition)
    return report
