# tests/test_weather.py
from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest

from services.weather import (
    FALLBACK_DESCRIPTION,
    FALLBACK_TEMPERATURE,
    classify_condition,
    fetch_weather,
)


def _body(main: str, temp: float = 21.6, description: str = "scattered clouds") -> dict:
    return {"weather": [{"main": main, "description": description}], "main": {"temp": temp}}


@pytest.fixture
def keyed_settings(settings):
    keyed = settings.model_copy(update={"openweather_api_key": "test-key"})
    with patch("services.weather.get_settings", return_value=keyed):
        yield keyed


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    "main, expected",
    [
        ("Rain", "rain"),
        ("Drizzle", "sunny"),
        ("Clouds", "cloudy"),
        ("Thunderstorm", "storm"),
        ("Clear", "sunny"),
        ("", "sunny"),
    ],
)
def test_classify_condition(main, expected):
    assert classify_condition(main) == expected


@pytest.mark.asyncio
async def test_fetch_weather_parses_response(keyed_settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.url.params)
        return httpx.Response(200, json=_body("Clouds", temp=21.6))

    async with _client(handler) as client:
        report = await fetch_weather("Bogotá", client=client)

    assert seen["q"] == "Bogotá"
    assert seen["units"] == "metric"
    assert seen["appid"] == "test-key"
    assert report.temperature == 22
    assert report.condition == "cloudy"
    assert report.description == "scattered clouds"
    assert not report.is_fallback


@pytest.mark.asyncio
async def test_upstream_error_falls_back(keyed_settings):
    async with _client(lambda request: httpx.Response(500)) as client:
        report = await fetch_weather("Bogotá", client=client)

    assert report.is_fallback
    assert report.temperature == FALLBACK_TEMPERATURE
    assert report.condition == "sunny"
    assert report.description == FALLBACK_DESCRIPTION


@pytest.mark.asyncio
async def test_timeout_falls_back(keyed_settings):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with _client(handler) as client:
        report = await fetch_weather("Bogotá", client=client)

    assert report.is_fallback


@pytest.mark.asyncio
async def test_malformed_body_falls_back(keyed_settings):
    async with _client(lambda request: httpx.Response(200, json={"weather": []})) as client:
        report = await fetch_weather("Bogotá", client=client)

    assert report.is_fallback


@pytest.mark.asyncio
async def test_missing_key_falls_back_without_request(settings):
    def handler(request):
        raise AssertionError("no request expected")

    with patch("services.weather.get_settings", return_value=settings):
        async with _client(handler) as client:
            report = await fetch_weather("Bogotá", client=client)

    assert report.is_fallback
    assert report.city == "Bogotá"


def test_payload_omits_fallback_flag():
    from services.weather import fallback_weather

    payload = fallback_weather("Quito").to_payload()
    assert "is_fallback" not in payload
    assert payload["city"] == "Quito"
