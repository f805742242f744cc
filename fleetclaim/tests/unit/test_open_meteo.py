from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from fleetclaim.core.errors import ProviderConfigError, UpstreamUnavailableError
from fleetclaim.providers.weather.factory import get_weather_provider
from fleetclaim.providers.weather.fake import FakeWeatherProvider
from fleetclaim.providers.weather.open_meteo import (
    OpenMeteoWeatherProvider,
    build_weather_request,
    describe_weather_code,
    parse_hourly_weather,
)
from fleetclaim.services.resilience import CircuitBreaker
from fleetclaim.tests.utils.fleet import T0


_HOURLY = {
    "hourly": {
        "time": ["2024-03-05T13:00", "2024-03-05T14:00", "2024-03-05T15:00"],
        "temperature_2m": [3.0, 4.5, 5.0],
        "weathercode": [0, 63, 3],
    }
}


def test_old_incidents_use_archive_for_a_single_day() -> None:
    url, params = build_weather_request(43.0, -79.0, T0, now=T0 + timedelta(days=30))

    assert "archive-api" in url
    assert params["start_date"] == params["end_date"] == "2024-03-05"
    assert "past_days" not in params


def test_recent_incidents_use_forecast_with_past_days() -> None:
    url, params = build_weather_request(43.0, -79.0, T0, now=T0 + timedelta(hours=2))

    assert url == "https://api.open-meteo.com/v1/forecast"
    assert params["past_days"] == 7


@pytest.mark.parametrize(
    ("code", "expected"),
    [(0, "Clear"), (63, "Rain"), (96.0, "Thunderstorm with Hail"), (42, "Unknown"), (None, "Unknown"), (True, "Unknown")],
)
def test_weather_codes(code, expected) -> None:
    assert describe_weather_code(code) == expected


def test_parse_hourly_picks_incident_hour() -> None:
    info = parse_hourly_weather(_HOURLY, T0)

    assert info is not None
    assert info.condition == "Rain"
    assert info.temperature_celsius == 4.5


def test_parse_hourly_handles_missing_slots() -> None:
    assert parse_hourly_weather(_HOURLY, T0 + timedelta(days=1)) is None
    assert parse_hourly_weather({"hourly": "nope"}, T0) is None
    assert parse_hourly_weather(None, T0) is None


@pytest.mark.asyncio
async def test_provider_queries_coordinates() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_HOURLY)

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as client:
        provider = OpenMeteoWeatherProvider(client, breaker=CircuitBreaker("weather.open_meteo"))
        info = await provider.get_weather(43.0, -79.0, T0)

    assert info is not None and info.condition == "Rain"
    assert seen[0].url.params["latitude"] == "43.0"
    assert seen[0].url.params["timezone"] == "UTC"


@pytest.mark.asyncio
async def test_provider_wraps_upstream_failures() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"reason": "bad request"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as client:
        provider = OpenMeteoWeatherProvider(client, breaker=CircuitBreaker("weather.open_meteo"))
        with pytest.raises(UpstreamUnavailableError):
            await provider.get_weather(43.0, -79.0, T0)


def test_factory_respects_provider_setting(monkeypatch) -> None:
    from fleetclaim.core.config import get_settings

    with pytest.raises(ProviderConfigError):
        get_weather_provider()

    monkeypatch.setenv("WEATHER_PROVIDER", "fake")
    get_settings.cache_clear()
    assert isinstance(get_weather_provider(), FakeWeatherProvider)

    monkeypatch.setenv("WEATHER_PROVIDER", "darksky")
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        get_weather_provider()
