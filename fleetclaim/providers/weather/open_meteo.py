from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from fleetclaim.core.config import get_settings
from fleetclaim.core.errors import UpstreamUnavailableError
from fleetclaim.providers.weather.base import WeatherInfo
from fleetclaim.services.resilience import CircuitBreaker, breaker_for, retry_async
from fleetclaim.services.telemetry import record_external_call


_INTEGRATION = "weather.open_meteo"
_ARCHIVE_URL = "https://archive-api.open-meteo.com/v1/archive"
_FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
# The forecast endpoint only reaches a few days back; older dates use the archive.
_ARCHIVE_AFTER = timedelta(days=5)

WEATHER_CODES: dict[int, str] = {
    0: "Clear",
    1: "Partly Cloudy",
    2: "Partly Cloudy",
    3: "Partly Cloudy",
    45: "Fog",
    48: "Fog",
    51: "Drizzle",
    53: "Drizzle",
    55: "Drizzle",
    61: "Rain",
    63: "Rain",
    65: "Rain",
    66: "Freezing Rain",
    67: "Freezing Rain",
    71: "Snow",
    73: "Snow",
    75: "Snow",
    77: "Snow Grains",
    80: "Rain Showers",
    81: "Rain Showers",
    82: "Rain Showers",
    85: "Snow Showers",
    86: "Snow Showers",
    95: "Thunderstorm",
    96: "Thunderstorm with Hail",
    99: "Thunderstorm with Hail",
}


def describe_weather_code(code: Any) -> str:
    if isinstance(code, bool) or not isinstance(code, (int, float)):
        return "Unknown"
    return WEATHER_CODES.get(int(code), "Unknown")


def build_weather_request(
    latitude: float, longitude: float, at: datetime, *, now: datetime | None = None
) -> tuple[str, dict[str, Any]]:
    now = now or datetime.now(timezone.utc)
    params: dict[str, Any] = {
        "latitude": latitude,
        "longitude": longitude,
        "hourly": "temperature_2m,weathercode",
        "timezone": "UTC",
    }
    if at < now - _ARCHIVE_AFTER:
        day = at.strftime("%Y-%m-%d")
        params["start_date"] = day
        params["end_date"] = day
        return _ARCHIVE_URL, params
    params["past_days"] = 7
    return _FORECAST_URL, params


def parse_hourly_weather(payload: Any, at: datetime) -> WeatherInfo | None:
    # Pick the hourly slot matching the incident hour (UTC).
    if not isinstance(payload, dict) or not isinstance(payload.get("hourly"), dict):
        return None
    hourly = payload["hourly"]
    times = hourly.get("time") or []
    target = at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:00")
    try:
        idx = times.index(target)
    except ValueError:
        return None
    temperatures = hourly.get("temperature_2m") or []
    codes = hourly.get("weathercode") or []
    temperature = temperatures[idx] if idx < len(temperatures) else None
    code = codes[idx] if idx < len(codes) else None
    return WeatherInfo(
        condition=describe_weather_code(code) if code is not None else None,
        temperature_celsius=float(temperature) if isinstance(temperature, (int, float)) else None,
    )


class OpenMeteoWeatherProvider:
    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._settings = get_settings()
        self._client = client
        self._breaker = breaker

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is not None:
            return self._breaker
        self._breaker = await breaker_for(_INTEGRATION)
        return self._breaker

    async def get_weather(self, latitude: float, longitude: float, at: datetime) -> WeatherInfo | None:
        url, params = build_weather_request(latitude, longitude, at)
        client = self._get_client()
        breaker = await self._get_breaker()
        await breaker.before_call()
        start = time.monotonic()

        async def _call() -> httpx.Response:
            response = await client.get(url, params=params)
            response.raise_for_status()
            return response

        try:
            response = await retry_async(_call)
            payload = response.json()
        except (httpx.HTTPError, asyncio.TimeoutError, ValueError) as exc:
            await breaker.record_failure()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise UpstreamUnavailableError("Weather lookup failed") from exc

        await breaker.record_success()
        record_external_call(
            integration=_INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        return parse_hourly_weather(payload, at)
