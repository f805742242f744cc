from __future__ import annotations

from datetime import datetime

from fleetclaim.core.errors import UpstreamUnavailableError
from fleetclaim.providers.weather.base import WeatherInfo


class FakeWeatherProvider:
    def __init__(self, info: WeatherInfo | None = None, *, fail: bool = False) -> None:
        # Deterministic conditions keep evidence assertions stable in tests.
        self._info = info or WeatherInfo(condition="Clear", temperature_celsius=18.0)
        self._fail = fail
        self.calls: list[tuple[float, float, datetime]] = []

    async def get_weather(self, latitude: float, longitude: float, at: datetime) -> WeatherInfo | None:
        self.calls.append((latitude, longitude, at))
        if self._fail:
            raise UpstreamUnavailableError("weather lookup failed")
        return self._info
