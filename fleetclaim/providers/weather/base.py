from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class WeatherInfo:
    condition: str | None
    temperature_celsius: float | None


class WeatherProvider(Protocol):
    async def get_weather(self, latitude: float, longitude: float, at: datetime) -> WeatherInfo | None:
        ...
