from __future__ import annotations

from fleetclaim.core.config import get_settings
from fleetclaim.core.errors import ProviderConfigError
from fleetclaim.providers.weather.base import WeatherProvider
from fleetclaim.providers.weather.fake import FakeWeatherProvider
from fleetclaim.providers.weather.open_meteo import OpenMeteoWeatherProvider


def get_weather_provider() -> WeatherProvider:
    settings = get_settings()
    provider = (settings.weather_provider or "none").lower()

    if provider == "none":
        # Callers treat this as "weather disabled" and leave evidence fields unset.
        raise ProviderConfigError("WEATHER_PROVIDER is set to none")
    if provider == "fake":
        return FakeWeatherProvider()
    if provider == "open_meteo":
        return OpenMeteoWeatherProvider()

    raise ProviderConfigError(f"Unsupported weather provider: {provider}")
