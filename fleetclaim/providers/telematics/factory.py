from __future__ import annotations

from fleetclaim.core.config import get_settings
from fleetclaim.core.errors import ProviderConfigError
from fleetclaim.providers.telematics.base import TelematicsConnector
from fleetclaim.providers.telematics.geotab import GeotabConnector
from fleetclaim.providers.telematics.memory import InMemoryConnector


def get_telematics_connector() -> TelematicsConnector:
    settings = get_settings()
    provider = (settings.telematics_provider or "none").lower()

    if provider == "none":
        raise ProviderConfigError("TELEMATICS_PROVIDER is set to none")
    if provider == "memory":
        # Empty local fleet; useful for smoke-running the API and worker without a vendor account.
        return InMemoryConnector()
    if provider == "geotab":
        return GeotabConnector()

    raise ProviderConfigError(f"Unsupported telematics provider: {provider}")
