from __future__ import annotations

from fleetclaim.core.config import get_settings
from fleetclaim.core.errors import ProviderConfigError
from fleetclaim.providers.credentials.base import CredentialStore
from fleetclaim.providers.credentials.static import StaticCredentialStore


def get_credential_store() -> CredentialStore:
    settings = get_settings()
    provider = (settings.credential_provider or "none").lower()

    if provider == "none":
        raise ProviderConfigError("CREDENTIAL_PROVIDER is set to none")
    if provider == "env":
        return StaticCredentialStore.from_json(settings.tenant_credentials_json)
    if provider == "file":
        if not settings.tenant_credentials_path:
            raise ProviderConfigError("TENANT_CREDENTIALS_PATH is required for the file credential provider")
        return StaticCredentialStore.from_file(settings.tenant_credentials_path)

    raise ProviderConfigError(f"Unsupported credential provider: {provider}")
