from __future__ import annotations

from typing import Protocol

from fleetclaim.providers.telematics.base import TenantCredentials


class CredentialStore(Protocol):
    async def get_credentials(self, tenant_id: str) -> TenantCredentials:
        ...

    async def list_tenants(self) -> list[str]:
        ...
