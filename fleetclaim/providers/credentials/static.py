from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from fleetclaim.core.errors import CredentialNotFoundError, ProviderConfigError
from fleetclaim.providers.telematics.base import TenantCredentials


class _CredentialEntry(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    database: str | None = None
    user_name: str
    password: str
    server: str | None = None


def parse_credentials_document(document: Any) -> dict[str, TenantCredentials]:
    # Document shape: {"<tenant id>": {"database", "userName", "password", "server"?}}.
    if not isinstance(document, dict):
        raise ProviderConfigError("Tenant credentials must be a JSON object keyed by tenant id")
    parsed: dict[str, TenantCredentials] = {}
    for tenant_id, raw in document.items():
        try:
            entry = _CredentialEntry.model_validate(raw)
        except ValidationError as exc:
            raise ProviderConfigError(f"Invalid credentials for tenant {tenant_id}") from exc
        parsed[str(tenant_id)] = TenantCredentials(
            # The tenant id doubles as the database name unless one is given.
            database=entry.database or str(tenant_id),
            user_name=entry.user_name,
            password=entry.password,
            server=entry.server,
        )
    return parsed


class StaticCredentialStore:
    def __init__(self, credentials: dict[str, TenantCredentials]) -> None:
        self._credentials = dict(credentials)

    @classmethod
    def from_json(cls, raw: str) -> StaticCredentialStore:
        try:
            document = json.loads(raw or "{}")
        except ValueError as exc:
            raise ProviderConfigError("TENANT_CREDENTIALS_JSON is not valid JSON") from exc
        return cls(parse_credentials_document(document))

    @classmethod
    def from_file(cls, path: str | Path) -> StaticCredentialStore:
        try:
            raw = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise ProviderConfigError(f"Cannot read tenant credentials file {path}") from exc
        return cls.from_json(raw)

    async def get_credentials(self, tenant_id: str) -> TenantCredentials:
        credentials = self._credentials.get(tenant_id)
        if credentials is None:
            raise CredentialNotFoundError(f"No credentials registered for tenant {tenant_id}")
        return credentials

    async def list_tenants(self) -> list[str]:
        return sorted(self._credentials)
