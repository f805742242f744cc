from __future__ import annotations

import asyncio

import pytest

from fleetclaim.core.errors import AuthenticationError, CredentialNotFoundError, ProviderConfigError
from fleetclaim.providers.telematics.base import TenantCredentials
from fleetclaim.services.sessions import SessionCache
from fleetclaim.tests.utils.fleet import build_tenants


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_session_is_reused_within_ttl() -> None:
    connector, credentials = build_tenants("fleet_a")
    clock = _Clock()
    cache = SessionCache(credentials, connector, ttl_s=60, time_source=clock)

    first = await cache.get_session("fleet_a")
    clock.now += 59
    second = await cache.get_session("fleet_a")

    assert first is second
    assert connector.auth_calls == ["fleet_a"]


@pytest.mark.asyncio
async def test_session_is_replaced_after_ttl() -> None:
    connector, credentials = build_tenants("fleet_a")
    clock = _Clock()
    cache = SessionCache(credentials, connector, ttl_s=60, time_source=clock)

    first = await cache.get_session("fleet_a")
    clock.now += 60
    second = await cache.get_session("fleet_a")

    assert first is not second
    assert connector.auth_calls == ["fleet_a", "fleet_a"]


@pytest.mark.asyncio
async def test_concurrent_misses_authenticate_once() -> None:
    connector, credentials = build_tenants("fleet_a", "fleet_b")
    cache = SessionCache(credentials, connector, ttl_s=60)

    handles = await asyncio.gather(*(cache.get_session("fleet_a") for _ in range(5)), cache.get_session("fleet_b"))

    assert len({id(handle) for handle in handles[:5]}) == 1
    assert handles[5].tenant_id == "fleet_b"
    assert sorted(connector.auth_calls) == ["fleet_a", "fleet_b"]


@pytest.mark.asyncio
async def test_unknown_tenant_raises_authentication_error() -> None:
    connector, credentials = build_tenants("fleet_a")
    cache = SessionCache(credentials, connector)

    with pytest.raises(CredentialNotFoundError):
        await cache.get_session("fleet_missing")


@pytest.mark.asyncio
async def test_wrong_password_raises_authentication_error() -> None:
    connector, _ = build_tenants("fleet_a")

    class _BadCredentials:
        async def get_credentials(self, tenant_id: str) -> TenantCredentials:
            return TenantCredentials(database=tenant_id, user_name="svc", password="wrong")

        async def list_tenants(self) -> list[str]:
            return ["fleet_a"]

    with pytest.raises(AuthenticationError):
        await SessionCache(_BadCredentials(), connector).get_session("fleet_a")


@pytest.mark.asyncio
async def test_other_lookup_failures_are_wrapped() -> None:
    connector, _ = build_tenants("fleet_a")

    class _BrokenCredentials:
        async def get_credentials(self, tenant_id: str) -> TenantCredentials:
            raise ProviderConfigError("secret backend misconfigured")

        async def list_tenants(self) -> list[str]:
            return []

    with pytest.raises(AuthenticationError) as excinfo:
        await SessionCache(_BrokenCredentials(), connector).get_session("fleet_a")
    assert isinstance(excinfo.value.__cause__, ProviderConfigError)
