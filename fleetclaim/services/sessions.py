from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from fleetclaim.core.config import get_settings
from fleetclaim.core.errors import AuthenticationError, FleetClaimError
from fleetclaim.providers.credentials.base import CredentialStore
from fleetclaim.providers.telematics.base import TelematicsApi, TelematicsConnector


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantSession:
    tenant_id: str
    handle: TelematicsApi
    expires_at: float


class SessionCache:
    """Authenticated vendor sessions per tenant, reused until their TTL lapses.

    The TTL is kept well under the vendor's own session lifetime so a cached
    handle never expires mid-run. Expired entries are replaced, never mutated.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        connector: TelematicsConnector,
        *,
        ttl_s: int | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._credentials = credentials
        self._connector = connector
        self._ttl_s = ttl_s if ttl_s is not None else get_settings().session_ttl_s
        self._time = time_source or time.monotonic
        self._sessions: dict[str, TenantSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock

    def _live(self, tenant_id: str) -> TenantSession | None:
        session = self._sessions.get(tenant_id)
        if session is None or self._time() >= session.expires_at:
            return None
        return session

    async def get_session(self, tenant_id: str) -> TelematicsApi:
        session = self._live(tenant_id)
        if session is not None:
            return session.handle
        # Coalesce concurrent misses so one tenant authenticates once.
        async with self._lock_for(tenant_id):
            session = self._live(tenant_id)
            if session is not None:
                return session.handle
            try:
                credentials = await self._credentials.get_credentials(tenant_id)
                handle = await self._connector.authenticate(tenant_id, credentials)
            except AuthenticationError:
                raise
            except FleetClaimError as exc:
                raise AuthenticationError(f"Authentication failed for tenant {tenant_id}: {exc}") from exc
            self._sessions[tenant_id] = TenantSession(
                tenant_id=tenant_id,
                handle=handle,
                expires_at=self._time() + self._ttl_s,
            )
            logger.info("tenant_session_created tenant_id=%s ttl_s=%s", tenant_id, self._ttl_s)
            return handle
