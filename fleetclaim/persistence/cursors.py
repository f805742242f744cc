from __future__ import annotations

from typing import Protocol

from redis.asyncio import Redis

from fleetclaim.core.config import get_settings
from fleetclaim.core.errors import ProviderConfigError


class FeedCursorStore(Protocol):
    async def get_cursor(self, tenant_id: str) -> str | None:
        ...

    async def set_cursor(self, tenant_id: str, version: str) -> None:
        ...


class RedisCursorStore:
    # Persist tenant feed versions so restarts resume instead of replaying history.
    def __init__(self, redis: Redis, *, prefix: str | None = None) -> None:
        self._redis = redis
        self._prefix = prefix or get_settings().cursor_redis_prefix

    def _key(self, tenant_id: str) -> str:
        return f"{self._prefix}:{tenant_id}"

    async def get_cursor(self, tenant_id: str) -> str | None:
        value = await self._redis.get(self._key(tenant_id))
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    async def set_cursor(self, tenant_id: str, version: str) -> None:
        await self._redis.set(self._key(tenant_id), version)


class InMemoryCursorStore:
    def __init__(self) -> None:
        self._cursors: dict[str, str] = {}

    async def get_cursor(self, tenant_id: str) -> str | None:
        return self._cursors.get(tenant_id)

    async def set_cursor(self, tenant_id: str, version: str) -> None:
        self._cursors[tenant_id] = version


def get_cursor_store() -> FeedCursorStore:
    settings = get_settings()
    backend = (settings.cursor_store or "none").lower()

    if backend == "memory":
        return InMemoryCursorStore()
    if backend == "redis":
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return RedisCursorStore(redis)

    raise ProviderConfigError(f"Unsupported cursor store: {backend}")
