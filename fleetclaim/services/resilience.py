from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable

import httpx
from redis.asyncio import Redis

from fleetclaim.core.config import get_settings
from fleetclaim.core.errors import IntegrationUnavailableError, VendorThrottledError


logger = logging.getLogger(__name__)

# Network-level failures from the vendor, weather archive or e-mail relay.
TRANSIENT_EXCEPTIONS = (TimeoutError, asyncio.TimeoutError, httpx.TransportError)
# Request timeout, too early, and rate limited; everything else below 500 is permanent.
_RETRYABLE_4XX = frozenset({408, 425, 429})

_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None


async def get_resilience_redis() -> Redis | None:
    # Breaker state is shared through Redis so the API and worker see the same outage.
    global _redis_pool, _redis_loop
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    if _redis_pool is not None and _redis_loop is loop:
        return _redis_pool
    try:
        _redis_pool = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
        _redis_loop = loop
    except Exception as exc:  # noqa: BLE001 - breakers degrade to process-local state
        logger.warning("resilience_redis_unavailable error=%s", exc)
        _redis_pool = None
        return None
    return _redis_pool


def _status_code(exc: Exception) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return None


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, (VendorThrottledError, *TRANSIENT_EXCEPTIONS)):
        return True
    status = _status_code(exc)
    return status is not None and (status >= 500 or status in _RETRYABLE_4XX)


def retry_after_seconds(exc: Exception) -> float | None:
    """Server-requested delay from a throttling error or a Retry-After header."""
    if isinstance(exc, VendorThrottledError):
        return exc.retry_after_s
    if not isinstance(exc, httpx.HTTPStatusError):
        return None
    raw = exc.response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        pass
    try:
        # HTTP-date form.
        return max(parsedate_to_datetime(raw).timestamp() - time.time(), 0.0)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    retry_after_cap_s: float = 30.0

    def delay_s(self, attempt: int, exc: Exception) -> float | None:
        # None means the server asked for longer than we are willing to wait.
        hinted = retry_after_seconds(exc)
        if hinted is not None:
            return hinted if hinted <= self.retry_after_cap_s else None
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
        retry_after_cap_s=settings.ext_retry_after_cap_s,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    policy = policy or default_retry_policy()
    retryable = retryable or is_transient
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - non-transient failures are re-raised to the caller
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            delay = policy.delay_s(attempt, exc)
            if delay is None:
                raise
            logger.info("external_call_retry attempt=%s delay_s=%.2f error=%s", attempt, delay, exc)
            await asyncio.sleep(delay)
            attempt += 1


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


@dataclass
class CircuitBreakerState:
    state: str = "closed"
    failures: int = 0
    opened_at: float | None = None
    half_open_trials: int = 0

    def to_hash(self) -> dict[str, str]:
        return {
            "state": self.state,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else str(self.opened_at),
            "half_open_trials": str(self.half_open_trials),
        }

    @classmethod
    def from_hash(cls, raw: dict[str, str]) -> "CircuitBreakerState":
        return cls(
            state=raw.get("state", "closed"),
            failures=int(raw.get("failures") or 0),
            opened_at=float(raw["opened_at"]) if raw.get("opened_at") else None,
            half_open_trials=int(raw.get("half_open_trials") or 0),
        )


class CircuitBreaker:
    """Closed/open/half-open breaker for one upstream, e.g. one Geotab server."""

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )
        self._time = time_source or time.time
        self._local = CircuitBreakerState()
        self._key = f"{settings.cb_redis_prefix}:{name}"

    @property
    def name(self) -> str:
        return self._name

    async def _load(self) -> CircuitBreakerState:
        if self._redis is None:
            return self._local
        raw = await self._redis.hgetall(self._key)
        return CircuitBreakerState.from_hash(raw) if raw else CircuitBreakerState()

    async def _save(self, state: CircuitBreakerState) -> None:
        if self._redis is None:
            self._local = state
            return
        await self._redis.hset(self._key, mapping=state.to_hash())
        await self._redis.expire(self._key, max(self._config.open_seconds * 4, 60))

    def _moved(self, state: CircuitBreakerState, target: str) -> CircuitBreakerState:
        if state.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, state.state, target)
        return CircuitBreakerState(state=target, opened_at=self._time() if target == "open" else None)

    async def before_call(self) -> CircuitBreakerState:
        state = await self._load()
        if state.state == "open":
            elapsed = self._time() - (state.opened_at or 0.0)
            if elapsed < self._config.open_seconds:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            state = self._moved(state, "half_open")
        if state.state == "half_open":
            if state.half_open_trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            state.half_open_trials += 1
        await self._save(state)
        return state

    async def record_success(self) -> None:
        state = await self._load()
        if state.state == "closed" and state.failures == 0:
            return
        await self._save(self._moved(state, "closed"))

    async def record_failure(self) -> None:
        state = await self._load()
        if state.state == "half_open" or state.failures + 1 >= self._config.failure_threshold:
            await self._save(self._moved(state, "open"))
            return
        state.failures += 1
        await self._save(state)


async def breaker_for(integration: str, scope: str | None = None) -> CircuitBreaker:
    # Scope splits one integration into independent breakers, e.g. per Geotab server.
    name = integration if not scope else f"{integration}:{scope}"
    return CircuitBreaker(name, redis=await get_resilience_redis())
