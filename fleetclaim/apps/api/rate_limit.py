from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable

from fastapi import HTTPException, Request, Response, status
from redis.asyncio import Redis

from fleetclaim.core.config import get_settings


logger = logging.getLogger(__name__)

ROUTE_CLASS_SHARE = "share"
ROUTE_CLASS_PDF = "pdf"
ROUTE_CLASS_DEFAULT = "default"


@dataclass(frozen=True)
class BucketConfig:
    # Configure rate limits with a sustained rate and burst capacity.
    rps: float
    burst: int


@dataclass(frozen=True)
class RateLimitDecision:
    # Capture the outcome and retry hints for a rate-limited request.
    allowed: bool
    route_class: str
    retry_after_ms: int
    remaining: float | None = None


_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local data = redis.call("HMGET", KEYS[1], "tokens", "ts")
local tokens = tonumber(data[1])
local ts = tonumber(data[2])
if tokens == nil then
  tokens = burst
  ts = now_ms
end
if now_ms < ts then
  ts = now_ms
end
local delta = (now_ms - ts) / 1000.0
tokens = math.min(burst, tokens + delta * rate)

local retry = 0
if tokens < cost then
  if rate <= 0 then
    retry = 1000
  else
    retry = math.ceil(((cost - tokens) / rate) * 1000)
  end
end

local allowed = tokens >= cost
if allowed then
  tokens = tokens - cost
end

redis.call("HMSET", KEYS[1], "tokens", tokens, "ts", now_ms)
redis.call("EXPIRE", KEYS[1], ttl)

return {allowed and 1 or 0, tostring(tokens), retry}
"""


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


def route_class_for_path(path: str, method: str) -> str:
    # Document and e-mail endpoints are expensive; plain share views guard token guessing.
    if path.startswith("/r/"):
        if path.endswith("/pdf") or (method.upper() == "POST" and path.endswith("/email")):
            return ROUTE_CLASS_PDF
        return ROUTE_CLASS_SHARE
    return ROUTE_CLASS_DEFAULT


def route_class_for_request(request: Request) -> str:
    return route_class_for_path(request.url.path, request.method)


def client_key(request: Request) -> str:
    # Partition buckets per caller address; proxies should set X-Forwarded-For.
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def _calculate_tokens(
    *,
    tokens: float | None,
    last_ms: int | None,
    now_ms: int,
    rate: float,
    burst: int,
) -> float:
    # Refill tokens based on elapsed time while enforcing burst capacity.
    if tokens is None:
        tokens = float(burst)
    if last_ms is None:
        last_ms = now_ms
    if now_ms < last_ms:
        last_ms = now_ms
    delta_s = (now_ms - last_ms) / 1000.0
    tokens = min(float(burst), tokens + (delta_s * rate))
    return tokens


def _retry_after_ms(tokens: float, *, rate: float, cost: int) -> int:
    # Compute retry-after using the token deficit and sustained rate.
    if tokens >= cost:
        return 0
    if rate <= 0:
        return 1000
    needed = cost - tokens
    return int(math.ceil((needed / rate) * 1000))


def _ttl_seconds(rate: float, burst: int) -> int:
    # Expire idle buckets after a conservative refill window.
    if rate <= 0:
        return max(1, burst)
    return max(1, int(math.ceil((burst / rate) * 2)))


async def _get_redis() -> Redis:
    # Cache Redis connections to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


class RateLimiter:
    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time

    async def check(self, *, caller: str, route_class: str, limits: BucketConfig, cost: int = 1) -> RateLimitDecision:
        # Evaluate the caller bucket atomically in Redis.
        settings = get_settings()
        bucket = f"{settings.rl_redis_prefix}:{route_class}:{caller}"
        now_ms = int(self._time_provider() * 1000)
        redis = await _get_redis()
        result = await redis.eval(
            _TOKEN_BUCKET_LUA,
            1,
            bucket,
            now_ms,
            limits.rps,
            limits.burst,
            cost,
            _ttl_seconds(limits.rps, limits.burst),
        )
        return RateLimitDecision(
            allowed=int(result[0]) == 1,
            route_class=route_class,
            retry_after_ms=int(float(result[2])),
            remaining=float(result[1]),
        )


# Idle local buckets are dropped at most this often.
_SWEEP_INTERVAL_MS = 1000


class LocalRateLimiter:
    """Process-local token buckets for single-instance runs and tests."""

    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        self._time_provider = time_provider or time.time
        # bucket -> (tokens, last_ms, expires_ms); an expired bucket would have refilled to burst anyway.
        self._buckets: dict[str, tuple[float, int, int]] = {}
        self._next_sweep_ms = 0

    def __len__(self) -> int:
        return len(self._buckets)

    def _sweep(self, now_ms: int) -> None:
        if now_ms < self._next_sweep_ms:
            return
        self._next_sweep_ms = now_ms + _SWEEP_INTERVAL_MS
        expired = [bucket for bucket, state in self._buckets.items() if state[2] <= now_ms]
        for bucket in expired:
            del self._buckets[bucket]

    async def check(self, *, caller: str, route_class: str, limits: BucketConfig, cost: int = 1) -> RateLimitDecision:
        bucket = f"{route_class}:{caller}"
        now_ms = int(self._time_provider() * 1000)
        self._sweep(now_ms)
        state = self._buckets.get(bucket)
        tokens = _calculate_tokens(
            tokens=state[0] if state else None,
            last_ms=state[1] if state else None,
            now_ms=now_ms,
            rate=limits.rps,
            burst=limits.burst,
        )
        retry_after_ms = _retry_after_ms(tokens, rate=limits.rps, cost=cost)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        self._buckets[bucket] = (tokens, now_ms, now_ms + _ttl_seconds(limits.rps, limits.burst) * 1000)
        return RateLimitDecision(
            allowed=allowed,
            route_class=route_class,
            retry_after_ms=retry_after_ms,
            remaining=tokens,
        )


_rate_limiter: RateLimiter | LocalRateLimiter | None = None


def _get_rate_limiter() -> RateLimiter | LocalRateLimiter:
    # Cache the rate limiter so requests share Redis connections and time provider.
    global _rate_limiter
    if _rate_limiter is None:
        if get_settings().rl_backend.lower() == "local":
            _rate_limiter = LocalRateLimiter()
        else:
            _rate_limiter = RateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: RateLimiter | LocalRateLimiter | None) -> None:
    global _rate_limiter
    _rate_limiter = limiter


def reset_rate_limiter_state() -> None:
    # Reset cached Redis connections for deterministic test setup.
    global _rate_limiter, _redis_pool, _redis_loop
    _rate_limiter = None
    _redis_pool = None
    _redis_loop = None


def _limits_for_route(route_class: str) -> BucketConfig:
    settings = get_settings()
    if route_class == ROUTE_CLASS_SHARE:
        return BucketConfig(settings.rl_share_rps, settings.rl_share_burst)
    if route_class == ROUTE_CLASS_PDF:
        return BucketConfig(settings.rl_pdf_rps, settings.rl_pdf_burst)
    return BucketConfig(settings.rl_default_rps, settings.rl_default_burst)


def _throttle_exception(*, decision: RateLimitDecision) -> HTTPException:
    # Construct a stable 429 response with retry hints and metadata.
    retry_after_s = int(math.ceil(decision.retry_after_ms / 1000.0))
    headers = {
        "Retry-After": str(retry_after_s),
        "X-RateLimit-Route-Class": decision.route_class,
        "X-RateLimit-Retry-After-Ms": str(decision.retry_after_ms),
    }
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Rate limit exceeded",
            "route_class": decision.route_class,
            "retry_after_ms": decision.retry_after_ms,
        },
        headers=headers,
    )


def _unavailable_exception() -> HTTPException:
    # Return a stable 503 when rate limit storage is unavailable and fail-closed.
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
    )


async def enforce_rate_limit(request: Request, response: Response) -> None:
    # Enforce per-caller limits with optional fail-open behavior.
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return

    route_class = route_class_for_request(request)
    limiter = _get_rate_limiter()
    try:
        decision = await limiter.check(
            caller=client_key(request),
            route_class=route_class,
            limits=_limits_for_route(route_class),
        )
    except Exception as exc:  # noqa: BLE001 - guard against Redis connectivity failures
        if settings.rl_fail_mode.lower() == "closed":
            raise _unavailable_exception() from exc
        response.headers["X-RateLimit-Status"] = "degraded"
        logger.warning("rate_limit_degraded route_class=%s error=%s", route_class, exc)
        return

    if decision.allowed:
        return
    logger.info(
        "rate_limited route_class=%s retry_after_ms=%s",
        decision.route_class,
        decision.retry_after_ms,
    )
    raise _throttle_exception(decision=decision)
