from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
import time
from typing import Any

import httpx

from fleetclaim.core.config import get_settings
from fleetclaim.services.resilience import CircuitBreaker, breaker_for, retry_async
from fleetclaim.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookDeliveryResult:
    sent: bool
    status_code: int | None
    message: str


def build_webhook_signature(secret: str, payload: bytes) -> str:
    # HMAC SHA256 over the exact request body.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def encode_webhook_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


async def post_signed_json(
    url: str,
    payload: dict[str, Any],
    *,
    integration: str,
    event_type: str,
    secret: str | None = None,
    client: httpx.AsyncClient | None = None,
    breaker: CircuitBreaker | None = None,
) -> WebhookDeliveryResult:
    # Deliver one JSON webhook; failures are reported in the result, never raised.
    settings = get_settings()
    body = encode_webhook_body(payload)
    headers = {
        "Content-Type": "application/json",
        "X-FleetClaim-Event": event_type,
    }
    if secret:
        headers["X-FleetClaim-Signature"] = build_webhook_signature(secret, body)
    timeout = settings.ext_call_timeout_ms / 1000.0

    start = time.monotonic()
    try:
        if breaker is None:
            # One breaker per receiving host so a single broken customer endpoint stays isolated.
            breaker = await breaker_for(integration, httpx.URL(url).host)
        await breaker.before_call()

        async def _call() -> httpx.Response:
            if client is not None:
                return await client.post(url, content=body, headers=headers)
            async with httpx.AsyncClient(timeout=timeout) as owned:
                return await owned.post(url, content=body, headers=headers)

        response = await retry_async(_call)
    except Exception as exc:  # noqa: BLE001 - webhook failures are non-fatal
        if breaker is not None:
            try:
                await breaker.record_failure()
            except Exception:  # noqa: BLE001 - breaker storage may be the failing dependency
                pass
        record_external_call(
            integration=integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=False,
        )
        logger.warning("webhook_send_failed integration=%s event_type=%s", integration, event_type, exc_info=exc)
        return WebhookDeliveryResult(sent=False, status_code=None, message=str(exc))

    if response.status_code >= 400:
        if response.status_code >= 500:
            await breaker.record_failure()
        record_external_call(
            integration=integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=False,
        )
        return WebhookDeliveryResult(
            sent=False,
            status_code=response.status_code,
            message=f"Webhook returned HTTP {response.status_code}",
        )

    await breaker.record_success()
    record_external_call(
        integration=integration,
        latency_ms=(time.monotonic() - start) * 1000.0,
        success=True,
    )
    return WebhookDeliveryResult(sent=True, status_code=response.status_code, message="delivered")
