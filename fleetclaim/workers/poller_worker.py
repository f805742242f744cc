from __future__ import annotations

import logging
import time

from arq import cron
from arq.connections import RedisSettings

from fleetclaim.core.config import get_settings
from fleetclaim.core.errors import PollRunError
from fleetclaim.core.logging import configure_logging
from fleetclaim.services.poller import build_poller
from fleetclaim.services.telemetry import external_calls_since


logger = logging.getLogger(__name__)


def _cron_minutes(interval: int) -> set[int]:
    # Spread runs evenly across the hour; intervals that do not divide 60 restart at :00.
    interval = max(1, min(60, int(interval)))
    return set(range(0, 60, interval))


async def poll_incidents(ctx) -> dict:
    # One bounded pass; a full-run failure is logged and surfaced in the job result.
    poller = ctx["poller"]
    started = time.time()
    try:
        summary = await poller.run()
    except PollRunError as exc:
        logger.error("poll_run_failed error=%s", exc)
        return {"status": "failed", "error": str(exc), "integrations": external_calls_since(started)}
    return {
        "status": "ok",
        "tenants": len(summary.tenants),
        "failed_tenants": summary.failed_tenants,
        "reports_generated": summary.reports_generated,
        # Vendor, weather and relay health for this pass, kept with the arq job result.
        "integrations": external_calls_since(started),
    }


async def _startup(ctx) -> None:
    # Build collaborators once so sessions and breakers survive between cron runs.
    configure_logging()
    ctx["poller"] = build_poller()


async def _shutdown(ctx) -> None:
    ctx.pop("poller", None)


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    functions = [poll_incidents]
    cron_jobs = [
        cron(
            poll_incidents,
            minute=_cron_minutes(settings.poll_interval_minutes),
            run_at_startup=True,
            unique=True,
            timeout=settings.poll_run_timeout_s + 60,
        )
    ]
    # A pass already bounds itself; never let arq retry a half-finished run concurrently.
    max_tries = 1
    on_startup = _startup
    on_shutdown = _shutdown
