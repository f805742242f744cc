from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from fleetclaim.core.errors import PollRunError
from fleetclaim.core.logging import configure_logging
from fleetclaim.services.poller import build_poller


logger = logging.getLogger("fleetclaim.scripts.poll_incidents")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one incident polling pass over every tenant")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Override POLL_RUN_TIMEOUT_S for this pass (seconds)",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    poller = build_poller()
    try:
        summary = await poller.run(timeout_s=args.timeout)
    except PollRunError as exc:
        logger.error("poll_run_failed error=%s", exc)
        return 1
    except asyncio.TimeoutError:
        logger.error("poll_run_timed_out")
        return 1
    for result in summary.tenants:
        status = "ok" if result.ok else f"failed ({result.error})"
        print(
            f"{result.tenant_id}: {status} reports={result.reports_generated} "
            f"incidents={result.incidents_seen} requests={result.requests_processed}"
        )
    return 0


def main() -> None:
    # Exit non-zero only when no tenant could be processed so schedulers can alert.
    configure_logging()
    args = _build_parser().parse_args()
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
