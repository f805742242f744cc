from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timezone

from fleetclaim.core.errors import FleetClaimError
from fleetclaim.core.logging import configure_logging
from fleetclaim.domain.models import ReportRequest
from fleetclaim.persistence.record_store import RecordStore
from fleetclaim.providers.credentials.factory import get_credential_store
from fleetclaim.providers.telematics.factory import get_telematics_connector
from fleetclaim.services.sessions import SessionCache


def _parse_datetime(value: str) -> datetime:
    # Accept ISO-8601; naive values are treated as UTC.
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Queue a manual report request for the next poll pass")
    parser.add_argument("--tenant", required=True, help="Tenant (database) identifier")
    parser.add_argument("--device-id", required=True, help="Vehicle/device id")
    parser.add_argument("--from", dest="from_date", required=True, type=_parse_datetime, help="Window start (ISO-8601)")
    parser.add_argument("--to", dest="to_date", required=True, type=_parse_datetime, help="Window end (ISO-8601)")
    parser.add_argument("--device-name", default=None)
    parser.add_argument("--incident-id", default=None, help="Only report this incident")
    parser.add_argument("--force-report", action="store_true", help="Produce a baseline report when nothing matches")
    parser.add_argument("--requested-by", default=None)
    return parser


async def _submit(args: argparse.Namespace) -> int:
    if args.to_date < args.from_date:
        print("error: --to must not be before --from", file=sys.stderr)
        return 2
    sessions = SessionCache(get_credential_store(), get_telematics_connector())
    try:
        api = await sessions.get_session(args.tenant)
        request = ReportRequest(
            device_id=args.device_id,
            device_name=args.device_name,
            from_date=args.from_date,
            to_date=args.to_date,
            incident_id=args.incident_id,
            force_report=args.force_report,
            requested_by=args.requested_by,
        )
        await RecordStore(api).save_request(request)
    except FleetClaimError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(request.id)
    return 0


def main() -> None:
    configure_logging()
    sys.exit(asyncio.run(_submit(_build_parser().parse_args())))


if __name__ == "__main__":
    main()
