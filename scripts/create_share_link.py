from __future__ import annotations

import argparse
import sys

from fleetclaim.services.share_links import ShareLinkCodec


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Issue a signed public link for a stored report")
    parser.add_argument("--tenant", required=True, help="Tenant (database) identifier")
    parser.add_argument("--report-id", required=True, help="Report id, e.g. rpt_0123456789ab")
    parser.add_argument("--base-url", default=None, help="Override SHARE_LINK_BASE_URL")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    codec = ShareLinkCodec(base_url=args.base_url)
    try:
        print(codec.share_url(args.report_id, args.tenant))
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
