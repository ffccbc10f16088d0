from __future__ import annotations

import argparse
import asyncio
import sys

from dust_connectors.core.logging import configure_logging
from dust_connectors.persistence.db import SessionLocal
from dust_connectors.services.lifecycle import retry_external_revoke


def _build_parser() -> argparse.ArgumentParser:
    # Local rows are already gone; only the Slack/Nango side is retried.
    parser = argparse.ArgumentParser(description="Retry a failed external authorization revoke")
    parser.add_argument("connection_id", help="Nango connection id reported by external_revoke_failed")
    parser.add_argument("--team-id", default=None, help="Slack team id; skips the revoke while it still has connectors")
    return parser


async def _retry(connection_id: str, team_id: str | None) -> int:
    async with SessionLocal() as session:
        result = await retry_external_revoke(session, connection_id, team_id=team_id)
    if result.is_err():
        print(f"retry_external_revoke failed: {result.error}", file=sys.stderr)
        return 1
    print(f"Revoked external authorization for connection {connection_id}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(_retry(args.connection_id, args.team_id))
    except Exception as exc:  # noqa: BLE001 - surface operator failures clearly
        print(f"retry_external_revoke failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
