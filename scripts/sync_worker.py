from __future__ import annotations

import argparse
import asyncio
import sys

from arq import run_worker

from dust_connectors.core.logging import configure_logging
from dust_connectors.services.sync.queue import run_scheduled_tick
from dust_connectors.workers.sync_worker import WorkerSettings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the connectors sync worker")
    parser.add_argument(
        "--tick-once",
        action="store_true",
        help="Launch one scheduled tick (incremental syncs and pending GC) and exit",
    )
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    if args.tick_once:
        try:
            launched = asyncio.run(run_scheduled_tick())
        except Exception as exc:  # noqa: BLE001 - surface operator failures clearly
            print(f"sync_worker tick failed: {exc}", file=sys.stderr)
            return 1
        print(f"Launched {launched['syncs_launched']} sync(s) and {launched['gc_launched']} GC run(s)")
        return 0
    run_worker(WorkerSettings)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
