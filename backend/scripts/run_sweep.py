"""Run one scheduled sweep by hand, in process.

Usage:
  python scripts/run_sweep.py usage-reset [--all-pages]
  python scripts/run_sweep.py bank-health [--cursor <doc id>]
  python scripts/run_sweep.py purge

Uses the same DATABASE_URL as the API and worker.  Prints a summary per
page; exits non-zero when any item failed.
"""
from __future__ import annotations

import argparse
import asyncio
from typing import Optional

from receiptgold.services.registry import Services, service_scope
from receiptgold.services.subscriptions import SweepResult

SWEEPS = ("usage-reset", "bank-health", "purge")


async def run_page(services: Services, name: str, cursor: Optional[str] = None) -> SweepResult:
    if name == "usage-reset":
        return await services.reconciler.reset_usage(start_after=cursor)
    if name == "bank-health":
        return await services.bank_monitor.run_health_check(start_after=cursor)
    if name == "purge":
        return await services.lifecycle.purge_deleted_accounts()
    raise SystemExit(f"Unknown sweep {name!r}; choose from {', '.join(SWEEPS)}")


async def run_sweep(services: Services, name: str, cursor: Optional[str] = None, all_pages: bool = False) -> int:
    failed = 0
    while True:
        result = await run_page(services, name, cursor)
        failed += result.failed
        print(
            f"[{name}] processed={result.processed} updated={result.updated} "
            f"skipped={result.skipped} failed={result.failed} next={result.next_cursor}"
        )
        for err in result.errors:
            print(f"  ! {err}")
        if not (all_pages and result.next_cursor):
            break
        if name == "purge" and result.failed:
            # Failed accounts would be picked up again
            break
        # Purge re-queries from the start; other sweeps page by cursor
        cursor = None if name == "purge" else result.next_cursor
    return 1 if failed else 0


async def _main(args: argparse.Namespace) -> int:
    async with service_scope(args.database_url) as services:
        return await run_sweep(services, args.sweep, args.cursor, args.all_pages)


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("sweep", choices=SWEEPS)
    parser.add_argument("--cursor", default=None, help="resume after this document id")
    parser.add_argument("--all-pages", action="store_true", help="keep going until the sweep is exhausted")
    parser.add_argument("--database-url", default=None)
    return asyncio.run(_main(parser.parse_args(argv)))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
