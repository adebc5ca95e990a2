"""Trigger a stale-object sweep, locally or on a running cache server."""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, Optional, Sequence

import httpx

from ..cache_server.blobstore import build_blob_store
from ..cache_server.index import MetadataIndex
from ..cache_server.sweeper import StaleObjectSweeper
from ..common.observability import configure_logging
from ..common.settings import CacheServerSettings


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Remove stale entries from the build cache")
    parser.add_argument("--url", help="Cache server base URL; sweeps in-process against the configured stores when omitted")
    parser.add_argument("--token", help="Admin bearer token for --url")
    parser.add_argument("--json", action="store_true", help="Output raw JSON")
    return parser.parse_args(argv)


async def request_sweep(base_url: str, token: Optional[str]) -> dict[str, Any]:
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    async with httpx.AsyncClient(timeout=None) as client:
        response = await client.post(f"{base_url.rstrip('/')}/admin/sweep", headers=headers)
        response.raise_for_status()
        return response.json()


async def sweep_locally(settings: CacheServerSettings) -> dict[str, Any]:
    index = MetadataIndex(settings.index_database_url)
    try:
        sweeper = StaleObjectSweeper(
            index,
            build_blob_store(settings),
            staleness_threshold=settings.staleness_threshold_seconds,
            batch_size=settings.sweep_batch_size,
        )
        report = await sweeper.sweep()
    finally:
        index.dispose()
    return report.to_dict()


def print_report(report: dict[str, Any]) -> None:
    outcome = "aborted" if report.get("aborted") else "completed"
    print(f"Sweep {outcome}: {report.get('deleted', 0)} entries removed in {report.get('batches', 0)} batches")
    if report.get("error"):
        print(f"Error: {report['error']}")


async def run(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    if args.url:
        report = await request_sweep(args.url, args.token)
    else:
        settings = CacheServerSettings()
        configure_logging("buildcache.sweep", settings.log_level)
        report = await sweep_locally(settings)
    if args.json:
        print(json.dumps(report, indent=2))
    else:
        print_report(report)
    return 1 if report.get("aborted") else 0


def main() -> None:
    raise SystemExit(asyncio.run(run()))


if __name__ == "__main__":
    main()
