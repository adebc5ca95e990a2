"""Run the cache server under uvicorn."""

from __future__ import annotations

import argparse
from typing import Optional, Sequence

import uvicorn


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the remote build cache")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind")
    parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    parser.add_argument("--workers", type=int, default=1, help="Worker processes")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    # Every worker runs its own sweep schedule when BUILDCACHE_SWEEP_INTERVAL is set.
    uvicorn.run(
        "buildcache.cache_server.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        workers=args.workers,
        log_config=None,
    )


if __name__ == "__main__":
    main()
