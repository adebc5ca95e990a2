"""Administrative commands: credential management and index audits."""

from __future__ import annotations

import argparse
import asyncio
import json
import secrets
from typing import Optional, Sequence

from ..cache_server.blobstore import build_blob_store
from ..cache_server.credentials import CredentialStore
from ..cache_server.index import MetadataIndex
from ..cache_server.sweeper import adopt_orphans, find_orphaned_keys
from ..common.observability import configure_logging
from ..common.settings import CacheServerSettings


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Administer the build cache stores")
    subparsers = parser.add_subparsers(dest="command", required=True)

    issue_parser = subparsers.add_parser("issue", help="Store a credential for a client id")
    issue_parser.add_argument("credential_id", help="Value clients send in the Bazel-Cache-Token-Id header")
    issue_parser.add_argument("--value", help="Secret to store; generated when omitted")

    revoke_parser = subparsers.add_parser("revoke", help="Delete a stored credential")
    revoke_parser.add_argument("credential_id")

    audit_parser = subparsers.add_parser("audit", help="List cached blobs that have no index entry")
    audit_parser.add_argument("--adopt", action="store_true", help="Create index entries for the orphans found")
    audit_parser.add_argument("--json", action="store_true", help="Output raw JSON")

    return parser.parse_args(argv)


async def run(argv: Optional[Sequence[str]] = None, settings: Optional[CacheServerSettings] = None) -> int:
    args = parse_args(argv)
    settings = settings or CacheServerSettings()
    configure_logging("buildcache.admin", settings.log_level)
    blobs = build_blob_store(settings)

    if args.command == "issue":
        value = args.value or secrets.token_urlsafe(32)
        await CredentialStore(blobs, prefix=settings.credential_prefix).store(args.credential_id, value)
        print(value)
        return 0

    if args.command == "revoke":
        await CredentialStore(blobs, prefix=settings.credential_prefix).revoke(args.credential_id)
        print(f"Revoked {args.credential_id}")
        return 0

    index = MetadataIndex(settings.index_database_url)
    try:
        orphans = await find_orphaned_keys(index, blobs)
        adopted = adopt_orphans(index, orphans) if args.adopt and orphans else 0
    finally:
        index.dispose()
    if args.json:
        print(json.dumps({"orphans": orphans, "adopted": adopted}, indent=2))
    else:
        print(f"Orphaned blobs: {len(orphans)}")
        for key in orphans:
            print(f"  {key}")
        if args.adopt:
            print(f"Adopted: {adopted}")
    return 0


def main() -> None:
    raise SystemExit(asyncio.run(run()))


if __name__ == "__main__":
    main()
