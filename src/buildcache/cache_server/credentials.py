"""Credential lookup with an in-memory cache in front of the blob store."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .blobstore import BlobStore

LOGGER = structlog.get_logger("buildcache.credentials")

# Positive results are kept for ten minutes; negative results only for a few
# seconds so a freshly issued credential starts working almost immediately.
DEFAULT_POSITIVE_TTL_SECONDS = 10 * 60.0
DEFAULT_NEGATIVE_TTL_SECONDS = 5.0

CREDENTIAL_CACHE_HITS = GLOBAL_REGISTRY.register(
    Counter("buildcache_credential_cache_hits_total", "Credential lookups answered from memory")
)
CREDENTIAL_CACHE_MISSES = GLOBAL_REGISTRY.register(
    Counter("buildcache_credential_cache_misses_total", "Credential lookups that reached the credential store")
)


@dataclass(frozen=True)
class CredentialCacheEntry:
    value: Optional[str]
    expires_at: float

    def is_live(self, now: float) -> bool:
        return now < self.expires_at


class CredentialCache:
    """Process-wide credential cache with asymmetric positive/negative TTLs.

    Concurrent misses for the same id may each call the fetch function; the
    last one to finish wins. There is no size bound.
    """

    def __init__(
        self,
        positive_ttl: float = DEFAULT_POSITIVE_TTL_SECONDS,
        negative_ttl: float = DEFAULT_NEGATIVE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._positive_ttl = positive_ttl
        self._negative_ttl = negative_ttl
        self._clock = clock
        self._entries: dict[str, CredentialCacheEntry] = {}

    async def retrieve(self, credential_id: str, fetch: Callable[[], Awaitable[Optional[str]]]) -> Optional[str]:
        now = self._clock()
        entry = self._entries.get(credential_id)
        if entry is not None and entry.is_live(now):
            CREDENTIAL_CACHE_HITS.inc()
            return entry.value

        CREDENTIAL_CACHE_MISSES.inc()
        value = await fetch()
        ttl = self._positive_ttl if value else self._negative_ttl
        self._entries[credential_id] = CredentialCacheEntry(value=value, expires_at=now + ttl)
        return value

    def flush(self) -> None:
        """Drop every cached credential. Intended for administration and tests."""
        self._entries = {}

    def __len__(self) -> int:
        return len(self._entries)


class CredentialStore:
    """Reads and writes credential records kept as small objects in the blob store."""

    def __init__(self, blobs: BlobStore, prefix: str = "credentials/") -> None:
        self._blobs = blobs
        self._prefix = prefix

    def key_for(self, credential_id: str) -> str:
        return f"{self._prefix}{credential_id}"

    async def fetch(self, credential_id: str) -> Optional[str]:
        data = await self._blobs.read_small(self.key_for(credential_id))
        LOGGER.debug("credential_lookup", credential_id=credential_id, found=bool(data))
        if not data:
            # An empty record grants nothing; treat it like a missing one.
            return None
        return data.decode("utf-8")

    async def store(self, credential_id: str, value: str) -> None:
        await self._blobs.put_bytes(self.key_for(credential_id), value.encode("utf-8"))
        LOGGER.info("credential_stored", credential_id=credential_id)

    async def revoke(self, credential_id: str) -> None:
        await self._blobs.delete_many([self.key_for(credential_id)])
        LOGGER.info("credential_revoked", credential_id=credential_id)
