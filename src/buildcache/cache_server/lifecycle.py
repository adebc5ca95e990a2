"""Upload and retrieval paths that keep the metadata index a superset of the blob store."""

from __future__ import annotations

import time
from typing import AsyncIterator, Callable, Optional

import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .blobstore import BlobStore
from .index import MetadataIndex, MetadataIndexError

LOGGER = structlog.get_logger("buildcache.lifecycle")

REFRESH_FAILURES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("buildcache_last_used_refresh_failures_total", "Background last-used refreshes that failed")
)

Defer = Callable[..., None]


def epoch_seconds(clock: Callable[[], float] = time.time) -> int:
    # Whole seconds are plenty for lifetimes measured in days and keep the
    # stored integers small.
    return int(clock())


class CacheEntryLifecycle:
    def __init__(self, index: MetadataIndex, blobs: BlobStore, clock: Callable[[], float] = time.time):
        self.index = index
        self.blobs = blobs
        self._clock = clock

    def now(self) -> int:
        return epoch_seconds(self._clock)

    async def upload(self, object_key: str, body: AsyncIterator[bytes]) -> int:
        """Record the entry, then store the blob. Returns the number of bytes written.

        The index row is written first. If the blob write then fails the row is
        left behind as a dangling entry for the sweeper; a blob without a row
        would never be swept. Keys the blob store cannot hold are rejected
        before either store is touched.
        """
        self.blobs.check_key(object_key)
        self.index.upsert(object_key, self.now())
        return await self.blobs.write(object_key, body)

    async def retrieve(self, object_key: str, defer: Defer) -> Optional[AsyncIterator[bytes]]:
        """Schedule a last-used refresh with ``defer`` and open the blob.

        Returns ``None`` when the blob is absent, whether or not an index row exists.
        """
        defer(self.refresh_last_used, object_key, self.now())
        return await self.blobs.open(object_key)

    def refresh_last_used(self, object_key: str, last_used: int) -> None:
        """Best-effort refresh run after the response; failures are logged, not retried."""
        try:
            self.index.touch(object_key, last_used)
        except MetadataIndexError:
            REFRESH_FAILURES_COUNTER.inc()
            LOGGER.warning("last_used_refresh_failed", cache_key=object_key, exc_info=True)
