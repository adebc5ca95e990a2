"""Batched removal of stale cache entries from the blob store and the index."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import Callable, Iterable, Iterator, Optional

import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .blobstore import BlobStore, BlobStoreError
from .index import MetadataIndex, MetadataIndexError
from .lifecycle import epoch_seconds
from .naming import NAMESPACES

LOGGER = structlog.get_logger("buildcache.sweeper")
TRACER = trace.get_tracer("buildcache.sweeper")

# After two weeks without access an object is considered stale.
DEFAULT_STALENESS_THRESHOLD_SECONDS = 86400 * 14
DEFAULT_BATCH_SIZE = 100
_LOOKUP_CHUNK = 500

SWEEP_RUNS_COUNTER = GLOBAL_REGISTRY.register(Counter("buildcache_sweep_runs_total", "Sweeps started"))
SWEEP_ABORTED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("buildcache_sweep_aborted_total", "Sweeps aborted by a store failure")
)
SWEPT_ENTRIES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("buildcache_swept_entries_total", "Stale entries removed from both stores")
)


def iter_stale_batches(index: MetadataIndex, stale_before: int, batch_size: int) -> Iterator[list[str]]:
    """Yield batches of stale keys in key order until a query comes back empty.

    Paging on the last key seen rather than an offset keeps the scan correct
    while the rows it already returned are being deleted. The cursor starts
    empty on every call.
    """
    marker = ""
    while True:
        keys = index.stale_keys(marker, stale_before, batch_size)
        if not keys:
            return
        marker = keys[-1]
        yield keys


@dataclass
class SweepReport:
    stale_before: int
    batches: int = 0
    deleted: int = 0
    aborted: bool = False
    error: Optional[str] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


class StaleObjectSweeper:
    def __init__(
        self,
        index: MetadataIndex,
        blobs: BlobStore,
        staleness_threshold: int = DEFAULT_STALENESS_THRESHOLD_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        self.index = index
        self.blobs = blobs
        self.staleness_threshold = staleness_threshold
        self.batch_size = max(1, batch_size)
        self._clock = clock

    async def sweep(self) -> SweepReport:
        """Delete every stale entry, blob first and index row second.

        A store failure ends the sweep early and is recorded on the report; the
        remaining rows are still stale and are picked up by the next run.
        """
        started = time.perf_counter()
        report = SweepReport(stale_before=epoch_seconds(self._clock) - self.staleness_threshold)
        SWEEP_RUNS_COUNTER.inc()
        LOGGER.info("sweep_started", stale_before=report.stale_before, batch_size=self.batch_size)
        with TRACER.start_as_current_span("cache_server.sweep") as span:
            try:
                for keys in iter_stale_batches(self.index, report.stale_before, self.batch_size):
                    await self.blobs.delete_many(keys)
                    self.index.delete_many(keys)
                    report.batches += 1
                    report.deleted += len(keys)
                    SWEPT_ENTRIES_COUNTER.inc(len(keys))
                    LOGGER.debug("sweep_batch_deleted", batch=report.batches, count=len(keys), last_key=keys[-1])
            except (BlobStoreError, MetadataIndexError) as exc:
                report.aborted = True
                report.error = str(exc)
                SWEEP_ABORTED_COUNTER.inc()
                LOGGER.exception("sweep_aborted", batches=report.batches, deleted=report.deleted)
            report.duration_seconds = round(time.perf_counter() - started, 3)
            span.set_attribute("buildcache.swept_entries", report.deleted)
            span.set_attribute("buildcache.sweep_aborted", report.aborted)
        if not report.aborted:
            LOGGER.info("sweep_completed", batches=report.batches, deleted=report.deleted)
        return report


async def find_orphaned_keys(
    index: MetadataIndex,
    blobs: BlobStore,
    prefixes: Iterable[str] = tuple(f"{namespace}/" for namespace in NAMESPACES),
) -> list[str]:
    """List blob keys with no index row. The sweeper can never reach these."""
    orphans: list[str] = []
    for prefix in prefixes:
        keys = await blobs.list_keys(prefix)
        for start in range(0, len(keys), _LOOKUP_CHUNK):
            chunk = keys[start:start + _LOOKUP_CHUNK]
            known = index.existing_keys(chunk)
            orphans.extend(key for key in chunk if key not in known)
    return orphans


def adopt_orphans(index: MetadataIndex, keys: Iterable[str], clock: Callable[[], float] = time.time) -> int:
    """Give orphaned blobs an index row stamped now so they age out normally."""
    now = epoch_seconds(clock)
    count = 0
    for key in keys:
        index.upsert(key, now)
        count += 1
    LOGGER.info("orphans_adopted", count=count)
    return count
