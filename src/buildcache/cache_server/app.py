"""Remote build cache serving action-cache and content-addressed blobs."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator, Optional

import structlog
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from opentelemetry import trace

from ..common.http_security import require_admin_access, require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import CacheServerSettings
from .auth import Authenticator
from .blobstore import BlobStore, BlobStoreError, InvalidObjectKey, build_blob_store
from .credentials import CredentialCache, CredentialStore
from .index import MetadataIndex, MetadataIndexError
from .lifecycle import CacheEntryLifecycle
from .naming import classify_request
from .sweeper import StaleObjectSweeper, SweepReport

LOGGER = structlog.get_logger("buildcache.cache_server")
TRACER = trace.get_tracer("buildcache.cache_server")

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("buildcache_requests_total", "Total cache requests"))
HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("buildcache_hits_total", "Cache hits"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("buildcache_misses_total", "Cache misses"))
BYTES_READ_COUNTER = GLOBAL_REGISTRY.register(Counter("buildcache_bytes_read_total", "Bytes served from cache"))
BYTES_WRITTEN_COUNTER = GLOBAL_REGISTRY.register(Counter("buildcache_bytes_written_total", "Bytes written to cache"))
UPLOAD_FAILURES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("buildcache_upload_failures_total", "Uploads rejected because a store call failed")
)
TOTAL_ENTRIES_GAUGE = GLOBAL_REGISTRY.register(Gauge("buildcache_index_entries", "Rows in the metadata index"))
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "buildcache_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0],
        description="Cache request latency",
    )
)

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class CacheServerState:
    def __init__(
        self,
        settings: CacheServerSettings,
        blobs: BlobStore,
        index: MetadataIndex,
        credential_cache: Optional[CredentialCache] = None,
    ):
        self.settings = settings
        self.blobs = blobs
        self.index = index
        self.credential_cache = credential_cache or CredentialCache(
            positive_ttl=settings.credential_positive_ttl_seconds,
            negative_ttl=settings.credential_negative_ttl_seconds,
        )
        self.credentials = CredentialStore(blobs, prefix=settings.credential_prefix)
        self.authenticator = Authenticator(self.credential_cache, self.credentials)
        self.lifecycle = CacheEntryLifecycle(index, blobs)
        self.sweeper = StaleObjectSweeper(
            index,
            blobs,
            staleness_threshold=settings.staleness_threshold_seconds,
            batch_size=settings.sweep_batch_size,
        )
        self.sweep_lock = asyncio.Lock()
        self.logger = LOGGER.bind(backend=blobs.status().get("backend"))

    async def run_sweep(self) -> SweepReport:
        # Overlapping triggers queue up behind the running sweep.
        async with self.sweep_lock:
            report = await self.sweeper.sweep()
        try:
            TOTAL_ENTRIES_GAUGE.set(float(self.index.total_entries()))
        except MetadataIndexError:
            self.logger.warning("index_entry_count_failed", exc_info=True)
        return report


async def periodic_sweep(state: CacheServerState, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await state.run_sweep()
        except Exception:  # noqa: BLE001 - the loop must outlive a bad sweep
            state.logger.exception("scheduled_sweep_failed")


def get_state(request: Request) -> CacheServerState:
    state = getattr(request.app.state, "cache_state", None)
    if state is None:
        raise RuntimeError("Cache server state not initialised")
    return state


def cache_object_key(request: Request) -> str:
    cache_request = classify_request(request.method, str(request.url))
    if cache_request is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    return cache_request.object_key


async def require_credentials(request: Request, state: CacheServerState = Depends(get_state)) -> None:
    try:
        authenticated = await state.authenticator.is_authenticated(request.headers)
    except InvalidObjectKey:
        authenticated = False
    except BlobStoreError as exc:
        state.logger.exception("credential_lookup_failed")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Credential store unavailable") from exc
    if not authenticated:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")


async def count_bytes(stream: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    async for chunk in stream:
        BYTES_READ_COUNTER.inc(len(chunk))
        yield chunk


def create_app(settings: Optional[CacheServerSettings] = None) -> FastAPI:
    settings = settings or CacheServerSettings()
    configure_logging("buildcache.cache_server", settings.log_level)
    configure_tracing(
        service_name="buildcache.cache_server",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    blobs = build_blob_store(settings)
    index = MetadataIndex(settings.index_database_url)
    state = CacheServerState(settings, blobs, index)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweep_task: Optional[asyncio.Task] = None
        if settings.sweep_interval_seconds:
            sweep_task = asyncio.create_task(periodic_sweep(state, settings.sweep_interval_seconds))
            state.logger.info("sweep_schedule_started", interval_seconds=settings.sweep_interval_seconds)
        try:
            yield
        finally:
            if sweep_task is not None:
                sweep_task.cancel()
                with suppress(asyncio.CancelledError):
                    await sweep_task
            index.dispose()

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    instrument_fastapi_app(app)
    app.state.cache_state = state

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            state.logger.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)

        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            state.logger.warning("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)
        return response

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: CacheServerState = Depends(get_state)) -> dict:
        """Health check for readiness/liveness probes."""
        health: dict = {"status": "healthy", "checks": {}}
        try:
            backend_status = state.blobs.status()
            health["checks"]["backend"] = backend_status.get("backend", "unknown")
        except Exception as exc:  # noqa: BLE001
            health["checks"]["backend"] = f"error: {exc}"
            health["status"] = "unhealthy"
        try:
            state.index.ping()
            health["checks"]["index"] = "ok"
        except MetadataIndexError as exc:
            health["checks"]["index"] = f"error: {exc}"
            health["status"] = "unhealthy"

        if health["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    @app.get("/status")
    async def status_probe(state: CacheServerState = Depends(get_state)) -> JSONResponse:
        status_payload = state.blobs.status()
        total_entries = state.index.total_entries()
        status_payload.update(
            {
                "total_entries": total_entries,
                "staleness_threshold_seconds": state.settings.staleness_threshold_seconds,
                "sweep_batch_size": state.settings.sweep_batch_size,
                "sweep_interval_seconds": state.settings.sweep_interval_seconds,
            }
        )
        TOTAL_ENTRIES_GAUGE.set(float(total_entries))
        return JSONResponse(status_payload)

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: CacheServerState = Depends(get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        TOTAL_ENTRIES_GAUGE.set(float(state.index.total_entries()))
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.post("/admin/sweep")
    async def trigger_sweep(request: Request, state: CacheServerState = Depends(get_state)) -> JSONResponse:
        token = state.settings.admin_token.get_secret_value() if state.settings.admin_token else None
        require_admin_access(request, token)
        report = await state.run_sweep()
        return JSONResponse(report.to_dict())

    @app.put("/ac/{key:path}")
    @app.put("/cas/{key:path}")
    async def put_cache(
        request: Request,
        object_key: str = Depends(cache_object_key),
        _: None = Depends(require_credentials),
        state: CacheServerState = Depends(get_state),
    ) -> Response:
        REQUEST_COUNTER.inc()
        with TRACER.start_as_current_span("cache_server.put", attributes={"buildcache.cache_key": object_key}) as span:
            try:
                written = await state.lifecycle.upload(object_key, request.stream())
            except InvalidObjectKey as exc:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid cache key") from exc
            except (BlobStoreError, MetadataIndexError) as exc:
                UPLOAD_FAILURES_COUNTER.inc()
                state.logger.exception("cache_write_failed", cache_key=object_key)
                raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Upload failed") from exc
            BYTES_WRITTEN_COUNTER.inc(written)
            state.logger.info("cache_write", cache_key=object_key, bytes=written)
            span.set_attribute("buildcache.bytes_written", written)
            return PlainTextResponse("Created", status_code=status.HTTP_201_CREATED)

    @app.get("/ac/{key:path}")
    @app.get("/cas/{key:path}")
    async def get_cache(
        background_tasks: BackgroundTasks,
        object_key: str = Depends(cache_object_key),
        _: None = Depends(require_credentials),
        state: CacheServerState = Depends(get_state),
    ) -> Response:
        REQUEST_COUNTER.inc()
        with TRACER.start_as_current_span("cache_server.get", attributes={"buildcache.cache_key": object_key}) as span:
            try:
                stream = await state.lifecycle.retrieve(object_key, background_tasks.add_task)
            except InvalidObjectKey as exc:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid cache key") from exc
            except BlobStoreError as exc:
                state.logger.exception("cache_read_failed", cache_key=object_key)
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail="Cache backend unavailable",
                ) from exc
            if stream is None:
                MISS_COUNTER.inc()
                span.set_attribute("buildcache.hit", False)
                state.logger.info("cache_miss", cache_key=object_key)
                # Returned rather than raised so the scheduled refresh still runs.
                return PlainTextResponse("Not found", status_code=status.HTTP_404_NOT_FOUND)
            HIT_COUNTER.inc()
            span.set_attribute("buildcache.hit", True)
            state.logger.info("cache_hit", cache_key=object_key)
            return StreamingResponse(count_bytes(stream), media_type="application/octet-stream")

    @app.api_route("/{path:path}", methods=ALL_METHODS, include_in_schema=False)
    async def not_found() -> PlainTextResponse:
        return PlainTextResponse("Not found", status_code=status.HTTP_404_NOT_FOUND)

    return app
