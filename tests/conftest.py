from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from buildcache.cache_server.app import create_app
from buildcache.cache_server.blobstore import LocalBlobStore
from buildcache.cache_server.index import MetadataIndex

TOKEN_ID = "squirrel"
TOKEN_VALUE = "many buried nuts"
ADMIN_TOKEN = "admin-secret"
METRICS_TOKEN = "metrics-secret"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage_path(tmp_path: Path) -> Path:
    storage = tmp_path / "storage"
    storage.mkdir()
    return storage


@pytest.fixture
def index(tmp_path: Path) -> MetadataIndex:
    metadata_index = MetadataIndex(f"sqlite+pysqlite:///{(tmp_path / 'index.db').as_posix()}")
    yield metadata_index
    metadata_index.dispose()


@pytest.fixture
def blobs(storage_path: Path) -> LocalBlobStore:
    return LocalBlobStore(storage_path)


@pytest.fixture
def cache_env(tmp_path: Path, storage_path: Path, monkeypatch: pytest.MonkeyPatch):
    db_path = tmp_path / "index.db"
    monkeypatch.setenv("BUILDCACHE_STORAGE_PATH", storage_path.as_posix())
    monkeypatch.setenv("BUILDCACHE_INDEX_DB", f"sqlite+pysqlite:///{db_path.as_posix()}")
    monkeypatch.setenv("BUILDCACHE_ADMIN_TOKEN", ADMIN_TOKEN)
    monkeypatch.setenv("BUILDCACHE_METRICS_TOKEN", METRICS_TOKEN)
    credential = storage_path / "credentials" / TOKEN_ID
    credential.parent.mkdir(parents=True)
    credential.write_text(TOKEN_VALUE, encoding="utf-8")

    app = create_app()
    state = app.state.cache_state
    state.credential_cache.flush()
    with TestClient(app) as client:
        yield SimpleNamespace(
            client=client,
            state=state,
            storage=storage_path,
            headers={"Bazel-Cache-Token-Id": TOKEN_ID, "Bazel-Cache-Token-Value": TOKEN_VALUE},
        )
