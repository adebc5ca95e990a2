from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from buildcache.cache_server.app import create_app
from buildcache.cache_server.blobstore import BlobStoreError

from conftest import ADMIN_TOKEN, METRICS_TOKEN


@pytest.mark.parametrize("method", ["GET", "PUT"])
@pytest.mark.parametrize("path", ["/ac/foo", "/cas/foo"])
def test_cache_routes_require_authentication(cache_env, method: str, path: str) -> None:
    response = cache_env.client.request(method, path)
    assert response.status_code == 401


@pytest.mark.parametrize(
    "headers",
    [
        {"Bazel-Cache-Token-Id": "squirrel"},
        {"Bazel-Cache-Token-Value": "many buried nuts"},
        {"Bazel-Cache-Token-Id": "squirrel", "Bazel-Cache-Token-Value": "wrong"},
        {"Bazel-Cache-Token-Id": "noSuchThing", "Bazel-Cache-Token-Value": "151a86101365-abc31cb4ee18"},
    ],
)
def test_bad_credentials_are_rejected(cache_env, headers: dict[str, str]) -> None:
    response = cache_env.client.get("/cas/foo", headers=headers)
    assert response.status_code == 401


def test_unauthenticated_requests_are_rejected_repeatedly(cache_env) -> None:
    assert cache_env.client.get("/cas/foo").status_code == 401
    assert cache_env.client.get("/cas/foo").status_code == 401


@pytest.mark.parametrize(
    ("method", "path"),
    [
        ("GET", "/blah/blah/fishcakes"),
        ("GET", "/"),
        ("GET", "/ac/"),
        ("PUT", "/acx/foo"),
        ("DELETE", "/ac/foo"),
        ("POST", "/cas/foo"),
        ("PATCH", "/cas/foo"),
    ],
)
def test_unknown_routes_return_not_found(cache_env, method: str, path: str) -> None:
    response = cache_env.client.request(method, path, headers=cache_env.headers)
    assert response.status_code == 404


def test_upload_then_download_returns_identical_bytes(cache_env) -> None:
    client = cache_env.client
    put_resp = client.put("/cas/abc", content=b"hello", headers=cache_env.headers)
    assert put_resp.status_code == 201

    get_resp = client.get("/cas/abc", headers=cache_env.headers)
    assert get_resp.status_code == 200
    assert get_resp.content == b"hello"
    assert (cache_env.storage / "cas" / "abc").read_bytes() == b"hello"


def test_upload_records_index_entry(cache_env) -> None:
    started = int(time.time())
    response = cache_env.client.put("/cas/111", content=b"great balls of fire", headers=cache_env.headers)
    assert response.status_code == 201

    last_used = cache_env.state.index.last_used("cas/111")
    assert last_used is not None
    assert last_used >= started
    assert cache_env.state.index.total_entries() == 1


def test_overwrite_refreshes_existing_entry(cache_env) -> None:
    index = cache_env.state.index
    index.upsert("cas/wallace_and_gromit", 100)
    started = int(time.time())

    response = cache_env.client.put(
        "/cas/wallace_and_gromit",
        content=b"gouda cheddar edam stilton",
        headers=cache_env.headers,
    )
    assert response.status_code == 201
    assert index.last_used("cas/wallace_and_gromit") >= started
    assert index.total_entries() == 1


def test_get_refreshes_last_used(cache_env) -> None:
    index = cache_env.state.index
    index.upsert("ac/lunch", 100)
    (cache_env.storage / "ac").mkdir()
    (cache_env.storage / "ac" / "lunch").write_bytes(b"super carne asada burrito")
    started = int(time.time())

    response = cache_env.client.get("/ac/lunch", headers=cache_env.headers)
    assert response.status_code == 200
    assert response.content == b"super carne asada burrito"
    assert index.last_used("ac/lunch") >= started


def test_get_missing_blob_is_not_found_even_with_index_entry(cache_env) -> None:
    cache_env.state.index.upsert("ac/dangling", 100)
    assert cache_env.client.get("/ac/dangling", headers=cache_env.headers).status_code == 404
    assert cache_env.client.get("/ac/nope-not-here", headers=cache_env.headers).status_code == 404
    assert cache_env.state.index.last_used("ac/nope-not-here") is None


def test_upload_failure_leaves_dangling_entry(cache_env, monkeypatch: pytest.MonkeyPatch) -> None:
    async def failing_write(object_key, data_iter):
        raise BlobStoreError("disk full")

    monkeypatch.setattr(cache_env.state.blobs, "write", failing_write)
    response = cache_env.client.put("/ac/broken", content=b"data", headers=cache_env.headers)
    assert response.status_code == 500
    assert cache_env.state.index.last_used("ac/broken") is not None


def test_read_failure_is_distinct_from_not_found(cache_env, monkeypatch: pytest.MonkeyPatch) -> None:
    original_open = cache_env.state.blobs.open

    async def failing_open(object_key):
        if object_key.startswith("ac/"):
            raise BlobStoreError("backend down")
        return await original_open(object_key)

    monkeypatch.setattr(cache_env.state.blobs, "open", failing_open)
    response = cache_env.client.get("/ac/anything", headers=cache_env.headers)
    assert response.status_code == 503


def _store_other_credential(cache_env) -> None:
    (cache_env.storage / "credentials" / "bob").write_text("bobs-secret", encoding="utf-8")


def test_dot_segment_key_cannot_read_other_credentials(cache_env) -> None:
    _store_other_credential(cache_env)

    response = cache_env.client.get("/ac/%2E%2E/credentials/bob", headers=cache_env.headers)

    assert response.status_code == 400
    assert b"bobs-secret" not in response.content


def test_dot_segment_key_cannot_overwrite_other_credentials(cache_env) -> None:
    _store_other_credential(cache_env)

    response = cache_env.client.put(
        "/cas/%2E%2E/credentials/bob",
        content=b"attacker",
        headers=cache_env.headers,
    )

    assert response.status_code == 400
    assert (cache_env.storage / "credentials" / "bob").read_text(encoding="utf-8") == "bobs-secret"
    assert cache_env.state.index.total_entries() == 0


def test_admin_sweep_requires_token(cache_env) -> None:
    assert cache_env.client.post("/admin/sweep").status_code == 401
    assert cache_env.client.post("/admin/sweep", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_admin_sweep_removes_stale_entries(cache_env) -> None:
    index = cache_env.state.index
    client = cache_env.client
    assert client.put("/ac/old", content=b"old", headers=cache_env.headers).status_code == 201
    assert client.put("/ac/new", content=b"new", headers=cache_env.headers).status_code == 201
    index.upsert("ac/old", 100)

    response = client.post("/admin/sweep", headers={"Authorization": f"Bearer {ADMIN_TOKEN}"})
    assert response.status_code == 200
    report = response.json()
    assert report["deleted"] == 1
    assert report["aborted"] is False

    assert index.last_used("ac/old") is None
    assert not (cache_env.storage / "ac" / "old").exists()
    assert client.get("/ac/new", headers=cache_env.headers).content == b"new"


def test_metrics_and_status(cache_env) -> None:
    client = cache_env.client
    client.put("/cas/abc", content=b"hello", headers=cache_env.headers)

    assert client.get("/metrics").status_code == 401
    metrics = client.get("/metrics", headers={"Authorization": f"Bearer {METRICS_TOKEN}"})
    assert metrics.status_code == 200
    assert "buildcache_requests_total" in metrics.text
    assert "buildcache_index_entries 1.0" in metrics.text

    status_payload = client.get("/status").json()
    assert status_payload["backend"] == "local"
    assert status_payload["total_entries"] == 1

    health = client.get("/healthz")
    assert health.status_code == 200
    assert health.json()["checks"]["index"] == "ok"


def test_scheduled_sweep_runs_in_background(cache_env, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BUILDCACHE_SWEEP_INTERVAL", "0.05")
    app = create_app()
    index = app.state.cache_state.index
    index.upsert("cas/ancient", 100)

    with TestClient(app):
        deadline = time.monotonic() + 5
        while index.last_used("cas/ancient") is not None and time.monotonic() < deadline:
            time.sleep(0.05)

    assert index.last_used("cas/ancient") is None
