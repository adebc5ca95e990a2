from __future__ import annotations

import json
from pathlib import Path

import pytest

from buildcache.cache_server.index import MetadataIndex
from buildcache.cli import admin, sweep


@pytest.fixture
def cli_env(tmp_path: Path, storage_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    db_path = tmp_path / "index.db"
    monkeypatch.setenv("BUILDCACHE_STORAGE_PATH", storage_path.as_posix())
    monkeypatch.setenv("BUILDCACHE_INDEX_DB", db_path.as_posix())
    return db_path


@pytest.mark.asyncio
async def test_admin_issue_and_revoke(cli_env: Path, storage_path: Path, capsys) -> None:
    assert await admin.run(["issue", "alice", "--value", "secret1"]) == 0
    assert capsys.readouterr().out.strip() == "secret1"
    assert (storage_path / "credentials" / "alice").read_text() == "secret1"

    assert await admin.run(["issue", "bob"]) == 0
    generated = capsys.readouterr().out.strip()
    assert len(generated) >= 32
    assert (storage_path / "credentials" / "bob").read_text() == generated

    assert await admin.run(["revoke", "alice"]) == 0
    assert not (storage_path / "credentials" / "alice").exists()


@pytest.mark.asyncio
async def test_admin_audit_adopts_orphans(cli_env: Path, storage_path: Path, capsys) -> None:
    (storage_path / "cas").mkdir()
    (storage_path / "cas" / "lost").write_bytes(b"data")

    assert await admin.run(["audit", "--adopt", "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload == {"orphans": ["cas/lost"], "adopted": 1}

    index = MetadataIndex(f"sqlite+pysqlite:///{cli_env.as_posix()}")
    try:
        assert index.last_used("cas/lost") is not None
    finally:
        index.dispose()


@pytest.mark.asyncio
async def test_local_sweep(cli_env: Path, storage_path: Path, capsys) -> None:
    index = MetadataIndex(f"sqlite+pysqlite:///{cli_env.as_posix()}")
    try:
        index.upsert("ac/old", 100)
        (storage_path / "ac").mkdir()
        (storage_path / "ac" / "old").write_bytes(b"old")
    finally:
        index.dispose()

    assert await sweep.run(["--json"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["deleted"] == 1
    assert not (storage_path / "ac" / "old").exists()


@pytest.mark.asyncio
async def test_remote_sweep_posts_to_server(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    calls = {}

    async def fake_request(base_url, token):
        calls["args"] = (base_url, token)
        return {"deleted": 3, "batches": 1, "aborted": False, "error": None}

    monkeypatch.setattr(sweep, "request_sweep", fake_request)
    assert await sweep.run(["--url", "http://cache:8080", "--token", "t"]) == 0
    assert calls["args"] == ("http://cache:8080", "t")
    assert "3 entries removed in 1 batches" in capsys.readouterr().out
