"""Metadata index recording the last-used time of every cached object."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional, Sequence

from sqlalchemy import bindparam, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import SQLAlchemyError


class MetadataIndexError(RuntimeError):
    pass


class MetadataIndex:
    """Table of ``(key, last_used)`` rows; ``last_used`` is whole seconds since the epoch.

    The index must always hold a row for every object in the blob store, so
    rows are written before blobs and deleted after them.
    """

    def __init__(self, database_url: str):
        self._engine = self._create_engine(database_url)
        self._initialise()

    @staticmethod
    def _create_engine(database_url: str) -> Engine:
        url = make_url(database_url)
        if url.drivername.startswith("sqlite") and url.database:
            db_path = Path(url.database).expanduser()
            if not db_path.is_absolute():
                db_path = (Path.cwd() / db_path).resolve()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            url = url.set(database=db_path.as_posix())
            database_url = url.render_as_string(hide_password=False)
        return create_engine(database_url, future=True, pool_pre_ping=True)

    def _initialise(self) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS cache_entries (
                        key TEXT PRIMARY KEY,
                        last_used BIGINT NOT NULL
                    )
                    """
                )
            )
            conn.execute(text("CREATE INDEX IF NOT EXISTS cache_entries_last_used ON cache_entries (last_used)"))

    def upsert(self, key: str, last_used: int) -> None:
        self._run(
            text(
                """
                INSERT INTO cache_entries (key, last_used)
                VALUES (:key, :last_used)
                ON CONFLICT(key) DO UPDATE SET last_used = excluded.last_used
                """
            ),
            {"key": key, "last_used": int(last_used)},
        )

    def touch(self, key: str, last_used: int) -> None:
        """Refresh ``last_used`` for an existing row. Missing rows are left missing."""
        self._run(
            text("UPDATE cache_entries SET last_used = :last_used WHERE key = :key"),
            {"key": key, "last_used": int(last_used)},
        )

    def last_used(self, key: str) -> Optional[int]:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(
                    text("SELECT last_used FROM cache_entries WHERE key = :key"),
                    {"key": key},
                ).fetchone()
        except SQLAlchemyError as exc:
            raise MetadataIndexError(f"Failed to look up {key}") from exc
        return int(row[0]) if row else None

    def stale_keys(self, after: str, stale_before: int, limit: int) -> list[str]:
        """Keys greater than ``after`` whose ``last_used`` is at or before ``stale_before``, in key order."""
        try:
            with self._engine.connect() as conn:
                result = conn.execute(
                    text(
                        """
                        SELECT key FROM cache_entries
                        WHERE key > :after AND last_used <= :stale_before
                        ORDER BY key ASC
                        LIMIT :limit
                        """
                    ),
                    {"after": after, "stale_before": int(stale_before), "limit": int(limit)},
                )
                return [row[0] for row in result]
        except SQLAlchemyError as exc:
            raise MetadataIndexError("Failed to scan for stale entries") from exc

    def delete_many(self, keys: Sequence[str]) -> None:
        if not keys:
            return
        statement = text("DELETE FROM cache_entries WHERE key IN :keys").bindparams(
            bindparam("keys", expanding=True)
        )
        self._run(statement, {"keys": list(keys)})

    def existing_keys(self, keys: Iterable[str]) -> set[str]:
        keys = list(keys)
        if not keys:
            return set()
        statement = text("SELECT key FROM cache_entries WHERE key IN :keys").bindparams(
            bindparam("keys", expanding=True)
        )
        try:
            with self._engine.connect() as conn:
                return {row[0] for row in conn.execute(statement, {"keys": keys})}
        except SQLAlchemyError as exc:
            raise MetadataIndexError("Failed to look up keys") from exc

    def total_entries(self) -> int:
        try:
            with self._engine.connect() as conn:
                count = conn.execute(text("SELECT COUNT(*) FROM cache_entries")).scalar_one()
        except SQLAlchemyError as exc:
            raise MetadataIndexError("Failed to count entries") from exc
        return int(count)

    def ping(self) -> None:
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise MetadataIndexError("Index unavailable") from exc

    def dispose(self) -> None:
        self._engine.dispose()

    def _run(self, statement, params: dict) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(statement, params)
        except SQLAlchemyError as exc:
            raise MetadataIndexError(str(exc)) from exc
