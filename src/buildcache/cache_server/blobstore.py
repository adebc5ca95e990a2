"""Blob storage backends: local disk or S3-compatible object storage."""

from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional
from uuid import uuid4

import boto3
import structlog
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from ..common.settings import CacheServerSettings

LOGGER = structlog.get_logger("buildcache.blobstore")

CHUNK_SIZE = 64 * 1024
S3_DELETE_LIMIT = 1000
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_TEMP_PREFIX = ".upload-"
_RESERVED_SEGMENTS = {"", ".", ".."}
# Uploads larger than this spill from memory to a temporary file before being
# handed to S3, which switches to multipart transfers for large bodies.
SPOOL_MAX_SIZE = 8 * 1024 * 1024


class BlobStoreError(RuntimeError):
    """A blob store call failed. Absence of an object is not an error."""


class InvalidObjectKey(BlobStoreError):
    pass


def sanitize_key(storage_dir: Path, object_key: str) -> Path:
    """Map an object key onto a file below ``storage_dir``.

    Keys are opaque names, so a key may only ever name one file: empty, ``.``
    and ``..`` segments are rejected rather than collapsed.
    """
    segments = object_key.split("/")
    if any(segment in _RESERVED_SEGMENTS for segment in segments):
        raise InvalidObjectKey(f"Invalid object key: {object_key!r}")
    root = storage_dir.resolve()
    resolved = root.joinpath(*segments).resolve(strict=False)
    if resolved == root or not resolved.is_relative_to(root):
        raise InvalidObjectKey(f"Invalid object key: {object_key!r}")
    return resolved


async def iter_file(path: Path) -> AsyncIterator[bytes]:
    handle = await asyncio.to_thread(path.open, "rb")
    try:
        while True:
            chunk = await asyncio.to_thread(handle.read, CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        handle.close()


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    yield data


class BlobStore:
    def check_key(self, object_key: str) -> None:
        """Raise ``InvalidObjectKey`` when the backend cannot store ``object_key``."""

    async def write(self, object_key: str, data_iter: AsyncIterator[bytes]) -> int:  # pragma: no cover - interface
        raise NotImplementedError

    async def open(self, object_key: str) -> Optional[AsyncIterator[bytes]]:
        """Return an async iterator over the object's bytes, or ``None`` when absent."""
        raise NotImplementedError

    async def delete_many(self, object_keys: Iterable[str]) -> None:
        raise NotImplementedError

    async def list_keys(self, prefix: str) -> list[str]:
        raise NotImplementedError

    def status(self) -> dict[str, object]:
        raise NotImplementedError

    async def put_bytes(self, object_key: str, data: bytes) -> int:
        return await self.write(object_key, _single_chunk(data))

    async def read_small(self, object_key: str) -> Optional[bytes]:
        stream = await self.open(object_key)
        if stream is None:
            return None
        return b"".join([chunk async for chunk in stream])


class LocalBlobStore(BlobStore):
    def __init__(self, storage_path: Path):
        self._root = storage_path

    def check_key(self, object_key: str) -> None:
        sanitize_key(self._root, object_key)

    async def write(self, object_key: str, data_iter: AsyncIterator[bytes]) -> int:
        path = sanitize_key(self._root, object_key)
        tmp_path = path.with_name(f"{_TEMP_PREFIX}{uuid4().hex}")
        written = 0
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            with tmp_path.open("wb") as file_obj:
                async for chunk in data_iter:
                    await asyncio.to_thread(file_obj.write, chunk)
                    written += len(chunk)
            await asyncio.to_thread(os.replace, tmp_path, path)
        except OSError as exc:
            raise BlobStoreError(f"Failed to write {object_key}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return written

    async def open(self, object_key: str) -> Optional[AsyncIterator[bytes]]:
        path = sanitize_key(self._root, object_key)
        if not path.is_file():
            return None
        return iter_file(path)

    async def delete_many(self, object_keys: Iterable[str]) -> None:
        for object_key in object_keys:
            try:
                path = sanitize_key(self._root, object_key)
            except InvalidObjectKey:
                # Nothing can be stored under such a key, so there is nothing to delete.
                LOGGER.warning("invalid_object_key_skipped", cache_key=object_key)
                continue
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise BlobStoreError(f"Failed to delete {object_key}") from exc
            self._prune_empty_parents(path)

    async def list_keys(self, prefix: str) -> list[str]:
        root = self._root.resolve()
        base = root.joinpath(*prefix.rstrip("/").split("/")) if prefix.strip("/") else root
        if not base.exists():
            return []
        keys = []
        for item in base.rglob("*"):
            if item.is_file() and not item.name.startswith(_TEMP_PREFIX):
                keys.append(item.relative_to(root).as_posix())
        return sorted(key for key in keys if key.startswith(prefix))

    def status(self) -> dict[str, object]:
        self._root.mkdir(parents=True, exist_ok=True)
        return {
            "backend": "local",
            "storage_path": str(self._root),
            "writable": self._root.exists() and os.access(self._root, os.W_OK),
        }

    def _prune_empty_parents(self, path: Path) -> None:
        root = self._root.resolve()
        parent = path.parent
        while parent != root and parent.exists():
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent


class S3BlobStore(BlobStore):
    def __init__(self, settings: CacheServerSettings):
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._bucket = settings.s3_bucket
        self._endpoint = settings.s3_endpoint_url

    async def write(self, object_key: str, data_iter: AsyncIterator[bytes]) -> int:
        written = 0
        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE) as spool:
            async for chunk in data_iter:
                await asyncio.to_thread(spool.write, chunk)
                written += len(chunk)
            spool.seek(0)
            try:
                await asyncio.to_thread(
                    self._client.upload_fileobj,
                    spool,
                    self._bucket,
                    self._object_key(object_key),
                )
            except (ClientError, BotoCoreError, S3UploadFailedError) as exc:
                raise BlobStoreError(f"Failed to write {object_key}") from exc
        return written

    async def open(self, object_key: str) -> Optional[AsyncIterator[bytes]]:
        try:
            response = await asyncio.to_thread(
                self._client.get_object,
                Bucket=self._bucket,
                Key=self._object_key(object_key),
            )
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return None
            raise BlobStoreError(f"Failed to read {object_key}") from exc
        except BotoCoreError as exc:
            raise BlobStoreError(f"Failed to read {object_key}") from exc
        return self._iter_body(response["Body"])

    async def delete_many(self, object_keys: Iterable[str]) -> None:
        keys = [self._object_key(key) for key in object_keys]
        for start in range(0, len(keys), S3_DELETE_LIMIT):
            chunk = keys[start:start + S3_DELETE_LIMIT]
            try:
                response = await asyncio.to_thread(
                    self._client.delete_objects,
                    Bucket=self._bucket,
                    Delete={"Objects": [{"Key": key} for key in chunk], "Quiet": True},
                )
            except (ClientError, BotoCoreError) as exc:
                raise BlobStoreError(f"Failed to delete {len(chunk)} objects") from exc
            errors = [error for error in response.get("Errors", []) if error.get("Code") not in _MISSING_CODES]
            if errors:
                raise BlobStoreError(f"Failed to delete {len(errors)} objects: {errors[0].get('Key')}")

    async def list_keys(self, prefix: str) -> list[str]:
        def _list() -> list[str]:
            paginator = self._client.get_paginator("list_objects_v2")
            keys: list[str] = []
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                keys.extend(item["Key"] for item in page.get("Contents", []))
            return keys

        try:
            return sorted(await asyncio.to_thread(_list))
        except (ClientError, BotoCoreError) as exc:
            raise BlobStoreError(f"Failed to list {prefix}") from exc

    def status(self) -> dict[str, object]:
        return {
            "backend": "s3",
            "bucket": self._bucket,
            "endpoint": self._endpoint,
        }

    @staticmethod
    def _object_key(object_key: str) -> str:
        return object_key.lstrip("/")

    @staticmethod
    async def _iter_body(body) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await asyncio.to_thread(body.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def build_blob_store(settings: CacheServerSettings) -> BlobStore:
    if settings.s3_bucket:
        if not settings.s3_endpoint_url:
            raise RuntimeError("S3 configuration incomplete for cache server")
        return S3BlobStore(settings)
    return LocalBlobStore(settings.storage_path)
