from __future__ import annotations

import asyncio
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Protocol

from sourcing_worker.core.config import get_settings

logger = logging.getLogger(__name__)

S3_SCHEME = "s3://"


class StorageError(Exception):
    """Base object storage error."""


class StorageNotFoundError(StorageError):
    """Raised when the requested object does not exist."""


class ObjectStorage(Protocol):
    bucket: str

    async def download(self, path: str) -> bytes: ...

    async def upload(self, data: bytes, key: str) -> str: ...

    async def delete(self, path: str) -> None: ...

    async def exists(self, path: str) -> bool: ...

    async def move(self, source_path: str, destination_key: str) -> str: ...


def split_object_path(path: str, *, default_bucket: str) -> tuple[str, str]:
    """Return ``(bucket, key)`` for ``s3://bucket/key`` paths or bare keys."""
    if path.startswith(S3_SCHEME):
        bucket, _, key = path[len(S3_SCHEME) :].partition("/")
        if not bucket or not key:
            raise StorageError(f"invalid object path: {path}")
        return bucket, key
    key = path.lstrip("/")
    if not key:
        raise StorageError(f"invalid object path: {path}")
    return default_bucket, key


def file_name_from_path(path: str) -> str:
    key = path[len(S3_SCHEME) :].partition("/")[2] if path.startswith(S3_SCHEME) else path
    return key.rstrip("/").rsplit("/", 1)[-1] or "unknown.csv"


class LocalObjectStorage:
    """Filesystem-backed object store laid out as ``<root>/<bucket>/<key>``."""

    def __init__(self, root: str | os.PathLike[str], bucket: str) -> None:
        self.root = Path(root)
        self.bucket = bucket

    async def download(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError as exc:
            raise StorageNotFoundError(f"object not found: {path}") from exc
        except OSError as exc:
            raise StorageError(f"failed to read object {path}: {exc}") from exc

    async def upload(self, data: bytes, key: str) -> str:
        target = self._resolve(key)

        def write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(write)
        except OSError as exc:
            raise StorageError(f"failed to write object {key}: {exc}") from exc
        stored_path = self._object_path(key)
        logger.info("uploaded object path=%s bytes=%s", stored_path, len(data))
        return stored_path

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(target.unlink)
        except FileNotFoundError as exc:
            raise StorageNotFoundError(f"object not found: {path}") from exc
        except OSError as exc:
            raise StorageError(f"failed to delete object {path}: {exc}") from exc

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._resolve(path).is_file)

    async def move(self, source_path: str, destination_key: str) -> str:
        data = await self.download(source_path)
        stored_path = await self.upload(data, destination_key)
        await self.delete(source_path)
        logger.info("moved object from=%s to=%s", source_path, stored_path)
        return stored_path

    def _object_path(self, path: str) -> str:
        bucket, key = split_object_path(path, default_bucket=self.bucket)
        return f"{S3_SCHEME}{bucket}/{key}"

    def _resolve(self, path: str) -> Path:
        bucket, key = split_object_path(path, default_bucket=self.bucket)
        base = (self.root / bucket).resolve()
        target = (base / key).resolve()
        if base not in target.parents:
            raise StorageError(f"object path escapes bucket: {path}")
        return target


@lru_cache
def get_storage() -> LocalObjectStorage:
    settings = get_settings()
    return LocalObjectStorage(root=settings.storage_root, bucket=settings.storage_bucket)
