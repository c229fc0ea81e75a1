from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from sourcing_worker.services.storage import (
    LocalObjectStorage,
    StorageError,
    StorageNotFoundError,
    file_name_from_path,
    split_object_path,
)


def test_split_object_path() -> None:
    assert split_object_path("s3://bucket/deceases/raw/a.csv", default_bucket="x") == ("bucket", "deceases/raw/a.csv")
    assert split_object_path("/deceases/raw/a.csv", default_bucket="x") == ("x", "deceases/raw/a.csv")
    with pytest.raises(StorageError):
        split_object_path("s3://bucket-only", default_bucket="x")


def test_file_name_from_path() -> None:
    assert file_name_from_path("s3://bucket/deceases/raw/Deces_2024_M01.csv") == "Deces_2024_M01.csv"
    assert file_name_from_path("plain.csv") == "plain.csv"


def test_upload_download_move_delete(tmp_path: Path) -> None:
    storage = LocalObjectStorage(tmp_path, "sourcing")

    async def run() -> None:
        path = await storage.upload(b"payload", "deceases/raw/a.csv")
        assert path == "s3://sourcing/deceases/raw/a.csv"
        assert await storage.exists(path)
        assert await storage.download(path) == b"payload"

        moved = await storage.move(path, "deceases/processed/a.csv")
        assert moved == "s3://sourcing/deceases/processed/a.csv"
        assert not await storage.exists(path)
        assert await storage.download(moved) == b"payload"

        await storage.delete(moved)
        assert not await storage.exists(moved)

    asyncio.run(run())


def test_missing_objects_raise_not_found(tmp_path: Path) -> None:
    storage = LocalObjectStorage(tmp_path, "sourcing")

    with pytest.raises(StorageNotFoundError):
        asyncio.run(storage.download("s3://sourcing/missing.csv"))
    with pytest.raises(StorageNotFoundError):
        asyncio.run(storage.delete("missing.csv"))


def test_paths_cannot_escape_the_bucket(tmp_path: Path) -> None:
    storage = LocalObjectStorage(tmp_path, "sourcing")

    with pytest.raises(StorageError):
        asyncio.run(storage.upload(b"x", "../outside.csv"))
