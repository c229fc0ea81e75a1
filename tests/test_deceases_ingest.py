from __future__ import annotations

import asyncio
import io
import zipfile
from pathlib import Path
from typing import Any

import httpx
import pytest

from sourcing_worker.jobs.deceases_ingest import ingest_deceases_file
from sourcing_worker.schemas.jobs import DECEASES_CSV_PROCESS_QUEUE, ManualPath, ScheduledWindow
from sourcing_worker.services.http_client import RateLimitedHttpClient
from sourcing_worker.services.insee_files import InseeFileError, InseeFilesClient, extract_csv, monthly_file_name
from sourcing_worker.services.job_queue import JobQueue
from sourcing_worker.services.storage import LocalObjectStorage, StorageNotFoundError

FILES_URL = "https://files.example.test/statistiques/fichier/4190491"
CSV_BYTES = b'"nomprenom";"sexe"\n"MARTIN*JEAN/";"1"\n'


class FakeJobStore:
    def __init__(self) -> None:
        self.jobs: list[dict[str, Any]] = []

    async def enqueue_job(self, queue: str, name: str, payload: dict[str, Any], **options: Any) -> dict[str, Any]:
        job = {"id": f"job-{len(self.jobs) + 1}", "queue": queue, "name": name, "payload": payload, **options}
        self.jobs.append(job)
        return job


def _zip(members: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as bundle:
        for name, content in members.items():
            bundle.writestr(name, content)
    return buffer.getvalue()


def test_monthly_file_name_is_zero_padded() -> None:
    assert monthly_file_name(2024, 1) == "Deces_2024_M01.csv"
    assert monthly_file_name(2023, 12) == "Deces_2023_M12.csv"


def test_extract_csv_picks_preferred_member() -> None:
    archive = _zip({"readme.txt": b"x", "other.csv": b"other", "Deces_2024_M01.csv": CSV_BYTES})

    assert extract_csv(archive, preferred_name="Deces_2024_M01.csv") == CSV_BYTES
    assert extract_csv(archive) == b"other"
    assert extract_csv(CSV_BYTES) == CSV_BYTES
    with pytest.raises(InseeFileError):
        extract_csv(_zip({"readme.txt": b"x"}))


def _ingest(
    payload: ManualPath | ScheduledWindow,
    storage: LocalObjectStorage,
    store: FakeJobStore,
    handler=None,
) -> dict[str, str]:
    async def run() -> dict[str, str]:
        transport = httpx.MockTransport(handler or (lambda request: httpx.Response(404)))
        async with httpx.AsyncClient(transport=transport) as raw_client:
            http = RateLimitedHttpClient(min_interval_seconds=0, max_attempts=1, client=raw_client)
            return await ingest_deceases_file(
                payload,
                storage=storage,
                queue=JobQueue(store, remove_on_complete=100, remove_on_fail=100),
                files=InseeFilesClient(http, base_url=FILES_URL),
            )

    return asyncio.run(run())


def test_manual_path_enqueues_processing_of_existing_object(tmp_path: Path) -> None:
    storage = LocalObjectStorage(tmp_path, "sourcing")
    path = asyncio.run(storage.upload(CSV_BYTES, "deceases/raw/upload.csv"))
    store = FakeJobStore()

    result = _ingest(ManualPath(path=path), storage, store)

    assert result == {"csv_job_id": "job-1", "path": path, "file_name": "upload.csv"}
    assert store.jobs[0]["queue"] == DECEASES_CSV_PROCESS_QUEUE
    assert store.jobs[0]["payload"] == {"path": path, "file_name": "upload.csv"}
    assert store.jobs[0]["remove_on_complete"] == 100


def test_manual_path_must_exist(tmp_path: Path) -> None:
    store = FakeJobStore()

    with pytest.raises(StorageNotFoundError):
        _ingest(ManualPath(path="s3://sourcing/deceases/raw/missing.csv"), LocalObjectStorage(tmp_path, "sourcing"), store)
    assert store.jobs == []


def test_scheduled_window_downloads_and_stores_monthly_file(tmp_path: Path) -> None:
    storage = LocalObjectStorage(tmp_path, "sourcing")
    store = FakeJobStore()
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=_zip({"Deces_2024_M01.csv": CSV_BYTES}))

    result = _ingest(ScheduledWindow(year=2024, month=1), storage, store, handler)

    assert seen == [f"{FILES_URL}/Deces_2024_M01.zip"]
    assert result["path"] == "s3://sourcing/deceases/raw/Deces_2024_M01.csv"
    assert result["file_name"] == "Deces_2024_M01.csv"
    assert (tmp_path / "sourcing/deceases/raw/Deces_2024_M01.csv").read_bytes() == CSV_BYTES
    assert store.jobs[0]["payload"]["path"] == result["path"]
