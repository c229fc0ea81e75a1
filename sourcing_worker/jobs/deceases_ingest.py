from __future__ import annotations

import logging

from sourcing_worker.schemas.jobs import DECEASES_CSV_PROCESS_QUEUE, CsvProcessPayload, ManualPath, ScheduledWindow
from sourcing_worker.services.insee_files import InseeFilesClient, monthly_file_name
from sourcing_worker.services.job_queue import JobQueue
from sourcing_worker.services.storage import ObjectStorage, StorageNotFoundError, file_name_from_path

logger = logging.getLogger(__name__)

RAW_PREFIX = "deceases/raw"
CSV_PROCESS_JOB_NAME = "process-deceases-csv"


async def ingest_deceases_file(
    payload: ManualPath | ScheduledWindow,
    *,
    storage: ObjectStorage,
    queue: JobQueue,
    files: InseeFilesClient,
) -> dict[str, str]:
    """Make sure the month's death file is in storage, then queue it for processing."""
    if isinstance(payload, ManualPath):
        if not await storage.exists(payload.path):
            raise StorageNotFoundError(f"object not found: {payload.path}")
        csv_path = payload.path
        file_name = file_name_from_path(payload.path)
    else:
        file_name = monthly_file_name(payload.year, payload.month)
        data = await files.download_monthly_file(payload.year, payload.month)
        csv_path = await storage.upload(data, f"{RAW_PREFIX}/{file_name}")

    job_id = await queue.add(
        DECEASES_CSV_PROCESS_QUEUE,
        CSV_PROCESS_JOB_NAME,
        CsvProcessPayload(path=csv_path, file_name=file_name),
    )
    logger.info("queued death records processing job_id=%s path=%s", job_id, csv_path)
    return {"csv_job_id": job_id, "path": csv_path, "file_name": file_name}
