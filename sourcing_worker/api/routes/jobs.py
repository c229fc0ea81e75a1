from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status

from sourcing_worker.schemas.jobs import (
    ADDRESS_LINKS_QUEUE,
    DECEASES_INGEST_QUEUE,
    ENERGY_DIAGNOSTICS_QUEUE,
    LISTINGS_QUEUE,
    AddressLinksPayload,
    DeceasesIngestRequest,
    EnergyDiagnosticsPayload,
    JobOut,
    ListingsPayload,
    TriggerResult,
)
from sourcing_worker.services.job_queue import JobQueue, get_job_queue, trigger_job
from sourcing_worker.services.repository import (
    PostgresRepository,
    RepositoryNotFoundError,
    get_repository,
)

router = APIRouter()


@router.post("/deceases-ingest", response_model=TriggerResult, response_model_exclude_none=True)
async def trigger_deceases_ingest(
    body: Any = Body(default=None),
    job_queue: JobQueue = Depends(get_job_queue),
) -> TriggerResult:
    return await trigger_job(
        job_queue,
        DECEASES_INGEST_QUEUE,
        "manual-deceases-ingest",
        lambda: DeceasesIngestRequest.model_validate(body or {}).to_payload(),
    )


@router.post("/energy-diagnostics", response_model=TriggerResult, response_model_exclude_none=True)
async def trigger_energy_diagnostics(
    body: Any = Body(default=None),
    job_queue: JobQueue = Depends(get_job_queue),
) -> TriggerResult:
    return await trigger_job(
        job_queue,
        ENERGY_DIAGNOSTICS_QUEUE,
        "manual-energy-diagnostics",
        lambda: EnergyDiagnosticsPayload.model_validate(body or {}),
    )


@router.post("/address-links", response_model=TriggerResult, response_model_exclude_none=True)
async def trigger_address_links(
    body: Any = Body(default=None),
    job_queue: JobQueue = Depends(get_job_queue),
) -> TriggerResult:
    return await trigger_job(
        job_queue,
        ADDRESS_LINKS_QUEUE,
        "link-energy-diagnostics",
        lambda: AddressLinksPayload.model_validate(body or {}),
    )


@router.post("/listings", response_model=TriggerResult, response_model_exclude_none=True)
async def trigger_listings(
    body: Any = Body(default=None),
    job_queue: JobQueue = Depends(get_job_queue),
) -> TriggerResult:
    return await trigger_job(
        job_queue,
        LISTINGS_QUEUE,
        "manual-listings",
        lambda: ListingsPayload.model_validate(body or {}),
    )


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: str, repository: PostgresRepository = Depends(get_repository)) -> JobOut:
    try:
        job = await repository.get_job(job_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return JobOut(**job)
