from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import TypeAdapter, ValidationError

from sourcing_worker.core.config import Settings
from sourcing_worker.jobs.deceases_csv import DeceasesCsvProcessor
from sourcing_worker.jobs.deceases_ingest import ingest_deceases_file
from sourcing_worker.jobs.energy_diagnostics import process_energy_diagnostics
from sourcing_worker.jobs.listings import process_listings
from sourcing_worker.schemas.addresses import DiagnosticLink
from sourcing_worker.schemas.jobs import (
    ADDRESS_LINKS_QUEUE,
    DECEASES_CSV_PROCESS_QUEUE,
    DECEASES_INGEST_QUEUE,
    ENERGY_DIAGNOSTICS_QUEUE,
    LISTINGS_QUEUE,
    AddressLinksPayload,
    CsvProcessPayload,
    DeceasesIngestPayload,
    EnergyDiagnosticsPayload,
    ListingsPayload,
)
from sourcing_worker.services.ademe_api import AdemeApiClient
from sourcing_worker.services.address_search import AddressSearchService
from sourcing_worker.services.enrichment import MairieEnricher
from sourcing_worker.services.http_client import RateLimitedHttpClient
from sourcing_worker.services.insee_api import InseeApiClient
from sourcing_worker.services.insee_files import InseeFilesClient
from sourcing_worker.services.job_queue import JobQueue
from sourcing_worker.services.moteur_immo_api import MoteurImmoApiClient
from sourcing_worker.services.opportunities import OpportunityWriter
from sourcing_worker.services.storage import ObjectStorage

logger = logging.getLogger(__name__)

_INGEST_PAYLOAD = TypeAdapter(DeceasesIngestPayload)


class JobPayloadError(ValueError):
    """Raised when a job payload does not match its queue."""


@dataclass(slots=True)
class JobContext:
    settings: Settings
    repository: Any
    storage: ObjectStorage
    http: RateLimitedHttpClient
    queue: JobQueue


JobHandler = Callable[[dict[str, Any], JobContext], Awaitable[dict[str, Any]]]


async def execute_deceases_ingest(job: dict[str, Any], ctx: JobContext) -> dict[str, Any]:
    payload = _parse(job, _INGEST_PAYLOAD.validate_python)
    return await ingest_deceases_file(
        payload,
        storage=ctx.storage,
        queue=ctx.queue,
        files=InseeFilesClient(ctx.http, base_url=ctx.settings.insee_files_base_url),
    )


async def execute_deceases_csv_process(job: dict[str, Any], ctx: JobContext) -> dict[str, Any]:
    payload = _parse(job, CsvProcessPayload.model_validate)
    processor = DeceasesCsvProcessor(
        storage=ctx.storage,
        enricher=MairieEnricher(InseeApiClient(ctx.http, base_url=ctx.settings.annuaire_api_base_url)),
        writer=OpportunityWriter(ctx.repository, batch_size=ctx.settings.persistence_batch_size),
        min_age_years=ctx.settings.deceases_min_age_years,
        chunk_size=ctx.settings.csv_chunk_size,
    )
    stats = await processor.process(payload)
    return stats.as_result()


async def execute_energy_diagnostics(job: dict[str, Any], ctx: JobContext) -> dict[str, Any]:
    payload = _parse(job, EnergyDiagnosticsPayload.model_validate)
    stats = await process_energy_diagnostics(
        payload,
        client=AdemeApiClient(
            ctx.http,
            base_url=ctx.settings.ademe_api_base_url,
            page_size=ctx.settings.ademe_page_size,
        ),
        writer=OpportunityWriter(ctx.repository, batch_size=ctx.settings.persistence_batch_size),
    )
    return stats.as_result()


async def execute_address_links(job: dict[str, Any], ctx: JobContext) -> dict[str, Any]:
    payload = _parse(job, AddressLinksPayload.model_validate)
    service = AddressSearchService(ctx.repository, max_links=ctx.settings.max_diagnostic_links)
    links: list[DiagnosticLink] = await service.search_and_link_for_opportunity(
        payload.search,
        payload.opportunity_id,
        payload.opportunity_type,
    )
    return {
        "opportunity_id": payload.opportunity_id,
        "opportunity_type": payload.opportunity_type,
        "links": [{"energy_diagnostic_id": link.energy_diagnostic_id, "match_score": link.match_score} for link in links],
    }


async def execute_listings(job: dict[str, Any], ctx: JobContext) -> dict[str, Any]:
    payload = _parse(job, ListingsPayload.model_validate)
    if not ctx.settings.moteur_immo_api_key:
        raise JobPayloadError("SW_MOTEUR_IMMO_API_KEY is required for listings jobs")
    stats = await process_listings(
        payload,
        client=MoteurImmoApiClient(
            ctx.http,
            base_url=ctx.settings.moteur_immo_api_base_url,
            api_key=ctx.settings.moteur_immo_api_key,
            page_size=ctx.settings.listings_page_size,
            max_pages=ctx.settings.listings_max_pages,
        ),
        writer=OpportunityWriter(ctx.repository, batch_size=ctx.settings.persistence_batch_size),
    )
    return stats.as_result()


JOB_HANDLERS: dict[str, JobHandler] = {
    DECEASES_INGEST_QUEUE: execute_deceases_ingest,
    DECEASES_CSV_PROCESS_QUEUE: execute_deceases_csv_process,
    ENERGY_DIAGNOSTICS_QUEUE: execute_energy_diagnostics,
    ADDRESS_LINKS_QUEUE: execute_address_links,
    LISTINGS_QUEUE: execute_listings,
}


async def execute_job(job: dict[str, Any], ctx: JobContext) -> dict[str, Any]:
    handler = JOB_HANDLERS.get(job.get("queue", ""))
    if handler is None:
        raise JobPayloadError(f"no handler registered for queue {job.get('queue')!r}")
    logger.info("executing job id=%s queue=%s attempt=%s", job.get("id"), job.get("queue"), job.get("attempt"))
    return await handler(job, ctx)


def _parse(job: dict[str, Any], validate: Callable[[Any], Any]) -> Any:
    try:
        return validate(job.get("payload") or {})
    except ValidationError as exc:
        raise JobPayloadError(f"invalid payload for queue {job.get('queue')}: {exc}") from exc
