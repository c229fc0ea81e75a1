from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from datetime import date
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from sourcing_worker.schemas.addresses import AddressSearchInput
from sourcing_worker.schemas.jobs import DECEASES_INGEST_QUEUE
from sourcing_worker.services.address_search import AddressSearchService
from sourcing_worker.services.opportunities import EnergyDiagnosticRecord, ListingRecord, OpportunityWriter
from sourcing_worker.services.repository import PostgresRepository, RepositoryConflictError

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("SW_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require SW_DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_reset(database_url))


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _reset(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        await conn.execute(
            """
            truncate table
              auction_energy_diagnostic_links,
              listing_energy_diagnostic_links,
              energy_diagnostics,
              opportunities,
              listings,
              jobs
            """
        )
    finally:
        await conn.close()


def _repository(database_url: str, *, retry_base_seconds: int = 0) -> PostgresRepository:
    return PostgresRepository(
        database_url=database_url,
        min_pool_size=1,
        max_pool_size=2,
        job_max_attempts=2,
        job_retry_base_seconds=retry_base_seconds,
        job_retry_max_seconds=600,
    )


def _diagnostic(number: int, square_footage: float) -> EnergyDiagnosticRecord:
    return EnergyDiagnosticRecord(
        external_id=f"DPE-{number}",
        label=f"{number} rue de la Roquette 75011 Paris",
        address=f"{number} rue de la Roquette 75011 Paris",
        zip_code="75011",
        department="75",
        latitude=48.85,
        longitude=2.37,
        opportunity_date=date(2024, 3, 1),
        energy_class="F",
        square_footage=square_footage,
    )


def test_job_lifecycle_retries_then_fails(database_url: str) -> None:
    async def run() -> None:
        repository = _repository(database_url)
        try:
            job = await repository.enqueue_job(DECEASES_INGEST_QUEUE, "manual", {"kind": "manual_path", "path": "x"})
            assert job["status"] == "queued"

            claimed = await repository.claim_next_jobs(DECEASES_INGEST_QUEUE, limit=5, lease_seconds=60)
            assert [item["id"] for item in claimed] == [job["id"]]
            assert claimed[0]["attempt"] == 1
            assert await repository.claim_next_jobs(DECEASES_INGEST_QUEUE, limit=5, lease_seconds=60) == []

            retried = await repository.fail_job(job["id"], {"error": "boom"})
            assert retried["status"] == "queued"

            claimed = await repository.claim_next_jobs(DECEASES_INGEST_QUEUE, limit=5, lease_seconds=60)
            assert claimed[0]["attempt"] == 2
            failed = await repository.fail_job(job["id"], {"error": "boom"})
            assert failed["status"] == "failed"

            with pytest.raises(RepositoryConflictError):
                await repository.complete_job(job["id"], {})
        finally:
            await repository.close()

    _run(run())


def test_completed_jobs_are_pruned_to_retention(database_url: str) -> None:
    async def run() -> None:
        repository = _repository(database_url)
        try:
            for index in range(3):
                await repository.enqueue_job(DECEASES_INGEST_QUEUE, f"job-{index}", {}, remove_on_complete=2)
            for job in await repository.claim_next_jobs(DECEASES_INGEST_QUEUE, limit=5, lease_seconds=60):
                await repository.complete_job(job["id"], {"ok": True})
            assert await repository.count_jobs(DECEASES_INGEST_QUEUE, status="done") == 2
        finally:
            await repository.close()

    _run(run())


def test_expired_leases_are_requeued(database_url: str) -> None:
    async def run() -> None:
        repository = _repository(database_url)
        try:
            await repository.enqueue_job(DECEASES_INGEST_QUEUE, "lease", {})
            await repository.claim_next_jobs(DECEASES_INGEST_QUEUE, limit=1, lease_seconds=0)
            assert await repository.requeue_expired_jobs(limit=10) == 1
            assert await repository.count_jobs(DECEASES_INGEST_QUEUE, status="queued") == 1
        finally:
            await repository.close()

    _run(run())


def test_energy_upserts_and_diagnostic_links(database_url: str) -> None:
    async def run() -> None:
        repository = _repository(database_url)
        try:
            writer = OpportunityWriter(repository)
            diagnostics = [_diagnostic(index, 48 + index) for index in range(8)]
            assert await writer.insert_energy_diagnostics(diagnostics) == 8
            assert await writer.insert_energy_diagnostics(diagnostics) == 8

            service = AddressSearchService(repository, max_links=5)
            search = AddressSearchInput(zip_code="75011", energy_class="F", square_footage=50)
            links = await service.search_and_link_for_opportunity(search, "auction-1", "auction")
            again = await service.search_and_link_for_opportunity(search, "auction-1", "auction")

            scores = [link.match_score for link in links]
            assert len(links) == 5
            assert scores == sorted(scores, reverse=True)
            assert scores[0] == 100
            assert len(again) == 5
            assert links[0].energy_diagnostic is not None
            assert links[0].energy_diagnostic.external_id == "DPE-2"
        finally:
            await repository.close()

    _run(run())


def test_listing_inserts_keep_the_first_copy(database_url: str) -> None:
    def listing(price: float) -> ListingRecord:
        return ListingRecord(
            external_id="seloger-991",
            label="Appartement T2",
            address="Lyon, 69003",
            zip_code="69003",
            department="69",
            latitude=45.76,
            longitude=4.85,
            opportunity_date=date(2024, 3, 1),
            url="https://ads.example.test/991",
            source="seloger",
            property_type="flat",
            seller_type="professional",
            price=price,
            pictures=["https://img.example.test/1.jpg"],
            seller_contact={"name": "Agence Part-Dieu"},
        )

    async def run() -> None:
        repository = _repository(database_url)
        try:
            writer = OpportunityWriter(repository)
            await writer.insert_listings([listing(210000)])
            await writer.insert_listings([listing(199000)])

            conn = await asyncpg.connect(database_url)
            try:
                rows = await conn.fetch("select price, pictures, seller_contact from listings")
            finally:
                await conn.close()
            assert len(rows) == 1
            assert rows[0]["price"] == 210000
            assert "img.example.test" in rows[0]["pictures"]
            assert "Agence Part-Dieu" in rows[0]["seller_contact"]
        finally:
            await repository.close()

    _run(run())
