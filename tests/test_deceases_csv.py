from __future__ import annotations

import asyncio
from datetime import date
from pathlib import Path
from typing import Any

import pytest

from sourcing_worker.jobs.deceases_csv import (
    DeceasesCsvProcessor,
    JobState,
    archive_path_for,
    build_business_key,
    build_deceases_opportunity,
    chunked,
    clean_person_name,
    extract_department,
    extract_zip_code,
    failed_records_key,
    parse_compact_date,
    split_person_name,
)
from sourcing_worker.schemas.jobs import CsvProcessPayload
from sourcing_worker.services.csv_parsing import CsvParsingError, DeathRecordRow
from sourcing_worker.services.enrichment import MairieEnricher
from sourcing_worker.services.insee_api import ContactInfo, Coordinates, EnrichmentResult
from sourcing_worker.services.opportunities import OpportunityWriter
from sourcing_worker.services.repository import ConflictPolicy
from sourcing_worker.services.storage import LocalObjectStorage, StorageNotFoundError

HEADER = '"nomprenom";"sexe";"datenaiss";"lieunaiss";"commnaiss";"paysnaiss";"datedeces";"lieudeces";"actedeces"\n'
RAW_PATH = "s3://sourcing/deceases/raw/Deces_2023_M12.csv"


def _line(nomprenom: str, lieudeces: str, acte: str, *, birth: str = "19400101", death: str = "20231201") -> str:
    return f'"{nomprenom}";"1";"{birth}";"75056";"PARIS";"";"{death}";"{lieudeces}";"{acte}"\n'


class FakeMairieClient:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def fetch_mairie_data(self, insee_code: str) -> EnrichmentResult | None:
        self.calls.append(insee_code)
        if insee_code == "13055":
            raise RuntimeError("directory exploded")
        if insee_code != "75001":
            return None
        return EnrichmentResult(
            coordinates=Coordinates(latitude=48.8597, longitude=2.3412),
            contact_info=ContactInfo(
                name="Mairie du 1er",
                phone="01 44 50 75 01",
                email=None,
                address={"code_postal": "75042", "nom_commune": "Paris Cedex 01"},
            ),
            zip_code="75001",
            address="4 place du Louvre 75001 Paris",
        )


class InMemoryUpsertStore:
    def __init__(self) -> None:
        self.rows: dict[str, dict[str, Any]] = {}
        self.batches: list[int] = []

    async def upsert_rows(self, table: str, rows: list[dict[str, Any]], policy: ConflictPolicy) -> int:
        assert table == "opportunities"
        self.batches.append(len(rows))
        for row in rows:
            self.rows.setdefault(row[policy.target], dict(row))
        return len(rows)


def _processor(storage: LocalObjectStorage, store: InMemoryUpsertStore, *, chunk_size: int = 1000) -> DeceasesCsvProcessor:
    return DeceasesCsvProcessor(
        storage=storage,
        enricher=MairieEnricher(FakeMairieClient()),  # type: ignore[arg-type]
        writer=OpportunityWriter(store),
        min_age_years=50,
        chunk_size=chunk_size,
    )


def _upload(storage: LocalObjectStorage, content: str) -> str:
    return asyncio.run(storage.upload(content.encode("utf-8"), "deceases/raw/Deces_2023_M12.csv"))


def _payload() -> CsvProcessPayload:
    return CsvProcessPayload(path=RAW_PATH, file_name="Deces_2023_M12.csv")


def test_department_and_zip_extraction() -> None:
    assert extract_department("75101") == "75"
    assert extract_department("97105") == "971"
    assert extract_department("2A004") == "2A"
    assert extract_department("7") is None
    assert extract_zip_code("75101") == "75101"
    assert extract_zip_code("750") == "75000"
    assert extract_zip_code("2A04") == "2A04"


def test_compact_dates_and_names() -> None:
    assert parse_compact_date("20231201") == date(2023, 12, 1)
    assert parse_compact_date("20230231") is None
    assert parse_compact_date("2023-12-01") is None
    assert clean_person_name("MARTIN*JEAN PIERRE/") == "Martin Jean Pierre"
    assert split_person_name("MARTIN*JEAN PIERRE/") == {"last_name": "Martin", "first_name": "Jean Pierre"}


def test_business_key_and_storage_keys() -> None:
    row = DeathRecordRow("MARTIN*JEAN/", "1", "19400101", "75056", "PARIS", "", "20231201", "75001", "001")

    assert build_business_key(row) == "75001_20231201_001"
    assert failed_records_key("Deces_2023_M12.csv") == "deceases/failed/Deces_2023_M12_failed.csv"
    assert archive_path_for(RAW_PATH) == "s3://sourcing/deceases/processed/Deces_2023_M12.csv"
    assert [len(chunk) for chunk in chunked([row] * 5, 2)] == [2, 2, 1]


def test_address_prefers_birth_commune_then_mairie_name() -> None:
    enrichment = asyncio.run(FakeMairieClient().fetch_mairie_data("75001"))
    assert enrichment is not None

    with_commune = DeathRecordRow("MARTIN*JEAN/", "1", "19400101", "75056", "PARIS", "", "20231201", "75001", "001")
    without_commune = DeathRecordRow("MARTIN*JEAN/", "1", "19400101", "75056", "", "", "20231201", "75001", "002")

    assert build_deceases_opportunity(with_commune, enrichment).address == "PARIS"  # type: ignore[union-attr]
    assert build_deceases_opportunity(without_commune, enrichment).address == "Mairie du 1er"  # type: ignore[union-attr]

    enrichment.contact_info.name = ""
    assert build_deceases_opportunity(without_commune, enrichment).address == "Commune 75001"  # type: ignore[union-attr]


def test_process_enriches_persists_archives_and_quarantines(tmp_path: Path) -> None:
    storage = LocalObjectStorage(tmp_path, "sourcing")
    store = InMemoryUpsertStore()
    _upload(
        storage,
        HEADER
        + _line("MARTIN*JEAN/", "75001", "001")
        + _line("DURAND*ALICE/", "75001", "002", birth="19900505")
        + _line("INCONNU*PAUL/", "99999", "003")
        + _line("", "75001", "004")
        + _line("BLANC*LEA/", "13055", "005"),
    )
    processor = _processor(storage, store)

    stats = asyncio.run(processor.process(_payload()))

    assert processor.state is JobState.ARCHIVED
    assert stats.as_result() == {
        "total_records": 5,
        "records_processed": 4,
        "records_filtered": 1,
        "geocoding_attempts": 3,
        "geocoding_successes": 1,
        "mairie_info_attempts": 3,
        "mairie_info_successes": 1,
        "opportunities_inserted": 1,
        "errors": 3,
        "failed_rows": 3,
    }

    opportunity = store.rows["75001_20231201_001"]
    assert "Martin Jean" in opportunity["label"]
    assert opportunity["department"] == "75"
    assert opportunity["zip_code"] == "75001"
    assert opportunity["address"] == "PARIS"
    assert opportunity["opportunity_date"] == date(2023, 12, 1)
    assert opportunity["contact_data"]["name"] == "Mairie du 1er"
    assert opportunity["extra_data"] == {"last_name": "Martin", "first_name": "Jean"}

    assert not (tmp_path / "sourcing/deceases/raw/Deces_2023_M12.csv").exists()
    assert (tmp_path / "sourcing/deceases/processed/Deces_2023_M12.csv").exists()
    quarantine = (tmp_path / "sourcing/deceases/failed/Deces_2023_M12_failed.csv").read_text(encoding="utf-8")
    assert "Failed to fetch mairie info for commune: 99999" in quarantine
    assert "Missing required fields: nomprenom, datedeces, or lieudeces" in quarantine
    assert "directory exploded" in quarantine


def test_rerunning_a_file_does_not_duplicate_opportunities(tmp_path: Path) -> None:
    storage = LocalObjectStorage(tmp_path, "sourcing")
    store = InMemoryUpsertStore()
    content = HEADER + _line("MARTIN*JEAN/", "75001", "001") + _line("PETIT*LUC/", "75001", "002")

    _upload(storage, content)
    asyncio.run(_processor(storage, store).process(_payload()))
    _upload(storage, content)
    asyncio.run(_processor(storage, store).process(_payload()))

    assert sorted(store.rows) == ["75001_20231201_001", "75001_20231201_002"]


def test_chunks_are_persisted_separately(tmp_path: Path) -> None:
    storage = LocalObjectStorage(tmp_path, "sourcing")
    store = InMemoryUpsertStore()
    _upload(storage, HEADER + "".join(_line(f"NOM{i}*PRENOM/", "75001", f"{i:03d}") for i in range(5)))

    stats = asyncio.run(_processor(storage, store, chunk_size=2).process(_payload()))

    assert store.batches == [2, 2, 1]
    assert stats.opportunities_inserted == 5
    assert not (tmp_path / "sourcing/deceases/failed").exists()


def test_malformed_file_fails_before_any_row_is_persisted(tmp_path: Path) -> None:
    storage = LocalObjectStorage(tmp_path, "sourcing")
    store = InMemoryUpsertStore()
    _upload(storage, HEADER + _line("MARTIN*JEAN/", "75001", "001") + '"A";"B"\n')
    processor = _processor(storage, store)

    with pytest.raises(CsvParsingError):
        asyncio.run(processor.process(_payload()))

    assert processor.state is JobState.FAILED
    assert store.rows == {}
    assert (tmp_path / "sourcing/deceases/raw/Deces_2023_M12.csv").exists()


def test_missing_source_file_fails_the_job(tmp_path: Path) -> None:
    processor = _processor(LocalObjectStorage(tmp_path, "sourcing"), InMemoryUpsertStore())

    with pytest.raises(StorageNotFoundError):
        asyncio.run(processor.process(_payload()))
    assert processor.state is JobState.FAILED


def test_source_outside_raw_prefix_is_left_in_place(tmp_path: Path) -> None:
    storage = LocalObjectStorage(tmp_path, "sourcing")
    store = InMemoryUpsertStore()
    path = asyncio.run(storage.upload((HEADER + _line("MARTIN*JEAN/", "75001", "001")).encode(), "manual/deces.csv"))

    processor = _processor(storage, store)
    asyncio.run(processor.process(CsvProcessPayload(path=path, file_name="deces.csv")))

    assert processor.state is JobState.ARCHIVED
    assert (tmp_path / "sourcing/manual/deces.csv").exists()
