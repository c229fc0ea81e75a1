from __future__ import annotations

import itertools
import logging
import re
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any

from sourcing_worker.schemas.jobs import CsvProcessPayload
from sourcing_worker.services.csv_parsing import (
    DeathRecordRow,
    RowFailure,
    generate_failed_records_csv,
    parse_death_records,
)
from sourcing_worker.services.enrichment import MairieEnricher
from sourcing_worker.services.insee_api import EnrichmentResult
from sourcing_worker.services.opportunities import DeceasesOpportunity, OpportunityWriter
from sourcing_worker.services.storage import ObjectStorage

logger = logging.getLogger(__name__)

FAILED_RECORDS_PREFIX = "deceases/failed"
OVERSEAS_DEPARTMENT_PREFIXES = ("971", "972", "973", "974", "976")
CORSICA_DEPARTMENT_PREFIXES = ("2A", "2B")
REQUIRED_ROW_FIELDS = ("nomprenom", "datedeces", "lieudeces")
_WORD_START_RE = re.compile(r"\b\w")


class JobState(str, Enum):
    DEQUEUED = "dequeued"
    DOWNLOADING = "downloading"
    PARSING = "parsing"
    PROCESSING_BATCHES = "processing_batches"
    FINALIZING = "finalizing"
    ARCHIVED = "archived"
    FAILED = "failed"


_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.DEQUEUED: frozenset({JobState.DOWNLOADING, JobState.FAILED}),
    JobState.DOWNLOADING: frozenset({JobState.PARSING, JobState.FAILED}),
    JobState.PARSING: frozenset({JobState.PROCESSING_BATCHES, JobState.FAILED}),
    JobState.PROCESSING_BATCHES: frozenset({JobState.FINALIZING, JobState.FAILED}),
    JobState.FINALIZING: frozenset({JobState.ARCHIVED, JobState.FAILED}),
    JobState.ARCHIVED: frozenset(),
    JobState.FAILED: frozenset(),
}


class InvalidStateTransitionError(RuntimeError):
    pass


@dataclass(slots=True)
class CsvProcessingStats:
    total_records: int = 0
    records_processed: int = 0
    records_filtered: int = 0
    geocoding_attempts: int = 0
    geocoding_successes: int = 0
    mairie_info_attempts: int = 0
    mairie_info_successes: int = 0
    opportunities_inserted: int = 0
    errors: int = 0
    failed_rows: list[RowFailure] = field(default_factory=list)

    def as_result(self) -> dict[str, Any]:
        return {
            "total_records": self.total_records,
            "records_processed": self.records_processed,
            "records_filtered": self.records_filtered,
            "geocoding_attempts": self.geocoding_attempts,
            "geocoding_successes": self.geocoding_successes,
            "mairie_info_attempts": self.mairie_info_attempts,
            "mairie_info_successes": self.mairie_info_successes,
            "opportunities_inserted": self.opportunities_inserted,
            "errors": self.errors,
            "failed_rows": len(self.failed_rows),
        }


def extract_department(insee_code: str) -> str | None:
    if len(insee_code) < 2:
        return None
    for prefix in (*OVERSEAS_DEPARTMENT_PREFIXES, *CORSICA_DEPARTMENT_PREFIXES):
        if insee_code.startswith(prefix):
            return prefix
    return insee_code[:2]


def extract_zip_code(insee_code: str) -> str:
    if len(insee_code) >= 5:
        return insee_code[:5]
    if insee_code.startswith(("97", *CORSICA_DEPARTMENT_PREFIXES)):
        return insee_code
    return insee_code.ljust(5, "0")


def parse_compact_date(value: str) -> date | None:
    """``YYYYMMDD`` to a date, ``None`` for anything else."""
    if len(value) != 8 or not value.isdigit():
        return None
    try:
        return date(int(value[:4]), int(value[4:6]), int(value[6:]))
    except ValueError:
        return None


def clean_person_name(nomprenom: str) -> str:
    cleaned = nomprenom.replace("*", " ").removesuffix("/")
    return _WORD_START_RE.sub(lambda match: match.group().upper(), cleaned.lower()).strip()


def split_person_name(nomprenom: str) -> dict[str, str]:
    last_name, _, first_names = nomprenom.removesuffix("/").partition("*")
    return {
        "last_name": clean_person_name(last_name),
        "first_name": clean_person_name(first_names),
    }


def build_business_key(row: DeathRecordRow) -> str:
    return f"{row.lieudeces}_{row.datedeces}_{row.actedeces}"


def failed_records_key(file_name: str) -> str:
    stem = file_name.removesuffix(".csv")
    return f"{FAILED_RECORDS_PREFIX}/{stem}_failed.csv"


def archive_path_for(source_path: str) -> str:
    return source_path.replace("/raw/", "/processed/", 1)


def build_deceases_opportunity(row: DeathRecordRow, enrichment: EnrichmentResult) -> DeceasesOpportunity | RowFailure:
    department = extract_department(row.lieudeces)
    if department is None:
        return RowFailure(row=row, error=f"Invalid INSEE code: {row.lieudeces}")

    opportunity_date = parse_compact_date(row.datedeces)
    if opportunity_date is None:
        return RowFailure(row=row, error=f"Invalid date format: {row.datedeces}")

    zip_code = enrichment.zip_code if len(enrichment.zip_code) == 5 else extract_zip_code(row.lieudeces)
    address = row.commnaiss or enrichment.contact_info.name or f"Commune {row.lieudeces}"
    return DeceasesOpportunity(
        external_id=build_business_key(row),
        label=clean_person_name(row.nomprenom),
        address=address,
        zip_code=zip_code,
        department=department,
        latitude=enrichment.coordinates.latitude,
        longitude=enrichment.coordinates.longitude,
        opportunity_date=opportunity_date,
        contact_data=enrichment.contact_payload(),
        extra_data=split_person_name(row.nomprenom),
    )


def chunked(rows: Iterable[DeathRecordRow], size: int) -> Iterator[list[DeathRecordRow]]:
    iterator = iter(rows)
    while chunk := list(itertools.islice(iterator, size)):
        yield chunk


class DeceasesCsvProcessor:
    """Runs one death records file through parse, enrichment, persistence and archiving.

    Build one instance per job: the enricher memo and the stats are job-local.
    """

    def __init__(
        self,
        *,
        storage: ObjectStorage,
        enricher: MairieEnricher,
        writer: OpportunityWriter,
        min_age_years: int = 50,
        chunk_size: int = 1000,
    ) -> None:
        self.storage = storage
        self.enricher = enricher
        self.writer = writer
        self.min_age_years = min_age_years
        self.chunk_size = max(1, chunk_size)
        self.state = JobState.DEQUEUED
        self.stats = CsvProcessingStats()

    async def process(self, payload: CsvProcessPayload) -> CsvProcessingStats:
        logger.info("starting death records job path=%s file_name=%s", payload.path, payload.file_name)
        try:
            self._transition(JobState.DOWNLOADING)
            data = await self.storage.download(payload.path)

            self._transition(JobState.PARSING)
            parsed = parse_death_records(data, min_age_years=self.min_age_years)
            self.stats.total_records = parsed.stats.total_records
            self.stats.records_filtered = parsed.stats.records_filtered

            self._transition(JobState.PROCESSING_BATCHES)
            await self._process_rows(parsed.rows)
        except Exception:
            self._transition(JobState.FAILED)
            logger.exception(
                "death records job failed path=%s state=%s stats=%s",
                payload.path,
                self.state.value,
                self.stats.as_result(),
            )
            raise

        self._transition(JobState.FINALIZING)
        await self._finalize(payload)
        self._transition(JobState.ARCHIVED)
        logger.info("death records job completed file_name=%s stats=%s", payload.file_name, self.stats.as_result())
        return self.stats

    async def _process_rows(self, rows: Sequence[DeathRecordRow]) -> None:
        if not rows:
            logger.warning("no death records left after filtering")
            return

        total_chunks = (len(rows) + self.chunk_size - 1) // self.chunk_size
        for index, chunk in enumerate(chunked(rows, self.chunk_size), start=1):
            logger.info("processing chunk %s/%s size=%s", index, total_chunks, len(chunk))
            opportunities = await self._process_chunk(chunk)
            if opportunities:
                self.stats.opportunities_inserted += await self.writer.insert_deceases_opportunities(opportunities)
            self.stats.records_processed += len(chunk)
            logger.info(
                "chunk completed index=%s opportunities=%s total_inserted=%s errors=%s",
                index,
                len(opportunities),
                self.stats.opportunities_inserted,
                self.stats.errors,
            )

    async def _process_chunk(self, chunk: Sequence[DeathRecordRow]) -> list[DeceasesOpportunity]:
        opportunities: list[DeceasesOpportunity] = []
        for row in chunk:
            try:
                outcome = await self._process_row(row)
            except Exception as exc:
                outcome = RowFailure(row=row, error=str(exc) or exc.__class__.__name__)

            if isinstance(outcome, RowFailure):
                self.stats.errors += 1
                self.stats.failed_rows.append(outcome)
                logger.warning(
                    "row failed nomprenom=%s lieudeces=%s error=%s",
                    row.nomprenom,
                    row.lieudeces,
                    outcome.error,
                )
                continue
            opportunities.append(outcome)
        return opportunities

    async def _process_row(self, row: DeathRecordRow) -> DeceasesOpportunity | RowFailure:
        if any(not getattr(row, name) for name in REQUIRED_ROW_FIELDS):
            return RowFailure(row=row, error="Missing required fields: nomprenom, datedeces, or lieudeces")

        self.stats.geocoding_attempts += 1
        self.stats.mairie_info_attempts += 1
        enrichment = await self.enricher.enrich(row.lieudeces)
        if enrichment is None:
            return RowFailure(row=row, error=f"Failed to fetch mairie info for commune: {row.lieudeces}")
        self.stats.geocoding_successes += 1
        self.stats.mairie_info_successes += 1

        return build_deceases_opportunity(row, enrichment)

    async def _finalize(self, payload: CsvProcessPayload) -> None:
        archive_path = archive_path_for(payload.path)
        try:
            if archive_path == payload.path:
                logger.warning("source path has no /raw/ segment, leaving it in place path=%s", payload.path)
            else:
                await self.storage.move(payload.path, archive_path)
                logger.info("archived source file from=%s to=%s", payload.path, archive_path)
        except Exception:
            logger.exception("failed to archive source file path=%s", payload.path)

        if not self.stats.failed_rows:
            return

        failed_key = failed_records_key(payload.file_name)
        try:
            content = generate_failed_records_csv(self.stats.failed_rows)
            await self.storage.upload(content.encode("utf-8"), failed_key)
            logger.info("uploaded failed records key=%s count=%s", failed_key, len(self.stats.failed_rows))
        except Exception:
            logger.exception("failed to upload failed records key=%s", failed_key)

    def _transition(self, target: JobState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(f"cannot move from {self.state.value} to {target.value}")
        logger.debug("job state %s -> %s", self.state.value, target.value)
        self.state = target
