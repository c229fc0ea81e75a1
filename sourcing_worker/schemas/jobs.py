from datetime import date, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sourcing_worker.schemas.addresses import AddressSearchInput, OpportunityType

DECEASES_INGEST_QUEUE = "source-deceases-csv-ingest"
DECEASES_CSV_PROCESS_QUEUE = "source-deceases-csv-process"
ENERGY_DIAGNOSTICS_QUEUE = "source-energy-diagnostics"
ADDRESS_LINKS_QUEUE = "address-diagnostic-links"
LISTINGS_QUEUE = "source-listings"

QUEUE_NAMES = (
    DECEASES_INGEST_QUEUE,
    DECEASES_CSV_PROCESS_QUEUE,
    ENERGY_DIAGNOSTICS_QUEUE,
    ADDRESS_LINKS_QUEUE,
    LISTINGS_QUEUE,
)


class ManualPath(BaseModel):
    kind: Literal["manual_path"] = "manual_path"
    path: str = Field(min_length=1)


class ScheduledWindow(BaseModel):
    kind: Literal["scheduled_window"] = "scheduled_window"
    year: int = Field(ge=1970, le=9999)
    month: int = Field(ge=1, le=12)


DeceasesIngestPayload = Annotated[ManualPath | ScheduledWindow, Field(discriminator="kind")]


class DeceasesIngestRequest(BaseModel):
    """Trigger body: either ``s3_path`` or ``year`` and ``month``."""

    s3_path: str | None = None
    year: int | None = None
    month: int | None = None

    @model_validator(mode="after")
    def _require_one_source(self) -> "DeceasesIngestRequest":
        if self.s3_path:
            return self
        if self.year is None or self.month is None:
            raise ValueError("either s3_path or year and month are required")
        return self

    def to_payload(self) -> ManualPath | ScheduledWindow:
        if self.s3_path:
            return ManualPath(path=self.s3_path)
        return ScheduledWindow(year=self.year, month=self.month)


class CsvProcessPayload(BaseModel):
    path: str = Field(min_length=1)
    file_name: str = Field(min_length=1)


class EnergyDiagnosticsPayload(BaseModel):
    department: str = Field(min_length=1, max_length=3)
    since_date: date
    before_date: date | None = None
    energy_classes: list[str] = Field(default_factory=lambda: ["F", "G"], min_length=1)

    @field_validator("department")
    @classmethod
    def _pad_department(cls, value: str) -> str:
        return value.strip().zfill(2)

    @field_validator("energy_classes")
    @classmethod
    def _normalize_classes(cls, value: list[str]) -> list[str]:
        normalized = [item.strip().upper() for item in value if item.strip()]
        invalid = [item for item in normalized if item not in {"A", "B", "C", "D", "E", "F", "G"}]
        if invalid:
            raise ValueError(f"unknown energy classes: {', '.join(invalid)}")
        return normalized


EnergyGrade = Literal["A", "B", "C", "D", "E", "F", "G"]


class ListingsPayload(BaseModel):
    """Filters for one listings feed import."""

    source: str = "moteurimmo"
    after_date: date | None = None
    before_date: date | None = None
    use_publication_date: bool = False
    energy_grade_min: EnergyGrade | None = None
    energy_grade_max: EnergyGrade | None = None
    property_types: list[str] = Field(default_factory=list)
    department: str | None = Field(default=None, min_length=1, max_length=3)

    @field_validator("department")
    @classmethod
    def _pad_department(cls, value: str | None) -> str | None:
        return value.strip().zfill(2) if value is not None else None

    @model_validator(mode="after")
    def _ordered_dates(self) -> "ListingsPayload":
        if self.after_date and self.before_date and self.before_date < self.after_date:
            raise ValueError("before_date must not precede after_date")
        return self


class AddressLinksPayload(BaseModel):
    opportunity_id: str = Field(min_length=1)
    opportunity_type: OpportunityType
    search: AddressSearchInput


class TriggerResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    job_id: str | None = Field(default=None, alias="jobId")
    message: str | None = None
    error: str | None = None


class JobOut(BaseModel):
    id: str
    queue: str
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: str
    attempt: int = 0
    max_attempts: int = 0
    next_run_at: datetime | None = None
    created_at: datetime | None = None
