from datetime import date
from typing import Literal

from pydantic import BaseModel, Field

OpportunityType = Literal["auction", "listing"]


class AddressSearchInput(BaseModel):
    zip_code: str = Field(min_length=1)
    energy_class: str = Field(min_length=1, max_length=1)
    square_footage: float = Field(gt=0)
    address: str | None = None


class EnergyDiagnostic(BaseModel):
    id: str
    external_id: str
    label: str | None = None
    address: str | None = None
    zip_code: str
    department: str | None = None
    energy_class: str
    square_footage: float | None = None
    opportunity_date: date | None = None
    latitude: float | None = None
    longitude: float | None = None


class AddressSearchResult(EnergyDiagnostic):
    match_score: float
    energy_diagnostic_id: str


class DiagnosticLinkInput(BaseModel):
    opportunity_id: str
    energy_diagnostic_id: str
    match_score: int


class DiagnosticLink(BaseModel):
    id: str
    opportunity_id: str
    energy_diagnostic_id: str
    match_score: int
    energy_diagnostic: EnergyDiagnostic | None = None
