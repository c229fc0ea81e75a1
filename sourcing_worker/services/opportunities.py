from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Protocol

from sourcing_worker.services.repository import ConflictPolicy

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500
OPPORTUNITIES_TABLE = "opportunities"
ENERGY_DIAGNOSTICS_TABLE = "energy_diagnostics"
LISTINGS_TABLE = "listings"

DECEASES_CONFLICT_POLICY = ConflictPolicy.do_nothing("external_id")
LISTINGS_CONFLICT_POLICY = ConflictPolicy.do_nothing("external_id")
ENERGY_DIAGNOSTICS_CONFLICT_POLICY = ConflictPolicy.overwrite(
    "external_id",
    (
        "label",
        "address",
        "zip_code",
        "department",
        "latitude",
        "longitude",
        "opportunity_date",
        "energy_class",
        "square_footage",
    ),
)


class UpsertStore(Protocol):
    async def upsert_rows(self, table: str, rows: list[dict[str, Any]], policy: ConflictPolicy) -> int: ...


@dataclass(slots=True)
class DeceasesOpportunity:
    external_id: str
    label: str
    address: str
    zip_code: str
    department: str
    latitude: float
    longitude: float
    opportunity_date: date
    contact_data: dict[str, Any] | None = None
    extra_data: dict[str, Any] = field(default_factory=dict)
    siret: str | None = None
    type: str = "succession"
    status: str = "pending_review"

    def to_row(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "type": self.type,
            "label": self.label,
            "siret": self.siret,
            "address": self.address,
            "zip_code": self.zip_code,
            "department": self.department,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "opportunity_date": self.opportunity_date,
            "contact_data": self.contact_data,
            "extra_data": self.extra_data,
            "status": self.status,
        }


@dataclass(slots=True)
class EnergyDiagnosticRecord:
    external_id: str
    label: str
    address: str | None
    zip_code: str
    department: str
    latitude: float
    longitude: float
    opportunity_date: date
    energy_class: str
    square_footage: float | None

    def to_row(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "label": self.label,
            "address": self.address,
            "zip_code": self.zip_code,
            "department": self.department,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "opportunity_date": self.opportunity_date,
            "energy_class": self.energy_class,
            "square_footage": self.square_footage,
        }


@dataclass(slots=True)
class ListingRecord:
    external_id: str
    label: str
    address: str
    zip_code: str
    department: str
    latitude: float
    longitude: float
    opportunity_date: date
    url: str
    source: str
    property_type: str
    seller_type: str
    energy_class: str = "UNKNOWN"
    last_change_date: date | None = None
    description: str | None = None
    square_footage: float | None = None
    rooms: int | None = None
    bedrooms: int | None = None
    price: float | None = None
    main_picture: str | None = None
    pictures: list[str] = field(default_factory=list)
    seller_contact: dict[str, str] = field(default_factory=dict)
    is_sold_rented: bool = False

    def to_row(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "label": self.label,
            "address": self.address,
            "zip_code": self.zip_code,
            "department": self.department,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "opportunity_date": self.opportunity_date,
            "last_change_date": self.last_change_date,
            "url": self.url,
            "source": self.source,
            "property_type": self.property_type,
            "description": self.description,
            "square_footage": self.square_footage,
            "rooms": self.rooms,
            "bedrooms": self.bedrooms,
            "energy_class": self.energy_class,
            "price": self.price,
            "main_picture": self.main_picture,
            "pictures": self.pictures,
            "seller_type": self.seller_type,
            "seller_contact": self.seller_contact,
            "is_sold_rented": self.is_sold_rented,
        }


class OpportunityWriter:
    def __init__(self, store: UpsertStore, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.store = store
        self.batch_size = max(1, batch_size)

    async def insert_opportunities(
        self,
        rows: Sequence[dict[str, Any]],
        *,
        table: str,
        policy: ConflictPolicy,
    ) -> int:
        """Upsert ``rows`` in order, one store call per batch.

        Returns the number of rows submitted, conflicting rows included. A failing
        batch is logged and re-raised; later batches are not attempted.
        """
        if not rows:
            return 0

        total = len(rows)
        inserted = 0
        for start in range(0, total, self.batch_size):
            batch = list(rows[start : start + self.batch_size])
            batch_number = start // self.batch_size + 1
            try:
                await self.store.upsert_rows(table, batch, policy)
            except Exception:
                logger.exception(
                    "batch upsert failed table=%s batch=%s batch_start=%s batch_size=%s",
                    table,
                    batch_number,
                    start,
                    len(batch),
                )
                raise
            inserted += len(batch)
            logger.info("upserted batch table=%s batch=%s progress=%s/%s", table, batch_number, inserted, total)
        return inserted

    async def insert_deceases_opportunities(self, opportunities: Sequence[DeceasesOpportunity]) -> int:
        return await self.insert_opportunities(
            [opportunity.to_row() for opportunity in opportunities],
            table=OPPORTUNITIES_TABLE,
            policy=DECEASES_CONFLICT_POLICY,
        )

    async def insert_energy_diagnostics(self, records: Sequence[EnergyDiagnosticRecord]) -> int:
        return await self.insert_opportunities(
            [record.to_row() for record in records],
            table=ENERGY_DIAGNOSTICS_TABLE,
            policy=ENERGY_DIAGNOSTICS_CONFLICT_POLICY,
        )

    async def insert_listings(self, records: Sequence[ListingRecord]) -> int:
        return await self.insert_opportunities(
            [record.to_row() for record in records],
            table=LISTINGS_TABLE,
            policy=LISTINGS_CONFLICT_POLICY,
        )
