from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sourcing_worker.schemas.jobs import EnergyDiagnosticsPayload
from sourcing_worker.services.ademe_api import AdemeApiClient
from sourcing_worker.services.opportunities import EnergyDiagnosticRecord, OpportunityWriter

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EnergyDiagnosticsStats:
    total_records: int = 0
    valid_records: int = 0
    invalid_records: int = 0
    opportunities_inserted: int = 0

    def as_result(self) -> dict[str, int]:
        return {
            "total_records": self.total_records,
            "valid_records": self.valid_records,
            "invalid_records": self.invalid_records,
            "opportunities_inserted": self.opportunities_inserted,
        }


def transform_dpe_record(record: dict[str, Any]) -> EnergyDiagnosticRecord | None:
    external_id = _text(record.get("numero_dpe"))
    geopoint = _text(record.get("_geopoint"))
    if not external_id or not geopoint:
        return None

    latitude_text, _, longitude_text = geopoint.partition(",")
    latitude = _number(latitude_text)
    longitude = _number(longitude_text)
    if latitude is None or longitude is None:
        return None

    opportunity_date = _date(record.get("date_etablissement_dpe")) or _date(record.get("date_reception_dpe"))
    if opportunity_date is None:
        logger.warning("DPE record without usable date numero_dpe=%s", external_id)
        return None

    zip_code = _text(record.get("code_postal_ban"))
    department = _text(record.get("code_departement_ban"))
    energy_class = _text(record.get("etiquette_dpe"))
    if not zip_code or not department or not energy_class:
        return None

    address = _text(record.get("adresse_ban"))
    return EnergyDiagnosticRecord(
        external_id=external_id,
        label=address or _text(record.get("nom_commune_ban")) or "Unknown",
        address=address,
        zip_code=zip_code.zfill(5),
        department=department.zfill(2),
        latitude=latitude,
        longitude=longitude,
        opportunity_date=opportunity_date,
        energy_class=energy_class.upper(),
        square_footage=_number(record.get("surface_habitable_logement")),
    )


async def process_energy_diagnostics(
    payload: EnergyDiagnosticsPayload,
    *,
    client: AdemeApiClient,
    writer: OpportunityWriter,
) -> EnergyDiagnosticsStats:
    stats = EnergyDiagnosticsStats()
    records = await client.fetch_all_dpe_records(
        payload.department,
        payload.since_date.isoformat(),
        payload.energy_classes,
        payload.before_date.isoformat() if payload.before_date else None,
    )
    stats.total_records = len(records)

    diagnostics: list[EnergyDiagnosticRecord] = []
    for record in records:
        diagnostic = transform_dpe_record(record)
        if diagnostic is None:
            stats.invalid_records += 1
            continue
        diagnostics.append(diagnostic)
    stats.valid_records = len(diagnostics)

    stats.opportunities_inserted = await writer.insert_energy_diagnostics(diagnostics)
    logger.info("energy diagnostics processed department=%s stats=%s", payload.department, stats.as_result())
    return stats


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _number(value: Any) -> float | None:
    text = _text(value)
    if text is None:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _date(value: Any) -> date | None:
    text = _text(value)
    if text is None:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None
