from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any

from sourcing_worker.services.http_client import ExternalApiError, RateLimitedHttpClient

logger = logging.getLogger(__name__)

GEOCODED_ADDRESS_TYPE = "Adresse"
POSTAL_ADDRESS_TYPE = "Adresse postale"
CONTACT_ADDRESS_FIELDS = (
    "complement1",
    "complement2",
    "numero_voie",
    "service_distribution",
    "code_postal",
    "nom_commune",
)


@dataclass(slots=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass(slots=True)
class ContactInfo:
    name: str
    phone: str | None
    email: str | None
    address: dict[str, str]


@dataclass(slots=True)
class EnrichmentResult:
    coordinates: Coordinates
    contact_info: ContactInfo
    zip_code: str
    address: str

    def contact_payload(self) -> dict[str, Any]:
        return asdict(self.contact_info)


class InseeApiClient:
    """Looks up the town hall ("mairie") of an INSEE commune code in the service-public directory."""

    def __init__(self, http: RateLimitedHttpClient, *, base_url: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")

    async def fetch_mairie_data(self, insee_code: str) -> EnrichmentResult | None:
        url = f"{self.base_url}/records"
        params = {
            "where": f"code_insee_commune='{insee_code}' AND pivot LIKE 'mairie%'",
            "limit": 1,
        }
        try:
            response = await self.http.fetch_with_retry(url, params=params)
            payload = response.json()
        except (ExternalApiError, ValueError) as exc:
            logger.warning("mairie lookup failed insee_code=%s error=%s", insee_code, exc)
            return None

        results = payload.get("results") if isinstance(payload, dict) else None
        if not results:
            logger.info("no mairie found insee_code=%s", insee_code)
            return None

        result = build_enrichment_result(results[0])
        if result is None:
            logger.info("mairie has no usable address insee_code=%s", insee_code)
        return result


def build_enrichment_result(record: dict[str, Any]) -> EnrichmentResult | None:
    addresses = _parse_addresses(record.get("adresse"))
    if not addresses:
        return None

    if len(addresses) == 1:
        geocoded = addresses[0]
        postal = None
    else:
        geocoded = next((item for item in addresses if item.get("type_adresse") == GEOCODED_ADDRESS_TYPE), None)
        postal = next((item for item in addresses if item.get("type_adresse") == POSTAL_ADDRESS_TYPE), None)
    if geocoded is None:
        return None

    latitude = _coerce_float(geocoded.get("latitude"))
    longitude = _coerce_float(geocoded.get("longitude"))
    if latitude is None or longitude is None:
        return None

    contact_source = postal if postal is not None else geocoded
    contact_info = ContactInfo(
        name=_coerce_text(record.get("nom")) or "Mairie",
        phone=_coerce_text(record.get("telephone")) or _coerce_text(record.get("telephone_accueil")),
        email=_coerce_text(record.get("email")) or _coerce_text(record.get("adresse_courriel")),
        address={field: _coerce_text(contact_source.get(field)) or "" for field in CONTACT_ADDRESS_FIELDS},
    )
    zip_code = _coerce_text(geocoded.get("code_postal")) or ""
    display_parts = (
        _coerce_text(geocoded.get("numero_voie")),
        zip_code,
        _coerce_text(geocoded.get("nom_commune")),
    )
    return EnrichmentResult(
        coordinates=Coordinates(latitude=latitude, longitude=longitude),
        contact_info=contact_info,
        zip_code=zip_code,
        address=" ".join(part for part in display_parts if part),
    )


def _parse_addresses(raw: Any) -> list[dict[str, Any]]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


def _coerce_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _coerce_float(value: Any) -> float | None:
    text = _coerce_text(value)
    if text is None:
        return None
    try:
        return float(text)
    except ValueError:
        return None
