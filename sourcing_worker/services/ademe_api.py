from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from sourcing_worker.services.http_client import ExternalApiStatusError, RateLimitedHttpClient

logger = logging.getLogger(__name__)

DEFAULT_ENERGY_CLASSES = ("F", "G")
DPE_SELECT_FIELDS = (
    "numero_dpe",
    "adresse_ban",
    "code_postal_ban",
    "nom_commune_ban",
    "code_departement_ban",
    "etiquette_dpe",
    "etiquette_ges",
    "_geopoint",
    "date_etablissement_dpe",
    "date_reception_dpe",
    "type_batiment",
    "annee_construction",
    "surface_habitable_logement",
)


def build_dpe_query(
    department: str,
    since_date: str,
    energy_classes: Sequence[str],
    before_date: str | None = None,
) -> str:
    """Data Fair ``qs`` expression selecting one department, some labels and a date window."""
    date_filter = f"date_etablissement_dpe:>={since_date}"
    if before_date:
        date_filter += f" AND date_etablissement_dpe:<={before_date}"
    classes = " OR ".join(energy_classes)
    return (
        f'code_departement_ban:"{department.zfill(2)}" '
        f"AND etiquette_dpe:({classes}) "
        f"AND {date_filter}"
    )


class AdemeApiClient:
    def __init__(self, http: RateLimitedHttpClient, *, base_url: str, page_size: int = 1000) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.page_size = max(1, page_size)

    async def fetch_all_dpe_records(
        self,
        department: str,
        since_date: str,
        energy_classes: Sequence[str] = DEFAULT_ENERGY_CLASSES,
        before_date: str | None = None,
    ) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        page = 1
        query = build_dpe_query(department, since_date, energy_classes, before_date)
        logger.info(
            "fetching DPE records department=%s since=%s before=%s classes=%s",
            department,
            since_date,
            before_date,
            ",".join(energy_classes),
        )

        while True:
            try:
                page_records = await self._fetch_page(query=query, page=page)
            except ExternalApiStatusError as exc:
                # the dataset refuses pages past its pagination window with a 400
                if exc.status_code == 400 and records:
                    logger.warning(
                        "DPE pagination limit reached page=%s keeping=%s records",
                        page,
                        len(records),
                    )
                    break
                raise

            records.extend(page_records)
            logger.info("fetched DPE page=%s count=%s total=%s", page, len(page_records), len(records))
            if len(page_records) < self.page_size:
                break
            page += 1

        logger.info("completed DPE fetch department=%s total=%s", department, len(records))
        return records

    async def _fetch_page(self, *, query: str, page: int) -> list[dict[str, Any]]:
        response = await self.http.fetch_with_retry(
            f"{self.base_url}/lines",
            params={
                "size": self.page_size,
                "page": page,
                "select": ",".join(DPE_SELECT_FIELDS),
                "qs": query,
            },
        )
        payload = response.json()
        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            return []
        return [item for item in results if isinstance(item, dict)]
