from __future__ import annotations

import logging
from datetime import date
from typing import Any

from sourcing_worker.schemas.jobs import ListingsPayload
from sourcing_worker.services.http_client import ExternalApiError, ExternalApiStatusError, RateLimitedHttpClient

logger = logging.getLogger(__name__)

MAX_LISTINGS_PER_SEARCH = 10_000
DEFAULT_CATEGORIES = ("house", "flat", "office", "premises", "shop", "block")
CATEGORY_ALIASES = {"apartment": "flat", "house": "house", "terrain": "land"}


class TooManyListingsError(ExternalApiError):
    """Raised when a search matches more ads than the API lets us page through."""

    def __init__(self, count: int) -> None:
        super().__init__(f"listing search matched {count} ads, above the {MAX_LISTINGS_PER_SEARCH} the API pages")
        self.count = count


def _iso_midnight(value: date) -> str:
    return f"{value.isoformat()}T00:00:00.000Z"


def build_listings_request(payload: ListingsPayload, *, api_key: str, page: int, page_size: int) -> dict[str, Any]:
    body: dict[str, Any] = {
        "apiKey": api_key,
        "page": page,
        "maxLength": page_size,
        "types": ["sale"],
        "categories": list(DEFAULT_CATEGORIES),
        "options": ["isOld", "isNotUnderCompromise"],
        "withCount": page == 1,
    }
    date_field = "creationDate" if payload.use_publication_date else "lastEventDate"
    if payload.after_date:
        body[f"{date_field}After"] = _iso_midnight(payload.after_date)
    if payload.before_date:
        body[f"{date_field}Before"] = _iso_midnight(payload.before_date)
    if payload.energy_grade_min:
        body["energyGradeMin"] = payload.energy_grade_min
    if payload.energy_grade_max:
        body["energyGradeMax"] = payload.energy_grade_max
    if payload.property_types:
        body["categories"] = [CATEGORY_ALIASES.get(item.lower(), item) for item in payload.property_types]
    if payload.department:
        body["locations"] = [{"departmentCode": payload.department}]
    return body


class MoteurImmoApiClient:
    """Pages through the Moteur Immo ``/ads`` search."""

    def __init__(
        self,
        http: RateLimitedHttpClient,
        *,
        base_url: str,
        api_key: str,
        page_size: int = 1000,
        max_pages: int = 10,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.page_size = max(1, page_size)
        self.max_pages = max(1, max_pages)

    async def fetch_all_listings(self, payload: ListingsPayload) -> list[dict[str, Any]]:
        ads: list[dict[str, Any]] = []
        logger.info(
            "fetching listings source=%s after=%s before=%s department=%s",
            payload.source,
            payload.after_date,
            payload.before_date,
            payload.department,
        )

        for page in range(1, self.max_pages + 1):
            try:
                page_ads, count = await self._fetch_page(payload, page=page)
            except ExternalApiStatusError as exc:
                if exc.status_code == 400 and ads:
                    logger.warning("listings pagination limit reached page=%s keeping=%s ads", page, len(ads))
                    break
                raise

            if count is not None:
                logger.info("listings search matched count=%s", count)
                if count > MAX_LISTINGS_PER_SEARCH:
                    raise TooManyListingsError(count)

            ads.extend(page_ads)
            logger.info("fetched listings page=%s count=%s total=%s", page, len(page_ads), len(ads))
            if len(page_ads) < self.page_size:
                break

        logger.info("completed listings fetch total=%s", len(ads))
        return ads

    async def _fetch_page(self, payload: ListingsPayload, *, page: int) -> tuple[list[dict[str, Any]], int | None]:
        response = await self.http.fetch_with_retry(
            f"{self.base_url}/ads",
            method="POST",
            json=build_listings_request(payload, api_key=self.api_key, page=page, page_size=self.page_size),
            headers={"Accept": "application/json"},
        )
        body = response.json()
        if not isinstance(body, dict):
            return [], None
        raw_ads = body.get("ads")
        count = body.get("count")
        page_ads = [item for item in raw_ads if isinstance(item, dict)] if isinstance(raw_ads, list) else []
        return page_ads, count if isinstance(count, int) else None
