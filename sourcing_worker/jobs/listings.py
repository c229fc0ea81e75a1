from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any

from sourcing_worker.schemas.jobs import ListingsPayload
from sourcing_worker.services.moteur_immo_api import MoteurImmoApiClient
from sourcing_worker.services.opportunities import ListingRecord, OpportunityWriter

logger = logging.getLogger(__name__)

UNKNOWN_ENERGY_CLASS = "UNKNOWN"
PROPERTY_TYPES = {
    "flat": "flat",
    "house": "house",
    "shop": "commercial",
    "office": "commercial",
    "premises": "commercial",
    "land": "land",
}
CONTACT_FIELDS = {
    "name": "name",
    "address": "address",
    "phone": "phone",
    "email": "email",
    "siret": "sirenNumber",
}


@dataclass(slots=True)
class ListingsStats:
    total_listings: int = 0
    valid_listings: int = 0
    invalid_listings: int = 0
    listings_inserted: int = 0

    def as_result(self) -> dict[str, int]:
        return {
            "total_listings": self.total_listings,
            "valid_listings": self.valid_listings,
            "invalid_listings": self.invalid_listings,
            "listings_inserted": self.listings_inserted,
        }


def listing_business_key(origin: str, ad_id: str) -> str:
    return f"{origin}-{ad_id}"


def map_property_type(category: str | None) -> str:
    if not category:
        return "other"
    return PROPERTY_TYPES.get(category.lower(), "other")


def seller_contact(publisher: dict[str, Any]) -> dict[str, str]:
    """Publisher fields worth keeping; the feed masks some of them as ``hidden``."""
    contact = {}
    for key, source_key in CONTACT_FIELDS.items():
        value = publisher.get(source_key)
        if isinstance(value, str) and value and value != "hidden":
            contact[key] = value
    return contact


def transform_listing(ad: dict[str, Any]) -> ListingRecord | None:
    location = ad.get("location")
    origin = ad.get("origin")
    ad_id = ad.get("adId")
    url = ad.get("url")
    if not isinstance(location, dict) or not origin or not ad_id or not url:
        return None

    coordinates = location.get("coordinates")
    postal_code = location.get("postalCode")
    department_code = location.get("departmentCode")
    if not isinstance(coordinates, list) or len(coordinates) != 2 or not postal_code or department_code is None:
        return None

    opportunity_date = _day(ad.get("publicationDate")) or _day(ad.get("creationDate"))
    if opportunity_date is None:
        logger.warning("listing without usable date ad_id=%s origin=%s", ad_id, origin)
        return None

    publisher = ad.get("publisher") if isinstance(ad.get("publisher"), dict) else {}
    pictures = [item for item in ad.get("pictureUrls") or [] if isinstance(item, str)]
    longitude, latitude = coordinates
    try:
        return ListingRecord(
            external_id=listing_business_key(str(origin), str(ad_id)),
            label=ad.get("title") or "Unknown Property",
            address=f"{location.get('city') or ''}, {postal_code}".lstrip(", "),
            zip_code=str(postal_code),
            department=str(department_code).zfill(2),
            latitude=float(latitude),
            longitude=float(longitude),
            opportunity_date=opportunity_date,
            last_change_date=_day(ad.get("lastEventDate")) or _day(ad.get("creationDate")),
            url=str(url),
            source=str(origin),
            property_type=map_property_type(ad.get("category")),
            description=ad.get("description"),
            square_footage=ad.get("surface"),
            rooms=ad.get("rooms"),
            bedrooms=ad.get("bedrooms"),
            energy_class=ad.get("energyGrade") or UNKNOWN_ENERGY_CLASS,
            price=ad.get("price"),
            main_picture=ad.get("pictureUrl") or (pictures[0] if pictures else None),
            pictures=pictures,
            seller_type=publisher.get("type") or "unknown",
            seller_contact=seller_contact(publisher),
            is_sold_rented="isSoldRented" in (ad.get("options") or []),
        )
    except (TypeError, ValueError) as exc:
        logger.warning("failed to transform listing ad_id=%s error=%s", ad_id, exc)
        return None


async def process_listings(
    payload: ListingsPayload,
    *,
    client: MoteurImmoApiClient,
    writer: OpportunityWriter,
) -> ListingsStats:
    stats = ListingsStats()
    ads = await client.fetch_all_listings(payload)
    stats.total_listings = len(ads)

    listings: list[ListingRecord] = []
    for ad in ads:
        listing = transform_listing(ad)
        if listing is None:
            stats.invalid_listings += 1
            continue
        listings.append(listing)
    stats.valid_listings = len(listings)

    stats.listings_inserted = await writer.insert_listings(listings)
    logger.info("listings processed source=%s stats=%s", payload.source, stats.as_result())
    return stats


def _day(value: Any) -> date | None:
    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None
