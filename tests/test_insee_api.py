from __future__ import annotations

import asyncio
import json

import httpx

from sourcing_worker.services.http_client import RateLimitedHttpClient
from sourcing_worker.services.insee_api import EnrichmentResult, InseeApiClient, build_enrichment_result

BASE_URL = "https://annuaire.example.test/api/explore/v2.1/catalog/datasets/api-lannuaire-administration"

MAIRIE_RECORD = {
    "nom": "Mairie - Paris 1er arrondissement",
    "telephone": "01 44 50 75 01",
    "adresse_courriel": "mairie01@paris.fr",
    "adresse": json.dumps(
        [
            {
                "type_adresse": "Adresse",
                "numero_voie": "4 place du Louvre",
                "code_postal": "75001",
                "nom_commune": "Paris",
                "latitude": "48.8597",
                "longitude": "2.3412",
            },
            {
                "type_adresse": "Adresse postale",
                "numero_voie": "4 place du Louvre",
                "service_distribution": "BP 1",
                "code_postal": "75042",
                "nom_commune": "Paris Cedex 01",
            },
        ]
    ),
}


def test_build_enrichment_result_prefers_postal_contact_and_geocoded_coordinates() -> None:
    result = build_enrichment_result(MAIRIE_RECORD)

    assert result is not None
    assert result.coordinates.latitude == 48.8597
    assert result.coordinates.longitude == 2.3412
    assert result.zip_code == "75001"
    assert result.address == "4 place du Louvre 75001 Paris"
    assert result.contact_info.name == "Mairie - Paris 1er arrondissement"
    assert result.contact_info.phone == "01 44 50 75 01"
    assert result.contact_info.email == "mairie01@paris.fr"
    assert result.contact_info.address["code_postal"] == "75042"
    assert result.contact_info.address["service_distribution"] == "BP 1"
    assert result.contact_info.address["complement1"] == ""
    assert result.contact_payload()["address"]["nom_commune"] == "Paris Cedex 01"


def test_build_enrichment_result_single_address_and_fallbacks() -> None:
    record = {
        "telephone_accueil": "04 72 10 30 30",
        "email": "contact@mairie.example",
        "adresse": [
            {
                "type_adresse": "Adresse postale",
                "numero_voie": "1 place de la Comédie",
                "code_postal": "69001",
                "nom_commune": "Lyon",
                "latitude": 45.7676,
                "longitude": 4.8359,
            }
        ],
    }

    result = build_enrichment_result(record)

    assert result is not None
    assert result.contact_info.name == "Mairie"
    assert result.contact_info.phone == "04 72 10 30 30"
    assert result.contact_info.email == "contact@mairie.example"
    assert result.address == "1 place de la Comédie 69001 Lyon"


def test_build_enrichment_result_prefers_email_over_adresse_courriel() -> None:
    result = build_enrichment_result({**MAIRIE_RECORD, "email": "accueil@paris.fr"})

    assert result is not None
    assert result.contact_info.email == "accueil@paris.fr"


def test_build_enrichment_result_requires_coordinates() -> None:
    record = {"adresse": [{"type_adresse": "Adresse", "code_postal": "75001", "latitude": "", "longitude": "2.3"}]}
    assert build_enrichment_result(record) is None
    assert build_enrichment_result({"adresse": "not json"}) is None
    assert build_enrichment_result({}) is None


def _lookup(handler, insee_code: str) -> EnrichmentResult | None:
    async def run() -> EnrichmentResult | None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as raw_client:
            http = RateLimitedHttpClient(min_interval_seconds=0, max_attempts=1, client=raw_client)
            return await InseeApiClient(http, base_url=BASE_URL).fetch_mairie_data(insee_code)

    return asyncio.run(run())


def test_fetch_mairie_data_queries_town_hall_by_commune_code() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"total_count": 1, "results": [MAIRIE_RECORD]})

    result = _lookup(handler, "75101")

    assert result is not None
    assert result.zip_code == "75001"
    assert seen[0].url.path.endswith("/api-lannuaire-administration/records")
    assert seen[0].url.params["where"] == "code_insee_commune='75101' AND pivot LIKE 'mairie%'"
    assert seen[0].url.params["limit"] == "1"


def test_fetch_mairie_data_returns_none_on_empty_results_or_errors() -> None:
    assert _lookup(lambda request: httpx.Response(200, json={"results": []}), "99999") is None
    assert _lookup(lambda request: httpx.Response(500), "75101") is None
    assert _lookup(lambda request: httpx.Response(200, content=b"<html>"), "75101") is None
