from __future__ import annotations

import logging
import math
from typing import Protocol

from sourcing_worker.schemas.addresses import (
    AddressSearchInput,
    AddressSearchResult,
    DiagnosticLink,
    DiagnosticLinkInput,
    EnergyDiagnostic,
    OpportunityType,
)
from sourcing_worker.services.matching import rank_candidates

logger = logging.getLogger(__name__)

MAX_DIAGNOSTIC_LINKS = 5
MAX_SQUARE_FOOTAGE_DIFFERENCE_PERCENTAGE = 10


class DiagnosticStore(Protocol):
    async def find_for_address_search(
        self,
        *,
        zip_code: str,
        energy_class: str,
        square_footage_min: float,
        square_footage_max: float,
    ) -> list[EnergyDiagnostic]: ...

    async def save_diagnostic_links(self, opportunity_type: OpportunityType, links: list[DiagnosticLinkInput]) -> None: ...

    async def get_diagnostic_links(self, opportunity_type: OpportunityType, opportunity_id: str) -> list[DiagnosticLink]: ...


class AddressSearchService:
    def __init__(self, store: DiagnosticStore, *, max_links: int = MAX_DIAGNOSTIC_LINKS) -> None:
        self.store = store
        self.max_links = max(1, max_links)

    async def get_plausible_addresses(self, search: AddressSearchInput) -> list[AddressSearchResult]:
        ratio = MAX_SQUARE_FOOTAGE_DIFFERENCE_PERCENTAGE / 100
        candidates = await self.store.find_for_address_search(
            zip_code=search.zip_code,
            energy_class=search.energy_class,
            square_footage_min=search.square_footage * (1 - ratio),
            square_footage_max=search.square_footage * (1 + ratio),
        )
        if not candidates:
            return []
        return rank_candidates(search, candidates)

    async def search_and_link_for_opportunity(
        self,
        search: AddressSearchInput,
        opportunity_id: str,
        opportunity_type: OpportunityType,
    ) -> list[DiagnosticLink]:
        results = await self.get_plausible_addresses(search)
        if not results:
            logger.info("no diagnostic candidates opportunity_id=%s zip_code=%s", opportunity_id, search.zip_code)
            return []

        links = [
            DiagnosticLinkInput(
                opportunity_id=opportunity_id,
                energy_diagnostic_id=result.id,
                match_score=math.floor(result.match_score + 0.5),
            )
            for result in results[: self.max_links]
        ]
        await self.store.save_diagnostic_links(opportunity_type, links)
        logger.info(
            "saved diagnostic links opportunity_id=%s type=%s count=%s best_score=%s",
            opportunity_id,
            opportunity_type,
            len(links),
            links[0].match_score,
        )
        return await self.store.get_diagnostic_links(opportunity_type, opportunity_id)

    async def get_diagnostic_links(self, opportunity_id: str, opportunity_type: OpportunityType) -> list[DiagnosticLink]:
        return await self.store.get_diagnostic_links(opportunity_type, opportunity_id)
