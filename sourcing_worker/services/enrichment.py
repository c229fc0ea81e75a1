from __future__ import annotations

import logging
from collections.abc import Hashable
from dataclasses import dataclass
from typing import Generic, TypeVar

from sourcing_worker.services.insee_api import EnrichmentResult, InseeApiClient

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING = object()


class SingleSlotCache(Generic[K, V]):
    """Remembers only the most recently stored key and its value."""

    def __init__(self) -> None:
        self._key: object = _MISSING
        self._value: V | None = None

    def get(self, key: K) -> V | None:
        if self._key is not _MISSING and self._key == key:
            return self._value
        return None

    def __contains__(self, key: object) -> bool:
        return self._key is not _MISSING and self._key == key

    def put(self, key: K, value: V) -> None:
        self._key = key
        self._value = value

    def clear(self) -> None:
        self._key = _MISSING
        self._value = None


@dataclass(slots=True)
class EnrichmentStats:
    attempts: int = 0
    successes: int = 0
    cache_hits: int = 0


class MairieEnricher:
    """Resolves town hall contact and coordinates for a commune code.

    Rows of an INSEE death file are grouped by commune, so a single-slot memo
    removes most lookups. One instance belongs to one job run.
    """

    def __init__(self, client: InseeApiClient) -> None:
        self.client = client
        self.cache: SingleSlotCache[str, EnrichmentResult] = SingleSlotCache()
        self.stats = EnrichmentStats()

    async def enrich(self, lookup_key: str) -> EnrichmentResult | None:
        self.stats.attempts += 1
        if lookup_key in self.cache:
            self.stats.cache_hits += 1
            self.stats.successes += 1
            return self.cache.get(lookup_key)

        result = await self.client.fetch_mairie_data(lookup_key)
        if result is None:
            logger.debug("enrichment returned nothing lookup_key=%s", lookup_key)
            return None

        self.cache.put(lookup_key, result)
        self.stats.successes += 1
        return result
