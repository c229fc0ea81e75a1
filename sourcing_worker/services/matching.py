from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable

from rapidfuzz import fuzz, process
from rapidfuzz.distance import OSA

from sourcing_worker.schemas.addresses import AddressSearchInput, AddressSearchResult, EnergyDiagnostic

_SEPARATOR_RE = re.compile(r"[-_']")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_WHITESPACE_RE = re.compile(r"\s+")

SIZE_PENALTY_WEIGHT = 30.0
CITY_PENALTY_WEIGHT = 40.0
STREET_PENALTY_WEIGHT = 30.0
SUBSTRING_PENALTY = 0.1
FUZZY_SCORE_CUTOFF = 40.0
CLOSE_DISTANCE_THRESHOLD = 3


def standardize_string(value: str | None) -> str:
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFD", value.lower())
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    stripped = _SEPARATOR_RE.sub(" ", stripped)
    stripped = _NON_ALNUM_RE.sub("", stripped)
    return _WHITESPACE_RE.sub(" ", stripped).strip()


def damerau_levenshtein_distance(left: str, right: str) -> int:
    """Restricted Damerau-Levenshtein (optimal string alignment) distance."""
    return int(OSA.distance(left, right))


def extract_street_from_address(address: str | None, zip_code: str | None) -> str | None:
    if not address or not zip_code:
        return None
    index = address.find(zip_code)
    if index == -1:
        return None
    return address[:index].strip() or None


def extract_city_from_address(address: str | None, zip_code: str | None) -> str | None:
    if not address or not zip_code:
        return None
    index = address.find(zip_code)
    if index == -1:
        return None
    return address[index + len(zip_code) :].strip() or None


def calculate_match_score(original: str, to_match: str) -> float:
    """Penalty fraction between two strings: 0 for a match, 1 for unrelated text."""
    left = standardize_string(original)
    right = standardize_string(to_match)
    if left == right:
        return 0.0
    if not left or not right:
        return 1.0
    if left in right or right in left:
        return SUBSTRING_PENALTY

    best = process.extractOne(right, [left], scorer=fuzz.WRatio, score_cutoff=FUZZY_SCORE_CUTOFF)
    if best is None:
        return 1.0
    return round(1.0 - best[1] / 100.0, 4)


def percentage_difference(target: float, candidate: float) -> float:
    return abs(candidate - target) / target


def score_candidate(target: AddressSearchInput, candidate: EnergyDiagnostic) -> float:
    score = 100.0

    # not capped: large size mismatches dominate the other terms
    if target.square_footage and candidate.square_footage:
        score -= percentage_difference(target.square_footage, candidate.square_footage) * SIZE_PENALTY_WEIGHT

    target_city = extract_city_from_address(target.address, target.zip_code)
    candidate_city = extract_city_from_address(candidate.address, candidate.zip_code)
    if target_city and candidate_city:
        score -= calculate_match_score(target_city, candidate_city) * CITY_PENALTY_WEIGHT

    target_street = extract_street_from_address(target.address, target.zip_code)
    candidate_street = extract_street_from_address(candidate.address, candidate.zip_code)
    if target_street and candidate_street:
        score -= calculate_match_score(target_street, candidate_street) * STREET_PENALTY_WEIGHT

    return max(0.0, score)


def rank_candidates(target: AddressSearchInput, candidates: Iterable[EnergyDiagnostic]) -> list[AddressSearchResult]:
    scored = [
        AddressSearchResult(
            **candidate.model_dump(),
            match_score=score_candidate(target, candidate),
            energy_diagnostic_id=candidate.external_id,
        )
        for candidate in candidates
    ]
    # sorted() is stable, ties keep input order
    return sorted(scored, key=lambda result: result.match_score, reverse=True)


def calculate_city_match_score(left: str, right: str) -> float:
    """0-100 similarity for locality names, tolerant of a shared prefix ("Saint-Pierre" vs "Saint-Pierre-le-Vieux")."""
    return _hybrid_match_score(left, right, anchor="prefix")


def calculate_street_match_score(left: str, right: str) -> float:
    """0-100 similarity for street names, tolerant of a leading house number."""
    return _hybrid_match_score(left, right, anchor="suffix")


def _hybrid_match_score(left: str, right: str, *, anchor: str) -> float:
    first = standardize_string(left)
    second = standardize_string(right)
    if not first or not second:
        return 0.0
    if first == second:
        return 100.0

    distance = damerau_levenshtein_distance(first, second)
    if distance <= CLOSE_DISTANCE_THRESHOLD:
        return float(max(0, 100 - distance * 15))

    shorter, longer = (first, second) if len(first) <= len(second) else (second, first)
    anchored = longer.startswith(shorter) if anchor == "prefix" else longer.endswith(shorter)
    if anchored:
        extra_ratio = (len(longer) - len(shorter)) / len(longer)
        return max(50.0, 85.0 - extra_ratio * 50.0)

    return float(max(0, round(100 - distance / len(longer) * 100)))
