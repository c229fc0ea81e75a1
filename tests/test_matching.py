from __future__ import annotations

import pytest

from sourcing_worker.schemas.addresses import AddressSearchInput, EnergyDiagnostic
from sourcing_worker.services.matching import (
    calculate_city_match_score,
    calculate_match_score,
    calculate_street_match_score,
    damerau_levenshtein_distance,
    extract_city_from_address,
    extract_street_from_address,
    rank_candidates,
    score_candidate,
    standardize_string,
)


def _diagnostic(
    external_id: str,
    square_footage: float | None,
    address: str | None = None,
    zip_code: str = "75011",
) -> EnergyDiagnostic:
    return EnergyDiagnostic(
        id=f"uuid-{external_id}",
        external_id=external_id,
        address=address,
        zip_code=zip_code,
        energy_class="F",
        square_footage=square_footage,
    )


def test_damerau_levenshtein_distance() -> None:
    assert damerau_levenshtein_distance("rue", "rue") == 0
    assert damerau_levenshtein_distance("", "paris") == 5
    assert damerau_levenshtein_distance("ca", "ac") == 1
    assert damerau_levenshtein_distance("kitten", "sitting") == 3


def test_standardize_string_strips_accents_and_punctuation() -> None:
    assert standardize_string("Saint-Étienne") == "saint etienne"
    assert standardize_string("  L'Haÿ-les-Roses, ") == "l hay les roses"
    assert standardize_string(None) == ""


def test_calculate_match_score_penalties() -> None:
    assert calculate_match_score("Paris", "PARIS") == 0
    assert calculate_match_score("", "Paris") == 1
    assert calculate_match_score("rue de la paix", "12 rue de la paix") == pytest.approx(0.1)
    assert calculate_match_score("abc", "xyz") == 1
    penalty = calculate_match_score("boulevard voltaire", "boulevard voltiare")
    assert 0 < penalty < 0.2


def test_address_parts_split_on_zip_code() -> None:
    address = "12 rue de la Roquette 75011 Paris"
    assert extract_street_from_address(address, "75011") == "12 rue de la Roquette"
    assert extract_city_from_address(address, "75011") == "Paris"
    assert extract_city_from_address(address, "69001") is None
    assert extract_street_from_address(None, "75011") is None


def test_score_candidate_size_only() -> None:
    target = AddressSearchInput(zip_code="75011", energy_class="F", square_footage=50)

    assert score_candidate(target, _diagnostic("a", 50)) == 100
    assert score_candidate(target, _diagnostic("b", 60)) == pytest.approx(94)
    assert score_candidate(target, _diagnostic("c", None)) == 100


def test_score_candidate_is_monotonic_and_never_negative() -> None:
    target = AddressSearchInput(zip_code="75011", energy_class="F", square_footage=50)
    scores = [score_candidate(target, _diagnostic(str(size), size)) for size in (50, 55, 60, 80, 200)]

    assert scores == sorted(scores, reverse=True)
    tiny = AddressSearchInput(zip_code="75011", energy_class="F", square_footage=10)
    assert score_candidate(tiny, _diagnostic("huge", 1000)) == 0


def test_score_candidate_identical_address_keeps_full_score() -> None:
    address = "12 rue de la Roquette 75011 Paris"
    target = AddressSearchInput(zip_code="75011", energy_class="F", square_footage=50, address=address)

    assert score_candidate(target, _diagnostic("a", 50, address=address)) == 100
    other_city = score_candidate(target, _diagnostic("b", 50, address="12 rue de la Roquette 75011 Lyon"))
    assert other_city < 100


def test_rank_candidates_sorts_descending_and_keeps_ties_in_order() -> None:
    target = AddressSearchInput(zip_code="75011", energy_class="F", square_footage=50)
    candidates = [_diagnostic("far", 60), _diagnostic("tie-1", 50), _diagnostic("near", 52), _diagnostic("tie-2", 50)]

    ranked = rank_candidates(target, candidates)

    assert [result.external_id for result in ranked] == ["tie-1", "tie-2", "near", "far"]
    assert ranked[0].energy_diagnostic_id == "tie-1"
    assert ranked[0].id == "uuid-tie-1"


def test_city_and_street_match_scores() -> None:
    assert calculate_city_match_score("Saint-Pierre", "saint pierre") == 100
    assert calculate_city_match_score("", "Paris") == 0
    assert calculate_city_match_score("Pariss", "Paris") == 85

    prefixed = calculate_city_match_score("Saint-Pierre", "Saint-Pierre-le-Vieux")
    assert 50 <= prefixed < 85

    numbered = calculate_street_match_score("12 rue de la paix", "rue de la paix")
    unrelated = calculate_street_match_score("rue de la paix", "boulevard haussmann")
    assert numbered > unrelated
