"""Tests for incident candidate scoring, priority triage and work orders."""

from __future__ import annotations

import re

import pytest

from lampfinder.models import (
    FieldSchema,
    IncidentCandidate,
    LampRecord,
    LocationAnalysis,
    Priority,
    SearchResult,
)
from lampfinder.services.reporting import (
    IncidentCandidateScorer,
    ReportingService,
    determine_priority,
    overall_confidence,
    placeholder_candidates,
    rank_candidates,
)

LAMPS = [LampRecord(id=str(index), lamp_number=f"L-{index}", coords=(17.1 + index / 1000, 48.1)) for index in range(7)]


class _StubInterpreter:
    def __init__(self, analysis: LocationAnalysis | None) -> None:
        self.analysis = analysis

    async def interpret(self, street, description):
        return self.analysis


class _StubGeocoder:
    """Returns canned (lamp, distance) pairs per address."""

    def __init__(self, responses: dict[str, list[tuple[LampRecord, float]]]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, float]] = []

    async def find_nearest_lamps(self, address, lamps, max_distance=100.0):
        self.calls.append((address, max_distance))
        return [(lamp, distance) for lamp, distance in self.responses.get(address, []) if distance <= max_distance]


class _StubSearch:
    def __init__(self, lamps) -> None:
        self.lamps = lamps
        self.streets: list[str] = []

    async def search(self, street, lat=None, lng=None):
        self.streets.append(street)
        schema = FieldSchema(street_fields=["ulica"], lamp_id_fields=["cislo_stlp"], discovered_at=0.0)
        return SearchResult(lamps=self.lamps, field_schema=schema)


def _candidate(lamp_id: str, confidence: float, distance: float = 10.0) -> IncidentCandidate:
    return IncidentCandidate(lamp_id=lamp_id, coords=(17.1, 48.1), distance_meters=distance, confidence=confidence)


def _scorer(make_settings, analysis, responses=None) -> tuple[IncidentCandidateScorer, _StubGeocoder]:
    geocoder = _StubGeocoder(responses or {})
    scorer = IncidentCandidateScorer(
        interpreter=_StubInterpreter(analysis),
        geocoder=geocoder,
        settings=make_settings(),
    )
    return scorer, geocoder


def test_placeholder_confidences_decrease_with_floor() -> None:
    candidates = placeholder_candidates(LAMPS)

    assert [candidate.lamp_id for candidate in candidates] == ["0", "1", "2", "3", "4"]
    assert [candidate.confidence for candidate in candidates] == pytest.approx([0.4, 0.35, 0.3, 0.25, 0.2])
    assert all(candidate.distance_meters == 999.0 for candidate in candidates)


def test_rank_candidates_keeps_best_duplicate() -> None:
    ranked = rank_candidates([_candidate("a", 0.3), _candidate("b", 0.5), _candidate("a", 0.8), _candidate("c", 0.2)])

    assert [(item.lamp_id, item.confidence) for item in ranked] == [("a", 0.8), ("b", 0.5), ("c", 0.2)]


def test_overall_confidence_rules() -> None:
    assert overall_confidence([]) == 0.1
    assert overall_confidence([_candidate("a", 0.6, 10)]) == pytest.approx(0.6)
    assert overall_confidence([_candidate("a", 0.8, 10), _candidate("b", 0.6, 40)]) == pytest.approx(0.8)
    assert overall_confidence([_candidate("a", 0.9, 5), _candidate("b", 0.9, 6)]) == 0.95
    assert overall_confidence([_candidate("a", 0.8, 30), _candidate("b", 0.6, 40)]) == pytest.approx(0.7)


def test_proximity_bonus_includes_exactly_25_meters() -> None:
    assert overall_confidence([_candidate("a", 0.5, 25), _candidate("b", 0.5, 60)]) == pytest.approx(0.6)
    assert overall_confidence([_candidate("a", 0.5, 25.01), _candidate("b", 0.5, 60)]) == pytest.approx(0.5)


@pytest.mark.parametrize(
    ("issue", "expected"),
    [
        ("Lampa je spadnutá na chodník", Priority.HIGH),
        ("NEBEZPEČNÉ vodiče", Priority.HIGH),
        ("lamp post fallen over", Priority.HIGH),
        ("Svetlo bliká celú noc", Priority.MEDIUM),
        ("svieti slabo sviet", Priority.MEDIUM),
        ("Nesvieti", Priority.LOW),
    ],
)
def test_determine_priority(issue: str, expected: Priority) -> None:
    assert determine_priority(issue) == expected


@pytest.mark.anyio
async def test_scorer_degrades_without_interpretation(make_settings) -> None:
    scorer, geocoder = _scorer(make_settings, None)

    candidates = await scorer.score_candidates(LAMPS, "niekde pri škole", street="Hlavná")

    assert [candidate.lamp_id for candidate in candidates] == ["0", "1", "2"]
    assert geocoder.calls == []


@pytest.mark.anyio
async def test_scorer_geocodes_address_components(make_settings) -> None:
    analysis = LocationAnalysis(interpreted_location="Hlavná", address_components=["45", "47"])
    responses = {
        "Hlavná, 45": [(LAMPS[2], 10.0), (LAMPS[3], 40.0)],
        "Hlavná, 47": [(LAMPS[3], 5.0)],
    }
    scorer, geocoder = _scorer(make_settings, analysis, responses)

    candidates = await scorer.score_candidates(LAMPS, "pri dome 45", street="Hlavná")

    assert [(item.lamp_id, item.confidence) for item in candidates] == [("2", 0.9), ("3", 0.9)]
    assert {address for address, _ in geocoder.calls} == {"Hlavná, 45", "Hlavná, 47"}
    assert all(radius == 50.0 for _, radius in geocoder.calls)


@pytest.mark.anyio
async def test_scorer_uses_broader_lookup_when_components_miss(make_settings) -> None:
    analysis = LocationAnalysis(interpreted_location="Hlavná pri škole", address_components=["99"])
    responses = {"Hlavná pri škole": [(LAMPS[5], 80.0)]}
    scorer, geocoder = _scorer(make_settings, analysis, responses)

    candidates = await scorer.score_candidates(LAMPS, "pri škole", street="Hlavná")

    assert [item.lamp_id for item in candidates] == ["5"]
    assert candidates[0].confidence == pytest.approx(0.2)
    assert geocoder.calls[-1] == ("Hlavná pri škole", 100.0)


@pytest.mark.anyio
async def test_process_report_and_work_order(make_settings) -> None:
    analysis = LocationAnalysis(interpreted_location="Hlavná 45", address_components=["45"])
    scorer, _ = _scorer(make_settings, analysis, {"Hlavná 45, 45": [(LAMPS[1], 10.0), (LAMPS[4], 20.0)]})
    search = _StubSearch(LAMPS)
    service = ReportingService(
        search_service=search,
        scorer=scorer,
        settings=make_settings(),
        clock=lambda: 1_700_000_000.0,
    )

    report = await service.process_report("Hlavná", "pri dome 45", "Lampa bliká")

    assert re.fullmatch(r"TSB-1700000000000-[A-Z0-9]{4}", report.id)
    assert search.streets == ["Hlavná"]
    assert report.citizen_location == "Hlavná 45"
    assert [item.lamp_id for item in report.detected_lamps] == ["1", "4"]
    assert report.priority == Priority.MEDIUM
    assert report.status == "pending"
    # mean(0.9, 0.8) + proximity bonus
    assert report.confidence == pytest.approx(0.95)

    order = service.generate_work_order(report)

    assert order.work_order_id == f"WO-{report.id}"
    assert order.assigned_lamps == ["L-1", "L-4"]
    assert order.priority == Priority.MEDIUM
    assert order.estimated_response == "2-3 dni"
    assert "KANDIDÁTSKE LAMPY:" in order.instructions
    assert "Lampa L-1 (1) - 10m, spoľahlivosť 90%" in order.instructions


@pytest.mark.anyio
async def test_report_without_lamps_has_floor_confidence(make_settings) -> None:
    scorer, _ = _scorer(make_settings, None)
    service = ReportingService(search_service=_StubSearch([]), scorer=scorer, settings=make_settings())

    report = await service.process_report("Neznáma", "niekde", "Lampa je spadnutá")

    assert report.detected_lamps == []
    assert report.confidence == 0.1
    assert report.citizen_location == "niekde"
    order = service.generate_work_order(report)
    assert order.priority == Priority.HIGH
    assert order.estimated_response == "24 hodín"
