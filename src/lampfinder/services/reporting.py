"""Incident reports: candidate scoring, priority triage and work orders."""

from __future__ import annotations

import logging
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Sequence

from lampfinder.geo.text import strip_diacritics
from lampfinder.models import (
    UNKNOWN_DISTANCE_METERS,
    IncidentCandidate,
    LampRecord,
    LampReport,
    LocationAnalysis,
    Priority,
    WorkOrder,
)
from lampfinder.observability import Observability, get_observability
from lampfinder.services.geocoding import Geocoder
from lampfinder.services.lamp_search import LampSearchService
from lampfinder.services.location_interpreter import LocationInterpreter
from lampfinder.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

PLACEHOLDER_POOL_SIZE = 5
PROXIMITY_BONUS = 0.1
PROXIMITY_BONUS_METERS = 25.0
CONFIDENCE_CEILING = 0.95
NO_CANDIDATE_CONFIDENCE = 0.1

HIGH_PRIORITY_KEYWORDS = ("spadnut", "nebezpecn", "poskoden", "damage", "danger", "fallen")
MEDIUM_PRIORITY_KEYWORDS = ("blika", "slabo sviet", "flicker", "dim")

ESTIMATED_RESPONSE = {
    Priority.HIGH: "24 hodín",
    Priority.MEDIUM: "2-3 dni",
    Priority.LOW: "5-7 dní",
}

_ID_ALPHABET = string.ascii_uppercase + string.digits


def distance_confidence(distance_meters: float) -> float:
    return max(0.1, min(0.9, 1 - distance_meters / 100))


def placeholder_candidates(lamps: Sequence[LampRecord]) -> List[IncidentCandidate]:
    """Low-confidence guesses used when the description could not be placed."""

    return [
        IncidentCandidate(
            lamp_id=lamp.id,
            lamp_number=lamp.lamp_number,
            coords=lamp.coords,
            distance_meters=UNKNOWN_DISTANCE_METERS,
            confidence=max(0.1, 0.4 - 0.05 * index),
        )
        for index, lamp in enumerate(lamps[:PLACEHOLDER_POOL_SIZE])
    ]


def rank_candidates(candidates: Sequence[IncidentCandidate], limit: int = 3) -> List[IncidentCandidate]:
    """Keep the most confident occurrence per lamp, order by confidence, truncate."""

    best: Dict[str, IncidentCandidate] = {}
    for candidate in candidates:
        current = best.get(candidate.lamp_id)
        if current is None or candidate.confidence > current.confidence:
            best[candidate.lamp_id] = candidate
    ranked = sorted(best.values(), key=lambda item: item.confidence, reverse=True)
    return ranked[:limit]


def overall_confidence(candidates: Sequence[IncidentCandidate]) -> float:
    if not candidates:
        return NO_CANDIDATE_CONFIDENCE
    average = sum(candidate.confidence for candidate in candidates) / len(candidates)
    closest = min(candidate.distance_meters for candidate in candidates)
    bonus = PROXIMITY_BONUS if len(candidates) >= 2 and closest <= PROXIMITY_BONUS_METERS else 0.0
    return min(CONFIDENCE_CEILING, average + bonus)


def determine_priority(issue_description: str) -> Priority:
    issue = strip_diacritics(issue_description).lower()
    if any(keyword in issue for keyword in HIGH_PRIORITY_KEYWORDS):
        return Priority.HIGH
    if any(keyword in issue for keyword in MEDIUM_PRIORITY_KEYWORDS):
        return Priority.MEDIUM
    return Priority.LOW


class IncidentCandidateScorer:
    """Rank the lamps of a street by how well they fit a citizen's description.

    Each address component extracted from the description is geocoded and
    lamps within ``component_radius_meters`` become candidates. If none match,
    the interpreted location itself is geocoded against the wider
    ``nearest_radius_meters``. Without an interpretation, or when nothing can
    be placed, the first lamps of the street are returned with placeholder
    confidences.
    """

    def __init__(
        self,
        *,
        interpreter: LocationInterpreter,
        geocoder: Geocoder,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.interpreter = interpreter
        self.geocoder = geocoder

    async def score_candidates(
        self, lamps: Sequence[LampRecord], location_description: str, *, street: str = ""
    ) -> List[IncidentCandidate]:
        analysis = await self.interpreter.interpret(street, location_description)
        return await self.rank(lamps, analysis)

    async def rank(self, lamps: Sequence[LampRecord], analysis: LocationAnalysis | None) -> List[IncidentCandidate]:
        limit = self.settings.reporting.max_candidates
        if not lamps:
            return []
        if analysis is None:
            return placeholder_candidates(lamps)[:limit]

        candidates: List[IncidentCandidate] = []
        for component in analysis.address_components:
            address = f"{analysis.interpreted_location}, {component}"
            candidates.extend(
                await self._nearby(address, lamps, self.settings.reporting.component_radius_meters)
            )

        if not candidates:
            LOGGER.debug("No component matches; trying broader lookup for %r", analysis.interpreted_location)
            candidates = await self._nearby(
                analysis.interpreted_location, lamps, self.settings.reporting.nearest_radius_meters
            )

        if not candidates:
            return placeholder_candidates(lamps)[:limit]
        return rank_candidates(candidates, limit)

    async def _nearby(self, address: str, lamps: Sequence[LampRecord], radius: float) -> List[IncidentCandidate]:
        nearby = await self.geocoder.find_nearest_lamps(address, lamps, radius)
        return [
            IncidentCandidate(
                lamp_id=lamp.id,
                lamp_number=lamp.lamp_number,
                coords=lamp.coords,
                distance_meters=distance,
                confidence=distance_confidence(distance),
            )
            for lamp, distance in nearby
        ]


class ReportingService:
    """Turn citizen incident descriptions into reports and dispatch work orders."""

    def __init__(
        self,
        *,
        search_service: LampSearchService,
        scorer: IncidentCandidateScorer,
        settings: Settings | None = None,
        observability: Observability | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.search_service = search_service
        self.scorer = scorer
        self._clock = clock or time.time
        self._observability = observability or get_observability(component="reporting", settings=self.settings)

    def generate_report_id(self) -> str:
        suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(4))
        return f"{self.settings.reporting.report_id_prefix}-{int(self._clock() * 1000)}-{suffix}"

    async def process_report(self, street: str, location_description: str, issue_description: str) -> LampReport:
        LOGGER.info("Processing lamp report street=%r", street)
        analysis = await self.scorer.interpreter.interpret(street, location_description)
        result = await self.search_service.search(street)
        candidates = await self.scorer.rank(result.lamps, analysis)
        citizen_location = (analysis or LocationInterpreter.fallback(location_description)).interpreted_location

        report = LampReport(
            id=self.generate_report_id(),
            timestamp=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
            street=street,
            description=location_description,
            issue=issue_description,
            citizen_location=citizen_location,
            detected_lamps=candidates,
            confidence=overall_confidence(candidates),
            priority=determine_priority(issue_description),
        )
        self._observability.emit_event(
            "report.generated",
            report_id=report.id,
            street=street,
            candidates=len(candidates),
            confidence=round(report.confidence, 3),
            priority=report.priority.value,
        )
        self._observability.increment("report.generated", tags={"priority": report.priority.value})
        return report

    def generate_work_order(self, report: LampReport) -> WorkOrder:
        priority = determine_priority(report.issue)
        top = report.detected_lamps[0] if report.detected_lamps else None
        lines = [
            "NAHLÁSENIE PORUCHY OSVETLENIA",
            "",
            f"Číslo hlásenia: {report.id}",
            f"Dátum: {report.timestamp.strftime('%d. %m. %Y %H:%M:%S')}",
            f"Ulica: {report.street}",
            f"Popis polohy: {report.description}",
            f"Problém: {report.issue}",
            "",
            "KANDIDÁTSKE LAMPY:",
        ]
        for lamp in report.detected_lamps:
            lines.append(
                f"- Lampa {lamp.lamp_number or 'N/A'} ({lamp.lamp_id}) - {round(lamp.distance_meters)}m, "
                f"spoľahlivosť {round(lamp.confidence * 100)}%"
            )
        lines.append("")
        if top:
            lines.append(f"ODPORÚČANIE: Začať kontrolou lampy {top.lamp_number or top.lamp_id}")
            lines.append(f"GPS súradnice: {top.coords[0]}, {top.coords[1]}")
        else:
            lines.append("ODPORÚČANIE: Obhliadka celej ulice")
        lines.append("")
        lines.append(f"Spoľahlivosť lokalizácie: {round(report.confidence * 100)}%")

        return WorkOrder(
            work_order_id=f"WO-{report.id}",
            assigned_lamps=[lamp.lamp_number or "N/A" for lamp in report.detected_lamps],
            instructions="\n".join(lines),
            priority=priority,
            estimated_response=ESTIMATED_RESPONSE[priority],
        )


__all__ = [
    "IncidentCandidateScorer",
    "ReportingService",
    "determine_priority",
    "distance_confidence",
    "overall_confidence",
    "placeholder_candidates",
    "rank_candidates",
]
