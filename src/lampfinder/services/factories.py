"""Factory helpers that wire the lookup services from configuration.

The schema and gazetteer caches live on the service objects, so callers that
want process-wide caching (the API) build one :class:`LampServices` at startup
and reuse it for every request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from lampfinder.arcgis import FeatureLayerClient
from lampfinder.models import SearchResult
from lampfinder.services.cache import SearchResponseCache
from lampfinder.services.field_discovery import SchemaDiscovery
from lampfinder.services.gazetteer import OverpassStreetSource, StreetGazetteer, StreetMatcher
from lampfinder.services.geocoding import Geocoder
from lampfinder.services.lamp_search import LampSearchService
from lampfinder.services.llm import build_chat_model
from lampfinder.services.location_interpreter import LocationInterpreter
from lampfinder.services.reporting import IncidentCandidateScorer, ReportingService
from lampfinder.services.street_suggester import StreetSuggester
from lampfinder.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)


def build_street_matcher(settings: Settings | None = None) -> StreetMatcher:
    """Return a matcher backed by the Overpass gazetteer and the configured LLM."""

    resolved = settings or get_settings()
    gazetteer = StreetGazetteer(source=OverpassStreetSource(settings=resolved), settings=resolved)
    chat_model = build_chat_model(resolved, temperature=0.3)
    suggester = StreetSuggester(settings=resolved, chat_model=chat_model, disabled=chat_model is None)
    return StreetMatcher(gazetteer=gazetteer, suggester=suggester, settings=resolved)


def build_lamp_search_service(
    settings: Settings | None = None,
    *,
    layer: FeatureLayerClient | None = None,
    street_matcher: StreetMatcher | None = None,
) -> LampSearchService:
    """Instantiate the resolution engine with its schema discovery and matcher."""

    resolved = settings or get_settings()
    layer = layer or FeatureLayerClient(settings=resolved)
    return LampSearchService(
        layer=layer,
        schema_discovery=SchemaDiscovery(layer=layer, settings=resolved),
        street_matcher=street_matcher or build_street_matcher(resolved),
        settings=resolved,
    )


def build_reporting_service(
    settings: Settings | None = None,
    *,
    search_service: LampSearchService | None = None,
) -> ReportingService:
    """Instantiate the reporting service; the LLM interpreter is disabled without credentials."""

    resolved = settings or get_settings()
    chat_model = build_chat_model(resolved)
    scorer = IncidentCandidateScorer(
        interpreter=LocationInterpreter(settings=resolved, chat_model=chat_model, disabled=chat_model is None),
        geocoder=Geocoder(settings=resolved),
        settings=resolved,
    )
    return ReportingService(
        search_service=search_service or build_lamp_search_service(resolved),
        scorer=scorer,
        settings=resolved,
    )


@dataclass
class LampServices:
    """Long-lived service graph shared by API requests."""

    settings: Settings
    search: LampSearchService
    reporting: ReportingService
    response_cache: SearchResponseCache[SearchResult]

    async def aclose(self) -> None:
        await self.search.layer.aclose()
        await self.search.street_matcher.gazetteer.source.aclose()
        await self.reporting.scorer.geocoder.aclose()


def build_services(settings: Settings | None = None) -> LampServices:
    resolved = settings or get_settings()
    search = build_lamp_search_service(resolved)
    LOGGER.info("Lamp services ready feature_url=%s llm=%s", resolved.feature_url, resolved.llm.provider)
    return LampServices(
        settings=resolved,
        search=search,
        reporting=build_reporting_service(resolved, search_service=search),
        response_cache=SearchResponseCache(resolved.search.response_cache_ttl_seconds),
    )


__all__ = [
    "LampServices",
    "build_lamp_search_service",
    "build_reporting_service",
    "build_services",
    "build_street_matcher",
]
