"""Lamp resolution engine: the ordered cascade of feature-layer query strategies."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Sequence, Tuple

from lampfinder.arcgis import FeatureLayerClient, any_like_clause, like_clause
from lampfinder.geo.geometry import buffer_geometry, geometry_centroid
from lampfinder.geo.text import has_diacritics, normalize_street, strip_diacritics
from lampfinder.models import FieldSchema, LampRecord, RawFeature, SearchResult
from lampfinder.observability import Observability, get_observability
from lampfinder.services.field_discovery import SchemaDiscovery
from lampfinder.services.gazetteer import StreetMatcher
from lampfinder.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

RECORD_IDENTITY_KEYS = ("OBJECTID", "objectid", "OID")
MAX_ALTERNATES = 3


class QueryBudgetExceeded(RuntimeError):
    """Raised inside the cascade when a search has used up its remote queries."""


@dataclass
class QueryBudget:
    """Upper bound on remote strategy queries issued for one search."""

    limit: int
    used: int = 0

    def consume(self) -> None:
        if self.used >= self.limit:
            raise QueryBudgetExceeded(f"remote query budget of {self.limit} exhausted")
        self.used += 1


@dataclass
class SearchContext:
    """Per-request state threaded through the strategies."""

    street: str
    schema: FieldSchema
    budget: QueryBudget
    lat: float | None = None
    lng: float | None = None
    attempted_values: List[str] = field(default_factory=list)
    suggestions_tried: List[str] = field(default_factory=list)

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None


Strategy = Callable[[SearchContext], Awaitable[List[RawFeature]]]


def extract_lamp_number(attributes: Mapping[str, Any], lamp_id_fields: Sequence[str]) -> str | None:
    """Return the first non-empty lamp-identifier value, trying each field as-is, lower and upper."""

    for field_name in lamp_id_fields:
        for key in (field_name, field_name.lower(), field_name.upper()):
            value = attributes.get(key)
            if value is not None and value != "":
                return str(value)
    return None


def record_identity(feature: RawFeature, coords: Tuple[float, float]) -> str:
    """Stable identifier for a feature.

    Uses the layer's object id when present; otherwise a hash of the feature's
    attributes and coordinates, so the same feature always gets the same id.
    """

    for key in RECORD_IDENTITY_KEYS:
        value = feature.attributes.get(key)
        if value is not None and value != "":
            return str(value)
    digest = hashlib.sha1(
        json.dumps({"attributes": feature.attributes, "coords": list(coords)}, sort_keys=True, default=str).encode(
            "utf-8"
        )
    ).hexdigest()
    return f"feature-{digest[:16]}"


def feature_to_lamp(feature: RawFeature, schema: FieldSchema) -> LampRecord | None:
    coords = geometry_centroid(feature.geometry)
    if coords is None:
        LOGGER.warning("Feature missing valid geometry; dropping attributes=%s", feature.attributes)
        return None
    return LampRecord(
        id=record_identity(feature, coords),
        lamp_number=extract_lamp_number(feature.attributes, schema.lamp_id_fields),
        coords=coords,
        attributes=feature.attributes,
    )


class LampSearchService:
    """Resolve a street name (and optional position) into lamp records.

    Strategies run strictly in order and the first one returning features wins:

    1. ``spatial`` - buffer around the coordinates combined with the street filter.
    2. ``per_field`` - substring filter on each street field in turn.
    3. ``combined`` - one query OR-ing the filter across all street fields.
    4. ``de_accented`` - steps 2-3 again with diacritics stripped.
    5. ``gazetteer`` - steps 2-3 for alternate names from the street matcher.

    Finding nothing is not an error; the result is simply empty, carrying the
    alternates that were tried.
    """

    def __init__(
        self,
        *,
        layer: FeatureLayerClient,
        schema_discovery: SchemaDiscovery,
        street_matcher: StreetMatcher,
        settings: Settings | None = None,
        observability: Observability | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.layer = layer
        self.schema_discovery = schema_discovery
        self.street_matcher = street_matcher
        self._observability = observability or get_observability(component="lamp_search", settings=self.settings)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def strategies(self) -> List[Tuple[str, Strategy]]:
        """Ordered policy table of the cascade."""

        return [
            ("spatial", self._spatial),
            ("per_field", self._per_field_strategy),
            ("combined", self._combined_strategy),
            ("de_accented", self._de_accented),
            ("gazetteer", self._gazetteer),
        ]

    async def search(self, street: str, lat: float | None = None, lng: float | None = None) -> SearchResult:
        with self._observability.timer("lamp_search.duration") as timing_tags:
            schema = await self.schema_discovery.discover()
            context = SearchContext(
                street=normalize_street(street),
                schema=schema,
                budget=QueryBudget(limit=self.settings.search.max_remote_queries),
                lat=lat,
                lng=lng,
            )
            winner, features = await self._run_cascade(context)
            timing_tags["strategy"] = winner or "none"

        lamps = [lamp for lamp in (feature_to_lamp(item, schema) for item in features) if lamp is not None]
        self._observability.emit_event(
            "lamp_search.completed",
            street=context.street,
            strategy=winner,
            count=len(lamps),
            remote_queries=context.budget.used,
            suggestions=context.suggestions_tried,
        )
        return SearchResult(
            lamps=lamps,
            field_schema=schema,
            suggested_street_names=list(context.suggestions_tried) or None,
            strategy=winner,
        )

    async def _run_cascade(self, context: SearchContext) -> Tuple[str | None, List[RawFeature]]:
        for name, strategy in self.strategies():
            try:
                features = await strategy(context)
            except QueryBudgetExceeded:
                LOGGER.warning(
                    "Stopping cascade for %r at strategy %s: %s remote queries used",
                    context.street,
                    name,
                    context.budget.used,
                )
                self._observability.increment("lamp_search.budget_exhausted")
                return None, []
            if features:
                return name, features
        return None, []

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _spatial(self, context: SearchContext) -> List[RawFeature]:
        if not context.has_coordinates or not context.street:
            return []
        geometry = buffer_geometry(
            context.lat,
            context.lng,
            self.settings.search.buffer_meters,
            self.settings.search.buffer_points,
        )
        where = any_like_clause(context.schema.street_fields, context.street)
        context.budget.consume()
        features = await self.layer.query_all(
            lambda offset: self.layer.query_by_geometry(geometry, where, offset)
        )
        LOGGER.info(
            "Spatial search found %s features street=%r lat=%s lng=%s buffer=%sm",
            len(features),
            context.street,
            context.lat,
            context.lng,
            self.settings.search.buffer_meters,
        )
        return features

    async def _per_field_strategy(self, context: SearchContext) -> List[RawFeature]:
        if not context.street:
            return []
        context.attempted_values.append(context.street)
        return await self._per_field(context, context.street)

    async def _combined_strategy(self, context: SearchContext) -> List[RawFeature]:
        if not context.street:
            return []
        return await self._combined(context, context.street)

    async def _de_accented(self, context: SearchContext) -> List[RawFeature]:
        if not has_diacritics(context.street):
            return []
        plain = strip_diacritics(context.street)
        LOGGER.debug("Trying de-accented variant original=%r plain=%r", context.street, plain)
        context.attempted_values.append(plain)
        return await self._attribute_queries(context, plain)

    async def _gazetteer(self, context: SearchContext) -> List[RawFeature]:
        if not context.street:
            return []
        LOGGER.info("No lamps found, asking street matcher street=%r", context.street)
        alternates = await self.street_matcher.suggest_alternates(context.street, limit=MAX_ALTERNATES)
        for suggestion in alternates[: self.settings.search.max_suggestions_tried]:
            context.suggestions_tried.append(suggestion)
            if suggestion in context.attempted_values:
                continue
            context.attempted_values.append(suggestion)
            features = await self._attribute_queries(context, suggestion)
            if features:
                LOGGER.info(
                    "Found %s lamps using suggestion original=%r suggestion=%r",
                    len(features),
                    context.street,
                    suggestion,
                )
                self._observability.increment("lamp_search.suggestion_hit")
                return features
        return []

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    async def _attribute_queries(self, context: SearchContext, value: str) -> List[RawFeature]:
        features = await self._per_field(context, value)
        if features:
            return features
        return await self._combined(context, value)

    async def _per_field(self, context: SearchContext, value: str) -> List[RawFeature]:
        for field_name in context.schema.street_fields:
            where = like_clause(field_name, value)
            features = await self._query_where(context, where)
            if features:
                LOGGER.info("Found %s features using field %s value=%r", len(features), field_name, value)
                return features
        return []

    async def _combined(self, context: SearchContext, value: str) -> List[RawFeature]:
        fields = context.schema.street_fields
        if len(fields) < 2:
            return []
        features = await self._query_where(context, any_like_clause(fields, value))
        if features:
            LOGGER.info("Found %s features using combined fields %s value=%r", len(features), fields, value)
        return features

    async def _query_where(self, context: SearchContext, where: str) -> List[RawFeature]:
        context.budget.consume()
        return await self.layer.query_all(lambda offset: self.layer.query_by_attributes(where, offset))


def summarize(result: SearchResult, street: str) -> str:
    """Human-readable one-liner describing a search outcome."""

    count = len(result.lamps)
    if count:
        return f"Found {count} lamp{'s' if count != 1 else ''} on {street}"
    if result.suggested_street_names:
        return f'No lamps found on "{street}". Try: {", ".join(result.suggested_street_names[:2])}'
    return f'No lamps found on "{street}"'


def search_payload(result: SearchResult) -> Dict[str, Any]:
    """Serialize a search result for API responses."""

    payload: Dict[str, Any] = {
        "lamps": [lamp.model_dump() for lamp in result.lamps],
        "field_schema": result.field_schema.public_view(),
    }
    if result.suggested_street_names:
        payload["suggested_street_names"] = list(result.suggested_street_names)
    return payload


__all__ = [
    "LampSearchService",
    "QueryBudget",
    "QueryBudgetExceeded",
    "SearchContext",
    "extract_lamp_number",
    "feature_to_lamp",
    "record_identity",
    "search_payload",
    "summarize",
]
