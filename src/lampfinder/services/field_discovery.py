"""Detect street-name and lamp-identifier fields from feature layer metadata."""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, List, Sequence

from pydantic import ValidationError

from lampfinder.arcgis import FeatureLayerClient
from lampfinder.models import FieldInfo, FieldSchema
from lampfinder.observability import Observability, get_observability
from lampfinder.services.cache import TimedCache
from lampfinder.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

STREET_FIELD_PATTERNS = ("ulica", "street", "nazov_ulice", "nazov", "cesta", "name")
LAMP_ID_FIELD_PATTERNS = ("lamp", "stlp", "cislo", "number", "id", "svetlo", "svetelne")
RECORD_IDENTITY_FIELDS = frozenset({"objectid", "oid"})

DEFAULT_STREET_FIELD = "ulica"
DEFAULT_LAMP_ID_FIELD = "OBJECTID"
FALLBACK_STREET_FIELDS = ("ulica", "nazov_ulice", "street_name")
FALLBACK_LAMP_ID_FIELDS = ("cislo_stlp", "lamp_id", "objectid")


def _matches_any(field: FieldInfo, patterns: Sequence[str]) -> bool:
    name = field.name.lower()
    alias = (field.alias or "").lower()
    return any(pattern in name or pattern in alias for pattern in patterns)


def _matching_fields(fields: Iterable[FieldInfo], patterns: Sequence[str], accept: Callable[[FieldInfo], bool]) -> List[str]:
    """Names of qualifying fields that match any pattern, in layer order."""

    names: List[str] = []
    for field in fields:
        if field.name not in names and accept(field) and _matches_any(field, patterns):
            names.append(field.name)
    return names


def _is_string_field(field: FieldInfo) -> bool:
    return "string" in field.type.lower()


def identify_street_fields(fields: Iterable[FieldInfo]) -> List[str]:
    """Return string fields whose name or alias looks like a street name."""

    return _matching_fields(fields, STREET_FIELD_PATTERNS, _is_string_field) or [DEFAULT_STREET_FIELD]


def identify_lamp_id_fields(fields: Iterable[FieldInfo]) -> List[str]:
    """Return fields that look like lamp numbers; record-identity fields are excluded."""

    def _not_identity(field: FieldInfo) -> bool:
        return field.name.lower() not in RECORD_IDENTITY_FIELDS

    return _matching_fields(fields, LAMP_ID_FIELD_PATTERNS, _not_identity) or [DEFAULT_LAMP_ID_FIELD]


def default_schema(discovered_at: float | None = None) -> FieldSchema:
    """Hardcoded schema used when the layer metadata has never been readable."""

    return FieldSchema(
        street_fields=list(FALLBACK_STREET_FIELDS),
        lamp_id_fields=list(FALLBACK_LAMP_ID_FIELDS),
        all_fields=[],
        discovered_at=discovered_at if discovered_at is not None else time.time(),
    )


class SchemaDiscovery:
    """Discover and cache the field schema of the lamp feature layer.

    :meth:`discover` never raises. A failed refresh serves the last good
    schema when one exists, otherwise :func:`default_schema`.
    """

    def __init__(
        self,
        *,
        layer: FeatureLayerClient,
        settings: Settings | None = None,
        cache: TimedCache[FieldSchema] | None = None,
        observability: Observability | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.layer = layer
        self._clock = clock or time.time
        self._cache = cache or TimedCache(self.settings.search.schema_cache_ttl_seconds, name="field schema")
        self._observability = observability or get_observability(component="field_discovery", settings=self.settings)

    async def discover(self, force_refresh: bool = False) -> FieldSchema:
        try:
            return await self._cache.get_or_refresh(self._load, force=force_refresh)
        except Exception:
            LOGGER.exception("Field discovery failed; using default schema")
            self._observability.increment("field_discovery.fallback")
            return default_schema(self._clock())

    async def _load(self) -> FieldSchema:
        LOGGER.info("Discovering fields from layer metadata")
        info = await self.layer.fetch_layer_info()
        fields = self._parse_fields(info.get("fields") or [])
        schema = FieldSchema(
            street_fields=identify_street_fields(fields),
            lamp_id_fields=identify_lamp_id_fields(fields),
            all_fields=fields,
            discovered_at=self._clock(),
        )
        self._observability.emit_event(
            "field_discovery.completed",
            street_fields=schema.street_fields,
            lamp_id_fields=schema.lamp_id_fields,
            total_fields=len(fields),
        )
        return schema

    @staticmethod
    def _parse_fields(raw_fields: Iterable[object]) -> List[FieldInfo]:
        parsed: List[FieldInfo] = []
        for item in raw_fields:
            if not isinstance(item, dict):
                continue
            try:
                parsed.append(FieldInfo.model_validate(item))
            except ValidationError:
                LOGGER.debug("Skipping malformed field metadata %s", item)
        return parsed


__all__ = [
    "SchemaDiscovery",
    "default_schema",
    "identify_lamp_id_fields",
    "identify_street_fields",
]
