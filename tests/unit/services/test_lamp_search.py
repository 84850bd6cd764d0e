"""Tests for the lamp resolution cascade."""

from __future__ import annotations

from types import SimpleNamespace

import httpx
import pytest

from lampfinder.arcgis import FeatureLayerClient
from lampfinder.errors import DegradedServiceError, QueryValidationError
from lampfinder.models import FeaturePage, FieldSchema, RawFeature
from lampfinder.services.field_discovery import SchemaDiscovery
from lampfinder.services.gazetteer import StreetGazetteer, StreetMatcher
from lampfinder.services.lamp_search import LampSearchService, feature_to_lamp, record_identity
from lampfinder.services.street_suggester import StreetSuggester


def _schema(*street_fields: str) -> FieldSchema:
    return FieldSchema(street_fields=list(street_fields), lamp_id_fields=["cislo_stlp"], discovered_at=0.0)


def _feature(object_id: int, street: str = "Ružinovská", field: str = "ulica") -> RawFeature:
    return RawFeature(
        attributes={"OBJECTID": object_id, field: street, "cislo_stlp": f"RU-{object_id:03d}"},
        geometry={"x": 17.15 + object_id / 10000, "y": 48.15},
    )


class _StubLayer:
    def __init__(self, respond) -> None:
        self.respond = respond
        self.attribute_calls: list[str] = []
        self.geometry_calls: list[tuple[dict, str | None]] = []

    async def query_by_attributes(self, where, offset=0):
        self.attribute_calls.append(where)
        return FeaturePage(features=self.respond(where, None))

    async def query_by_geometry(self, geometry, where=None, offset=0):
        self.geometry_calls.append((geometry, where))
        return FeaturePage(features=self.respond(where, geometry))

    async def query_all(self, fetch_page):
        page = await fetch_page(0)
        return list(page.features)


class _StubDiscovery:
    def __init__(self, schema: FieldSchema) -> None:
        self.schema = schema

    async def discover(self, force_refresh: bool = False) -> FieldSchema:
        return self.schema


class _StubMatcher:
    def __init__(self, alternates=None) -> None:
        self.alternates = alternates or []
        self.calls: list[str] = []

    async def suggest_alternates(self, user_input, limit=3):
        self.calls.append(user_input)
        return self.alternates[:limit]


def _service(make_settings, layer, schema, matcher=None, **search) -> LampSearchService:
    return LampSearchService(
        layer=layer,
        schema_discovery=_StubDiscovery(schema),
        street_matcher=matcher or _StubMatcher(),
        settings=make_settings(search=search) if search else make_settings(),
    )


@pytest.mark.anyio
async def test_strategy_table_order(make_settings) -> None:
    service = _service(make_settings, _StubLayer(lambda where, geometry: []), _schema("ulica"))

    assert [name for name, _ in service.strategies()] == [
        "spatial",
        "per_field",
        "combined",
        "de_accented",
        "gazetteer",
    ]


@pytest.mark.anyio
async def test_second_street_field_hit_skips_combined_query(make_settings) -> None:
    def respond(where, geometry):
        if where.startswith("UPPER(nazov_ulice)") and " OR " not in where:
            return [_feature(1, field="nazov_ulice"), _feature(2, field="nazov_ulice")]
        return []

    layer = _StubLayer(respond)
    service = _service(make_settings, layer, _schema("ulica", "nazov_ulice"))

    result = await service.search("Ružinovská")

    assert [lamp.id for lamp in result.lamps] == ["1", "2"]
    assert result.strategy == "per_field"
    assert len(layer.attribute_calls) == 2
    assert not any(" OR " in where for where in layer.attribute_calls)


@pytest.mark.anyio
async def test_spatial_query_runs_first_with_coordinates(make_settings) -> None:
    layer = _StubLayer(lambda where, geometry: [_feature(5)] if geometry else [])
    service = _service(make_settings, layer, _schema("ulica"), buffer_meters=150, buffer_points=16)

    result = await service.search("Ružinovská", lat=48.15, lng=17.15)

    assert result.strategy == "spatial"
    geometry, where = layer.geometry_calls[0]
    assert len(geometry["rings"][0]) == 17
    assert "Ružinovská" in where
    assert layer.attribute_calls == []


@pytest.mark.anyio
async def test_combined_query_runs_after_per_field_misses(make_settings) -> None:
    layer = _StubLayer(lambda where, geometry: [_feature(3)] if " OR " in where else [])
    service = _service(make_settings, layer, _schema("ulica", "nazov"))

    result = await service.search("Ružinovská")

    assert result.strategy == "combined"
    assert len(layer.attribute_calls) == 3


@pytest.mark.anyio
async def test_de_accented_retry_runs_once_with_plain_text(make_settings) -> None:
    layer = _StubLayer(lambda where, geometry: [_feature(9)] if "Ruzinovska" in where else [])
    service = _service(make_settings, layer, _schema("ulica", "nazov"))

    result = await service.search("Ružinovská")

    assert result.strategy == "de_accented"
    plain_queries = [where for where in layer.attribute_calls if "Ruzinovska" in where]
    assert len(plain_queries) == 1
    assert len(layer.attribute_calls) == 4


@pytest.mark.anyio
async def test_de_accented_step_skipped_without_diacritics(make_settings) -> None:
    matcher = _StubMatcher()
    layer = _StubLayer(lambda where, geometry: [])
    service = _service(make_settings, layer, _schema("ulica"), matcher=matcher)

    result = await service.search("Hlavna")

    assert result.lamps == []
    assert layer.attribute_calls == ["UPPER(ulica) LIKE UPPER('%Hlavna%')"]
    assert matcher.calls == ["Hlavna"]


@pytest.mark.anyio
async def test_suggestions_are_tried_and_reported(make_settings) -> None:
    matcher = _StubMatcher(["Vajnorská", "Vajanského", "Vazovova"])
    layer = _StubLayer(lambda where, geometry: [_feature(4, "Vajanského")] if "Vajanského" in where else [])
    service = _service(make_settings, layer, _schema("ulica"), matcher=matcher)

    result = await service.search("Vajnorsky")

    assert result.strategy == "gazetteer"
    assert [lamp.id for lamp in result.lamps] == ["4"]
    assert result.suggested_street_names == ["Vajnorská", "Vajanského"]
    assert not any("Vazovova" in where for where in layer.attribute_calls)


@pytest.mark.anyio
async def test_query_budget_caps_remote_calls(make_settings) -> None:
    matcher = _StubMatcher(["Hlavná", "Bajkalská"])
    layer = _StubLayer(lambda where, geometry: [])
    service = _service(make_settings, layer, _schema("ulica", "nazov"), matcher=matcher, max_remote_queries=4)

    result = await service.search("Ružinovská")

    assert result.lamps == []
    assert result.strategy is None
    assert len(layer.attribute_calls) == 4


@pytest.mark.anyio
async def test_validation_errors_propagate(make_settings) -> None:
    def respond(where, geometry):
        raise QueryValidationError("bad field", params={"where": where})

    service = _service(make_settings, _StubLayer(respond), _schema("ulica"))

    with pytest.raises(QueryValidationError):
        await service.search("Hlavná")


def test_features_without_geometry_are_dropped() -> None:
    schema = _schema("ulica")

    assert feature_to_lamp(RawFeature(attributes={"OBJECTID": 1}), schema) is None
    polygon = RawFeature(
        attributes={"objectid": 2, "CISLO_STLP": "X-2"},
        geometry={"rings": [[[0.0, 0.0], [2.0, 0.0], [2.0, 2.0], [0.0, 2.0]]]},
    )
    lamp = feature_to_lamp(polygon, schema)
    assert lamp is not None
    assert lamp.id == "2"
    assert lamp.lamp_number == "X-2"
    assert lamp.coords == (1.0, 1.0)


def test_record_identity_placeholder_is_deterministic() -> None:
    feature = RawFeature(attributes={"ulica": "Hlavná"}, geometry={"x": 17.1, "y": 48.1})

    first = record_identity(feature, (17.1, 48.1))
    assert first.startswith("feature-")
    assert record_identity(feature, (17.1, 48.1)) == first
    assert record_identity(feature, (17.2, 48.1)) != first


# ----------------------------------------------------------------------
# End-to-end against a mocked feature service
# ----------------------------------------------------------------------

FEATURE_URL = "https://gis.example.test/rest/services/lamps/FeatureServer/0"
LAYER_INFO = {
    "fields": [
        {"name": "OBJECTID", "type": "esriFieldTypeOID"},
        {"name": "ulica", "type": "esriFieldTypeString", "alias": "Ulica"},
        {"name": "cislo_stlp", "type": "esriFieldTypeString", "alias": "Číslo stĺpu"},
    ]
}
RUZINOVSKA_FEATURES = [
    {
        "attributes": {"OBJECTID": index, "ulica": "Ružinovská", "cislo_stlp": f"RU-{index:03d}"},
        "geometry": {"x": 17.15 + index * 0.001, "y": 48.15 + index * 0.0005},
    }
    for index in range(1, 5)
]


class _StubStreetSource:
    async def fetch_names(self):
        raise DegradedServiceError("overpass unavailable")


class _FakeChatModel:
    def __init__(self, content: str) -> None:
        self.content = content

    async def ainvoke(self, messages):
        return SimpleNamespace(content=self.content)


def _end_to_end_service(make_settings, queries: list[str]) -> LampSearchService:
    def handler(request: httpx.Request) -> httpx.Response:
        if not request.url.path.endswith("/query"):
            return httpx.Response(200, json=LAYER_INFO)
        where = request.url.params.get("where", "")
        queries.append(where)
        if "Ružinovská" in where:
            return httpx.Response(200, json={"features": RUZINOVSKA_FEATURES})
        return httpx.Response(200, json={"features": []})

    settings = make_settings(arcgis={"feature_url": FEATURE_URL})
    layer = FeatureLayerClient(settings=settings, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    suggester = StreetSuggester(settings=settings, chat_model=_FakeChatModel("Hlavná\nBajkalská\nAtlantis"))
    matcher = StreetMatcher(
        gazetteer=StreetGazetteer(source=_StubStreetSource(), settings=settings),
        suggester=suggester,
        settings=settings,
    )
    return LampSearchService(
        layer=layer,
        schema_discovery=SchemaDiscovery(layer=layer, settings=settings),
        street_matcher=matcher,
        settings=settings,
    )


@pytest.mark.anyio
async def test_end_to_end_street_search(make_settings) -> None:
    queries: list[str] = []
    service = _end_to_end_service(make_settings, queries)

    result = await service.search("Ružinovská")

    assert len(result.lamps) == 4
    assert [lamp.lamp_number for lamp in result.lamps] == ["RU-001", "RU-002", "RU-003", "RU-004"]
    assert result.lamps[0].coords == pytest.approx((17.151, 48.1505))
    assert result.field_schema.street_fields == ["ulica"]
    assert result.suggested_street_names is None
    assert len(queries) == 1


@pytest.mark.anyio
async def test_end_to_end_unknown_street_returns_suggestions(make_settings) -> None:
    queries: list[str] = []
    service = _end_to_end_service(make_settings, queries)

    result = await service.search("NonexistentStreet123")

    assert result.lamps == []
    assert result.suggested_street_names
    assert len(result.suggested_street_names) <= 2
    assert result.suggested_street_names == ["Hlavná", "Bajkalská"]
