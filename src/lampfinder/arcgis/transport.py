"""Retried, paginated access to an ArcGIS REST feature layer."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping

import httpx

from lampfinder.errors import QueryValidationError, TransientTransportError
from lampfinder.models import FeaturePage, RawFeature
from lampfinder.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

PageFetcher = Callable[[int], Awaitable[FeaturePage]]
SleepFn = Callable[[float], Awaitable[Any]]


class _RemoteServiceError(RuntimeError):
    """Error body returned with HTTP 200, as ArcGIS servers do."""


def quote_literal(value: str) -> str:
    """Quote ``value`` as a SQL string literal for an ArcGIS ``where`` clause."""

    return "'" + str(value).replace("'", "''") + "'"


def like_clause(field: str, value: str) -> str:
    """Case-insensitive substring predicate on ``field``."""

    return f"UPPER({field}) LIKE UPPER({quote_literal(f'%{value}%')})"


def any_like_clause(fields: List[str], value: str) -> str:
    """OR of :func:`like_clause` across every field."""

    return " OR ".join(like_clause(field, value) for field in fields)


class FeatureLayerClient:
    """Thin async client for the ``/query`` endpoint of a feature layer.

    Every request is retried with exponential backoff
    (``retry_delay_seconds * 2 ** (attempt - 1)``) except when the server
    reports a malformed query, which is surfaced immediately as
    :class:`QueryValidationError`.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        config = self.settings.arcgis
        self.feature_url = config.feature_url.rstrip("/")
        self.max_retries = config.max_retries
        self.retry_delay_seconds = config.retry_delay_seconds
        self.page_size = config.max_record_count
        self.max_features = config.max_features
        self.out_sr = config.out_sr
        self._client = client or httpx.AsyncClient(timeout=config.http_timeout_seconds)
        self._owns_client = client is None
        self._sleep = sleep or asyncio.sleep

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch_layer_info(self) -> Dict[str, Any]:
        """Return the layer metadata document (fields, spatial reference...)."""

        return await self._get_json(self.feature_url, {"f": "json"})

    async def execute_query(self, params: Mapping[str, Any]) -> FeaturePage:
        """Run one ``/query`` request and wrap the response as a :class:`FeaturePage`."""

        payload = await self._get_json(f"{self.feature_url}/query", dict(params))
        raw_features = payload.get("features") or []
        return FeaturePage(
            features=[RawFeature.from_payload(item) for item in raw_features if isinstance(item, Mapping)],
            exceeded_transfer_limit=bool(payload.get("exceededTransferLimit")),
        )

    async def query_by_attributes(self, where: str, offset: int = 0) -> FeaturePage:
        LOGGER.debug("Attribute query where=%s offset=%s", where, offset)
        return await self.execute_query({**self._base_params(offset), "where": where})

    async def query_by_geometry(
        self,
        geometry: Mapping[str, Any],
        where: str | None = None,
        offset: int = 0,
    ) -> FeaturePage:
        params = {
            **self._base_params(offset),
            "geometry": json.dumps(geometry),
            "geometryType": "esriGeometryPolygon",
            "spatialRel": "esriSpatialRelIntersects",
        }
        spatial_ref = geometry.get("spatialReference") if isinstance(geometry, Mapping) else None
        if isinstance(spatial_ref, Mapping) and spatial_ref.get("wkid"):
            params["inSR"] = spatial_ref["wkid"]
        if where:
            params["where"] = where
        LOGGER.debug("Spatial query where=%s offset=%s", where, offset)
        return await self.execute_query(params)

    async def query_all(self, fetch_page: PageFetcher) -> List[RawFeature]:
        """Follow result offsets until the server stops reporting more data.

        A page counts as "more may follow" when it carries
        ``exceededTransferLimit`` or is exactly ``max_record_count`` long.
        Collection stops at ``max_features``; hitting that ceiling is logged.
        """

        collected: List[RawFeature] = []
        offset = 0
        while True:
            page = await fetch_page(offset)
            if not page.features:
                break
            collected.extend(page.features)
            if len(collected) >= self.max_features:
                LOGGER.warning(
                    "Pagination stopped at %s features (ceiling %s)", len(collected), self.max_features
                )
                return collected[: self.max_features]
            if page.exceeded_transfer_limit or len(page.features) == self.page_size:
                offset += len(page.features)
                continue
            break
        return collected

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _base_params(self, offset: int) -> Dict[str, Any]:
        return {
            "f": "json",
            "outFields": "*",
            "returnGeometry": "true",
            "outSR": self.out_sr,
            "resultOffset": offset,
            "resultRecordCount": self.page_size,
        }

    async def _get_json(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        attempts = self.max_retries + 1
        last_error: Exception | None = None
        for attempt in range(attempts):
            if attempt > 0:
                delay = self.retry_delay_seconds * (2 ** (attempt - 1))
                LOGGER.debug("Retry attempt %s for %s after %.2fs", attempt, url, delay)
                await self._sleep(delay)
            try:
                return await self._get_once(url, params)
            except QueryValidationError:
                raise
            except (httpx.HTTPError, ValueError, _RemoteServiceError) as exc:
                last_error = exc
                LOGGER.warning("Feature layer request failed (attempt %s/%s): %s", attempt + 1, attempts, exc)

        LOGGER.error("Feature layer request failed after %s attempts url=%s params=%s", attempts, url, params)
        raise TransientTransportError(
            f"Feature layer request failed after {attempts} attempts: {last_error}",
            attempts=attempts,
        ) from last_error

    async def _get_once(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._client.get(url, params=params)
        if response.status_code == httpx.codes.BAD_REQUEST:
            LOGGER.error("Bad request to feature layer url=%s params=%s body=%s", url, params, response.text)
            raise QueryValidationError("Feature layer rejected the query", params=params, details=response.text)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("Feature layer returned a non-object JSON payload")
        error = payload.get("error")
        if error:
            code = error.get("code") if isinstance(error, Mapping) else None
            message = error.get("message") if isinstance(error, Mapping) else str(error)
            if code == httpx.codes.BAD_REQUEST:
                LOGGER.error("Feature layer reported invalid query params=%s error=%s", params, error)
                raise QueryValidationError(f"Invalid query: {message}", params=params, details=error)
            raise _RemoteServiceError(f"Feature layer error {code}: {message}")
        return payload


__all__ = ["FeatureLayerClient", "any_like_clause", "like_clause", "quote_literal"]
