"""Address geocoding via Nominatim with an optional Google fallback."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence, Tuple

import httpx

from lampfinder.geo.geometry import haversine_meters
from lampfinder.models import GeocodeResult, LampRecord
from lampfinder.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

GOOGLE_LOCATION_CONFIDENCE = {
    "ROOFTOP": 0.9,
    "RANGE_INTERPOLATED": 0.8,
    "GEOMETRIC_CENTER": 0.6,
    "APPROXIMATE": 0.4,
}
DEFAULT_CONFIDENCE = 0.5
MAX_NEAREST_LAMPS = 10


def google_confidence(result: Dict[str, Any]) -> float:
    location_type = (result.get("geometry") or {}).get("location_type")
    return GOOGLE_LOCATION_CONFIDENCE.get(location_type, DEFAULT_CONFIDENCE)


class Geocoder:
    """Resolve free-text addresses to coordinates.

    Every backend failure is logged and treated as "no result"; callers fall
    back to lower-confidence heuristics.
    """

    def __init__(self, *, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings or get_settings()
        self._client = client or httpx.AsyncClient(timeout=self.settings.geocoding.timeout_seconds)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def geocode(self, address: str) -> GeocodeResult | None:
        result = await self._try_nominatim(address)
        if result:
            return result
        if self.settings.geocoding.google_api_key:
            return await self._try_google(address)
        return None

    async def find_nearest_lamps(
        self,
        address: str,
        lamps: Sequence[LampRecord],
        max_distance: float = 100.0,
    ) -> List[Tuple[LampRecord, float]]:
        """Return up to 10 lamps within ``max_distance`` metres of ``address``, nearest first."""

        location = await self.geocode(address)
        if location is None:
            LOGGER.warning("Could not geocode address %r", address)
            return []
        LOGGER.info(
            "Geocoded address %r to lat=%s lng=%s confidence=%s",
            address,
            location.lat,
            location.lng,
            location.confidence,
        )
        nearby: List[Tuple[LampRecord, float]] = []
        for lamp in lamps:
            lng, lat = lamp.coords
            distance = haversine_meters(location.lat, location.lng, lat, lng)
            if distance <= max_distance:
                nearby.append((lamp, distance))
        nearby.sort(key=lambda item: item[1])
        return nearby[:MAX_NEAREST_LAMPS]

    def _formatted(self, address: str) -> str:
        return f"{address}{self.settings.geocoding.address_suffix}"

    async def _try_nominatim(self, address: str) -> GeocodeResult | None:
        config = self.settings.geocoding
        try:
            response = await self._client.get(
                config.nominatim_url,
                params={
                    "q": self._formatted(address),
                    "format": "json",
                    "limit": 1,
                    "countrycodes": config.country_codes,
                    "accept-language": f"{config.language},en",
                },
                headers={"User-Agent": config.user_agent},
            )
            response.raise_for_status()
            results = response.json()
            if not results:
                return None
            first = results[0]
            try:
                confidence = float(first.get("importance") or DEFAULT_CONFIDENCE)
            except (TypeError, ValueError):
                confidence = DEFAULT_CONFIDENCE
            return GeocodeResult(
                lat=float(first["lat"]),
                lng=float(first["lon"]),
                address=str(first.get("display_name") or address),
                confidence=confidence,
            )
        except (httpx.HTTPError, ValueError, KeyError, TypeError, IndexError) as exc:
            LOGGER.debug("Nominatim geocoding failed for %r: %s", address, exc)
            return None

    async def _try_google(self, address: str) -> GeocodeResult | None:
        config = self.settings.geocoding
        try:
            response = await self._client.get(
                config.google_url,
                params={
                    "address": self._formatted(address),
                    "key": config.google_api_key,
                    "region": config.country_codes,
                    "language": config.language,
                },
            )
            response.raise_for_status()
            results = response.json().get("results") or []
            if not results:
                return None
            first = results[0]
            location = first["geometry"]["location"]
            return GeocodeResult(
                lat=float(location["lat"]),
                lng=float(location["lng"]),
                address=str(first.get("formatted_address") or address),
                confidence=google_confidence(first),
            )
        except (httpx.HTTPError, ValueError, KeyError, TypeError, IndexError) as exc:
            LOGGER.debug("Google geocoding failed for %r: %s", address, exc)
            return None


__all__ = ["Geocoder", "google_confidence"]
