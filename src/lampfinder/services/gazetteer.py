"""Reference list of known street names with exact, partial and fuzzy matching."""

from __future__ import annotations

import logging
from typing import Iterable, List, Sequence, Tuple

import httpx
from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from lampfinder.errors import DegradedServiceError
from lampfinder.geo.text import canonical_street, collapse_whitespace
from lampfinder.models import StreetEntry
from lampfinder.services.cache import TimedCache
from lampfinder.services.street_suggester import StreetSuggester
from lampfinder.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

FALLBACK_STREETS = (
    "Ružinovská",
    "Lamačská cesta",
    "Studenohorská",
    "Hlavná",
    "Bratislavská",
    "Račianska",
    "Záhradnícka",
    "Miletičova",
    "Partizánska cesta",
    "Bajkalská",
    "Tomášikova",
    "Karadžičova",
)

MAX_PARTIAL_MATCHES = 5
MAX_FUZZY_MATCHES = 3


def fuzzy_threshold(normalized_input: str) -> int:
    return max(2, int(len(normalized_input) * 0.3))


def build_street_entries(names: Iterable[str]) -> Tuple[StreetEntry, ...]:
    """Deduplicate raw names by canonical form and sort them for display."""

    entries: dict[str, StreetEntry] = {}
    for raw in names:
        name = collapse_whitespace(raw or "")
        if not name or name.lower() == "name":
            continue
        normalized = canonical_street(name)
        if normalized not in entries:
            entries[normalized] = StreetEntry(name=name, normalized=normalized)
    return tuple(sorted(entries.values(), key=lambda entry: (entry.normalized, entry.name)))


def match_streets(entries: Sequence[StreetEntry], user_input: str) -> List[StreetEntry]:
    """Match ``user_input`` against ``entries``; the first non-empty tier wins.

    Tiers: exact canonical equality, bidirectional substring containment
    (at most 5), then edit distance within :func:`fuzzy_threshold` (at most 3,
    closest first).
    """

    normalized = canonical_street(user_input)
    if not normalized:
        return []

    for entry in entries:
        if entry.normalized == normalized:
            return [entry]

    partial = [
        entry for entry in entries if normalized in entry.normalized or entry.normalized in normalized
    ][:MAX_PARTIAL_MATCHES]
    if partial:
        return partial

    threshold = fuzzy_threshold(normalized)
    scored = process.extract(
        normalized,
        [entry.normalized for entry in entries],
        scorer=Levenshtein.distance,
        score_cutoff=threshold,
        limit=MAX_FUZZY_MATCHES,
    )
    return [entries[index] for _, _, index in sorted(scored, key=lambda hit: (hit[1], hit[2]))]


class OverpassStreetSource:
    """Fetch named streets of an administrative area from the Overpass API."""

    def __init__(self, *, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings or get_settings()
        self._client = client or httpx.AsyncClient(timeout=self.settings.gazetteer.timeout_seconds)

    async def aclose(self) -> None:
        await self._client.aclose()

    def build_query(self) -> str:
        area = self.settings.gazetteer.area_name.replace('"', '\\"')
        return (
            "[out:csv(name;false)];\n"
            f'area[name="{area}"][boundary=administrative]->.a;\n'
            "(way(area.a)[highway][name];relation(area.a)[highway][name];);\n"
            "out tags;"
        )

    async def fetch_names(self) -> List[str]:
        try:
            response = await self._client.post(
                self.settings.gazetteer.overpass_url,
                data={"data": self.build_query()},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DegradedServiceError(f"Overpass request failed: {exc}") from exc
        return [line.strip() for line in response.text.splitlines() if line.strip()]


class StreetGazetteer:
    """Cached snapshot of every known street name in the municipality."""

    def __init__(
        self,
        *,
        source: OverpassStreetSource,
        settings: Settings | None = None,
        cache: TimedCache[Tuple[StreetEntry, ...]] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.source = source
        self._cache = cache or TimedCache(self.settings.gazetteer.cache_ttl_seconds, name="street gazetteer")
        self._fallback = build_street_entries(FALLBACK_STREETS)

    async def all_streets(self) -> Tuple[StreetEntry, ...]:
        try:
            return await self._cache.get_or_refresh(self._load)
        except Exception:
            LOGGER.exception("Street gazetteer unavailable; using fallback list")
            return self._fallback

    async def find_best_match(self, user_input: str) -> List[StreetEntry]:
        return match_streets(await self.all_streets(), user_input)

    async def sample_names(self, user_input: str, limit: int) -> List[str]:
        """Up to ``limit`` names, closest to ``user_input`` first."""

        entries = await self.all_streets()
        ranked = process.extract(
            canonical_street(user_input),
            [entry.normalized for entry in entries],
            scorer=Levenshtein.distance,
            limit=limit,
        )
        return [entries[index].name for _, _, index in sorted(ranked, key=lambda hit: (hit[1], hit[2]))]

    async def _load(self) -> Tuple[StreetEntry, ...]:
        LOGGER.info("Fetching street names for %s", self.settings.gazetteer.area_name)
        entries = build_street_entries(await self.source.fetch_names())
        if not entries:
            raise DegradedServiceError("Street source returned no names")
        LOGGER.info(
            "Cached %s street names (sample: %s)", len(entries), [entry.name for entry in entries[:5]]
        )
        return entries


class StreetMatcher:
    """Resolve alternate street names: gazetteer matches first, LLM suggestions second."""

    def __init__(
        self,
        *,
        gazetteer: StreetGazetteer,
        suggester: StreetSuggester,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.gazetteer = gazetteer
        self.suggester = suggester

    async def find_best_match(self, user_input: str) -> List[StreetEntry]:
        return await self.gazetteer.find_best_match(user_input)

    async def suggest_alternates(self, user_input: str, limit: int = 3) -> List[str]:
        matches = await self.gazetteer.find_best_match(user_input)
        if matches:
            names = [entry.name for entry in matches[:limit]]
            LOGGER.info("Gazetteer matches for %r: %s", user_input, names)
            return names
        if not self.suggester.enabled:
            return []
        sample = await self.gazetteer.sample_names(user_input, self.settings.gazetteer.sample_size)
        return await self.suggester.suggest(user_input, sample, limit=limit)


__all__ = [
    "FALLBACK_STREETS",
    "OverpassStreetSource",
    "StreetGazetteer",
    "StreetMatcher",
    "build_street_entries",
    "fuzzy_threshold",
    "match_streets",
]
