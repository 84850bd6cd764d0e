"""LLM-backed interpretation of citizens' free-text location descriptions."""

from __future__ import annotations

import json
import logging
from typing import Any, List

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage

from lampfinder.models import LocationAnalysis
from lampfinder.services.llm import build_chat_model, response_text, strip_code_fence
from lampfinder.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.3
DEFAULT_CONFIDENCE = 0.5

_PROMPT_TEMPLATE = """Analyzuj popis polohy od občana pre nahlásenie pokazenej lampy:

Ulica: "{street}"
Popis: "{description}"

Extrahuj a štandardizuj:
1. Čísla domov (napr. "pri dome 45", "medzi 20 a 25")
2. Názvy križovatiek, ulíc (napr. "pri Hlavnej", "na rohu s Partizánskou")
3. Významné body (obchody, školy, zastávky, parky)
4. Smer/stranu ulice (napr. "pravá strana", "smerom od centra")

Vráť JSON:
{{
  "interpretedLocation": "štandardizovaný popis",
  "addressComponents": ["čísla domov"],
  "landmarks": ["križovatky a významné body"],
  "confidence": 0.8
}}"""


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def parse_analysis(text: str, description: str) -> LocationAnalysis:
    """Parse the model's JSON answer; missing keys fall back to neutral values.

    Raises:
        ValueError: If the answer is not a JSON object.
    """

    data = json.loads(strip_code_fence(text))
    if not isinstance(data, dict):
        raise ValueError("Location analysis must be a JSON object")
    try:
        confidence = float(data.get("confidence") or DEFAULT_CONFIDENCE)
    except (TypeError, ValueError):
        confidence = DEFAULT_CONFIDENCE
    return LocationAnalysis(
        interpreted_location=str(data.get("interpretedLocation") or description),
        address_components=_string_list(data.get("addressComponents")),
        landmarks=_string_list(data.get("landmarks")),
        confidence=min(max(confidence, 0.0), 1.0),
    )


class LocationInterpreter:
    """Turn "pri dome 45, oproti škole" into structured address components."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        chat_model: BaseChatModel | None = None,
        disabled: bool = False,
    ) -> None:
        self.settings = settings or get_settings()
        if disabled:
            self._client = None
        else:
            self._client = chat_model or build_chat_model(self.settings)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    @staticmethod
    def fallback(description: str) -> LocationAnalysis:
        """Uninterpreted description used when no model answer is available."""

        return LocationAnalysis(interpreted_location=description, confidence=FALLBACK_CONFIDENCE)

    async def interpret(self, street: str, description: str) -> LocationAnalysis | None:
        """Return the model's reading of ``description``, or ``None`` when unavailable or unusable."""

        if not self._client:
            return None
        prompt = _PROMPT_TEMPLATE.format(street=street, description=description)
        try:
            response = await self._client.ainvoke([HumanMessage(content=prompt)])
            analysis = parse_analysis(response_text(response), description)
        except Exception:  # pragma: no cover - LLM availability
            LOGGER.exception("Location analysis failed street=%r", street)
            return None
        LOGGER.info(
            "Interpreted location street=%r components=%s landmarks=%s",
            street,
            analysis.address_components,
            analysis.landmarks,
        )
        return analysis


__all__ = ["LocationInterpreter", "parse_analysis"]
