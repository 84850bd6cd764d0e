"""LLM-assisted street-name correction constrained to a known list."""

from __future__ import annotations

import logging
import re
from typing import List, Sequence

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage

from lampfinder.services.llm import build_chat_model, response_text, strip_code_fence
from lampfinder.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

_LIST_MARKER = re.compile(r"^(?:[-*•]|\d+[.)])\s*")

_PROMPT_TEMPLATE = """User is looking for street: "{user_input}"

Available streets in database:
{streets}

Find the {limit} most likely matches for the user's input. Consider:
- Slovak language variations and diacritics
- Common misspellings
- Partial names (e.g. "Studeno Horská" might be "Studenohorská")
- Different word orders

Return only the exact street names from the database, one per line, max {limit} results.
If no good matches, return empty."""


class StreetSuggester:
    """Ask a chat model to pick the closest names from a sampled street list.

    Suggestions that are not verbatim members of the list sent to the model are
    discarded. Without a configured model the suggester is disabled and returns
    an empty list.
    """

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
            self._client = chat_model or build_chat_model(self.settings, temperature=0.3)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def suggest(self, user_input: str, candidates: Sequence[str], limit: int = 3) -> List[str]:
        if not self._client or not candidates:
            return []
        prompt = _PROMPT_TEMPLATE.format(user_input=user_input, streets="\n".join(candidates), limit=limit)
        try:
            response = await self._client.ainvoke([HumanMessage(content=prompt)])
        except Exception:  # pragma: no cover - LLM availability
            LOGGER.exception("LLM street matching failed for %r", user_input)
            return []
        allowed = set(candidates)
        suggestions: List[str] = []
        for line in strip_code_fence(response_text(response)).splitlines():
            name = _LIST_MARKER.sub("", line.strip()).strip().strip('"')
            if name and name in allowed and name not in suggestions:
                suggestions.append(name)
            if len(suggestions) >= limit:
                break
        LOGGER.info("LLM street suggestions input=%r suggestions=%s", user_input, suggestions)
        return suggestions


__all__ = ["StreetSuggester"]
