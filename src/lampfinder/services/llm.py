"""Chat-model wiring shared by the street suggester and location interpreter."""

from __future__ import annotations

import logging
import re
from typing import Any

from langchain_core.language_models.chat_models import BaseChatModel

from lampfinder.settings import Settings

LOGGER = logging.getLogger(__name__)


_FENCED_BLOCK = re.compile(r"```[\w-]*[ \t]*\n?(.*?)```", re.DOTALL)


def strip_code_fence(text: str) -> str:
    """Return the body of the first markdown code fence in ``text``, or ``text`` itself."""

    match = _FENCED_BLOCK.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def response_text(response: Any) -> str:
    """Extract plain text from a LangChain message (or anything with ``content``)."""

    content = getattr(response, "content", response)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return "" if content is None else str(content)


def build_chat_model(settings: Settings, *, temperature: float | None = None) -> BaseChatModel | None:
    """Return the configured chat model, or ``None`` when the LLM path is disabled.

    The ``openai`` provider is disabled when no API key is configured; ``mock``
    always disables it.
    """

    config = settings.llm
    provider = (config.provider or "mock").lower()
    resolved_temperature = config.temperature if temperature is None else temperature

    if provider == "mock":
        return None

    if provider == "openai":
        if not config.api_key:
            LOGGER.warning("OpenAI API key not configured; LLM-assisted features disabled")
            return None
        from langchain_openai import ChatOpenAI

        return ChatOpenAI(
            model=config.chat_model,
            api_key=config.api_key,
            temperature=resolved_temperature,
            timeout=config.timeout_seconds,
            max_retries=0,
        )

    if provider == "ollama":
        from langchain_ollama import ChatOllama

        return ChatOllama(
            model=config.chat_model,
            base_url=config.ollama_base_url,
            temperature=resolved_temperature,
        )

    raise RuntimeError(f"Unsupported LLM provider '{provider}'. Use 'openai', 'ollama' or 'mock'.")


__all__ = ["build_chat_model", "response_text", "strip_code_fence"]
