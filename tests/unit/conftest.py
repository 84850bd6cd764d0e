"""Shared fixtures for lampfinder unit tests."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from lampfinder.settings import Settings, get_settings


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Build settings for the ``test`` environment with per-section overrides."""

    def _factory(**sections: Any) -> Settings:
        return Settings(env="test", **sections)

    return _factory


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    yield
    get_settings.cache_clear()
