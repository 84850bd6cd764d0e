"""Layered configuration for the lampfinder services.

Sources, strongest first:

1. keyword arguments passed to :class:`Settings`;
2. ``LAMPFINDER_*`` environment variables (``__`` separates nested sections);
3. ``.env``, ``.env.<env>`` and ``.env.local`` in the project root;
4. the TOML file named by ``LAMPFINDER_SETTINGS_FILE``;
5. ``config/settings.local.toml``;
6. ``config/settings.default.toml``.

The deployment variables of the first release (``ARCGIS_FEATURE_URL``,
``HTTP_TIMEOUT_MS``, ``BUFFER_METERS``, ``CACHE_TTL_S``, ``RATE_LIMIT_RPM``)
are still honoured and win over everything else.
"""

from __future__ import annotations

import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Literal

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

ENV_VAR_NAME = "LAMPFINDER_ENV"
SETTINGS_FILE_ENV_VAR = "LAMPFINDER_SETTINGS_FILE"
PROJECT_ROOT = Path(__file__).resolve().parents[3]
CONFIG_DIR = PROJECT_ROOT / "config"

DEFAULT_FEATURE_URL = (
    "https://tsb.bratislava.sk/gismap/rest/services/svetelne_miesta/sm_dataset_obcan/FeatureServer/0"
)

_PROVIDER_VARS = ("LAMPFINDER_LLM__PROVIDER", "LAMPFINDER_LLM_PROVIDER", "LLM__PROVIDER", "LLM_PROVIDER")


def _first_env(*names: str) -> str | None:
    return next((os.environ[name] for name in names if name in os.environ), None)


def _active_env(requested: str | None = None) -> str:
    return (requested or os.getenv(ENV_VAR_NAME) or "local").strip()


def _toml_files() -> list[Path]:
    """Existing TOML files, strongest first."""

    files: list[Path] = []
    override = os.getenv(SETTINGS_FILE_ENV_VAR)
    if override:
        path = Path(override).expanduser()
        files.append(path if path.is_absolute() else (PROJECT_ROOT / path).resolve())
    files += [CONFIG_DIR / "settings.local.toml", CONFIG_DIR / "settings.default.toml"]
    return [path for path in files if path.exists()]


class TomlFileSource(PydanticBaseSettingsSource):
    """Feeds one TOML document to pydantic-settings as a dict of sections."""

    def __init__(self, settings_cls: type[BaseSettings], path: Path) -> None:
        super().__init__(settings_cls)
        try:
            with path.open("rb") as handle:
                self.data: dict[str, Any] = tomllib.load(handle)
        except tomllib.TOMLDecodeError as exc:
            raise ValueError(f"Invalid TOML syntax in {path}") from exc

    def get_field_value(self, field, field_name: str):
        return self.data.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        return dict(self.data)


class _Section(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)


class RuntimeSettings(_Section):
    log_level: str = Field(default="INFO", validation_alias=AliasChoices("LOG_LEVEL", "RUNTIME__LOG_LEVEL"))


class ArcGISSettings(_Section):
    """Remote feature layer holding the street-lamp records."""

    feature_url: str = Field(
        default=DEFAULT_FEATURE_URL,
        validation_alias=AliasChoices("ARCGIS__FEATURE_URL", "ARCGIS_FEATURE_URL"),
    )
    http_timeout_seconds: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=2, ge=0)
    retry_delay_seconds: float = Field(default=1.0, ge=0)
    max_record_count: int = Field(default=1000, ge=1)
    max_features: int = Field(default=5000, ge=1)
    out_sr: int = 4326


class SearchSettings(_Section):
    """Lamp resolution cascade: buffer shape, remote-call budget and cache lifetimes."""

    buffer_meters: float = Field(default=150.0, gt=0)
    buffer_points: int = Field(default=32, ge=3)
    max_remote_queries: int = Field(default=16, ge=1)
    max_suggestions_tried: int = Field(default=2, ge=0)
    schema_cache_ttl_seconds: int = Field(default=600, ge=0)
    response_cache_ttl_seconds: int = Field(default=300, ge=0)


class GazetteerSettings(_Section):
    overpass_url: str = "https://overpass-api.de/api/interpreter"
    area_name: str = "Bratislava"
    cache_ttl_seconds: int = Field(default=24 * 60 * 60, ge=0)
    timeout_seconds: float = Field(default=15.0, gt=0)
    sample_size: int = Field(default=200, ge=1)


class LLMSettings(_Section):
    """Chat model shared by the street suggester and the location interpreter."""

    provider: Literal["openai", "ollama", "mock"] = Field(
        default="openai", validation_alias=AliasChoices("LLM_PROVIDER", "LLM__PROVIDER")
    )
    chat_model: str = Field(default="gpt-4o-mini", validation_alias=AliasChoices("LLM_CHAT_MODEL", "LLM__CHAT_MODEL"))
    temperature: float = 0.1
    api_key: str | None = Field(default=None, validation_alias=AliasChoices("OPENAI_API_KEY", "LLM__API_KEY"))
    ollama_base_url: str = "http://127.0.0.1:11434"
    timeout_seconds: float = Field(default=20.0, gt=0)


class GeocodingSettings(_Section):
    """Nominatim first, Google only when an API key is configured."""

    nominatim_url: str = "https://nominatim.openstreetmap.org/search"
    google_url: str = "https://maps.googleapis.com/maps/api/geocode/json"
    google_api_key: str | None = Field(
        default=None, validation_alias=AliasChoices("GOOGLE_MAPS_API_KEY", "GEOCODING__GOOGLE_API_KEY")
    )
    user_agent: str = "TSB-Lamp-Search/1.0"
    address_suffix: str = ", Bratislava, Slovakia"
    country_codes: str = "sk"
    language: str = "sk"
    timeout_seconds: float = Field(default=5.0, gt=0)


class ReportingSettings(_Section):
    report_id_prefix: str = "TSB"
    component_radius_meters: float = Field(default=50.0, gt=0)
    nearest_radius_meters: float = Field(default=100.0, gt=0)
    max_candidates: int = Field(default=3, ge=1)


class ObservabilitySettings(_Section):
    structured_logging: bool = True
    statsd_host: str | None = None
    statsd_port: int = 8125
    statsd_prefix: str = "lampfinder"
    service_name: str = "lampfinder-api"


class RateLimitSettings(_Section):
    requests_per_minute: int = Field(default=60, ge=1)
    trust_forwarded_for: bool = False


def _legacy_number(raw: str, *, minimum: float, scale: float = 1.0, inclusive: bool = False) -> float | None:
    try:
        number = float(raw.strip())
    except ValueError:
        return None
    if number > minimum or (inclusive and number == minimum):
        return number * scale
    return None


def _legacy_int(raw: str, *, minimum: float, inclusive: bool) -> int | None:
    number = _legacy_number(raw, minimum=minimum, inclusive=inclusive)
    return None if number is None else int(number)


# (variable, section, field, conversion); a conversion returning None ignores the value.
_LEGACY_VARIABLES: tuple[tuple[str, str, str, Callable[[str], Any]], ...] = (
    ("ARCGIS_FEATURE_URL", "arcgis", "feature_url", lambda raw: raw.strip() or None),
    ("HTTP_TIMEOUT_MS", "arcgis", "http_timeout_seconds", lambda raw: _legacy_number(raw, minimum=0, scale=0.001)),
    ("BUFFER_METERS", "search", "buffer_meters", lambda raw: _legacy_number(raw, minimum=0)),
    ("CACHE_TTL_S", "search", "response_cache_ttl_seconds", lambda raw: _legacy_int(raw, minimum=0, inclusive=True)),
    ("RATE_LIMIT_RPM", "rate_limit", "requests_per_minute", lambda raw: _legacy_int(raw, minimum=1, inclusive=True)),
)


class Settings(BaseSettings):
    """Root settings object; one attribute per subsystem section."""

    env: str = Field(
        default_factory=lambda: _active_env(),
        validation_alias=AliasChoices("ENV", "ENVIRONMENT", "RUNTIME__ENV"),
    )
    project_root: Path = PROJECT_ROOT
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    arcgis: ArcGISSettings = Field(default_factory=ArcGISSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    gazetteer: GazetteerSettings = Field(default_factory=GazetteerSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    geocoding: GeocodingSettings = Field(default_factory=GeocodingSettings)
    reporting: ReportingSettings = Field(default_factory=ReportingSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)

    model_config = SettingsConfigDict(
        env_prefix="LAMPFINDER_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        toml_sources = tuple(TomlFileSource(settings_cls, path) for path in _toml_files())
        return (init_settings, env_settings, dotenv_settings, *toml_sources, file_secret_settings)

    def _patch_section(self, section: str, **values: Any) -> None:
        object.__setattr__(self, section, getattr(self, section).model_copy(update=values))

    @model_validator(mode="after")
    def _apply_environment_overrides(self) -> "Settings":
        provider = _first_env(*_PROVIDER_VARS)
        if provider:
            self._patch_section("llm", provider=provider.strip().lower())
        elif self.is_local and not self.llm.api_key:
            self._patch_section("llm", provider="mock")
        if self.is_local:
            self._patch_section("observability", structured_logging=False)

        for variable, section, field_name, convert in _LEGACY_VARIABLES:
            raw = os.getenv(variable)
            value = convert(raw) if raw is not None else None
            if value is not None:
                self._patch_section(section, **{field_name: value})
        return self

    @property
    def log_level(self) -> str:
        return self.runtime.log_level

    @property
    def feature_url(self) -> str:
        return self.arcgis.feature_url

    @property
    def is_local(self) -> bool:
        return self.env.lower() == "local"


@lru_cache(maxsize=1)
def get_settings(env: str | None = None) -> Settings:
    """Build (once) the settings for ``env``, defaulting to ``$LAMPFINDER_ENV`` or ``local``."""

    active = _active_env(env)
    dotenv = [
        path
        for path in (PROJECT_ROOT / ".env", PROJECT_ROOT / f".env.{active}", PROJECT_ROOT / ".env.local")
        if path.exists()
    ]
    return Settings(_env_file=[str(path) for path in dotenv], _env_file_encoding="utf-8", env=active)


def reload_settings(env: str | None = None) -> Settings:
    """Forget the cached settings and build them again."""

    get_settings.cache_clear()
    return get_settings(env)


__all__ = [
    "ENV_VAR_NAME",
    "PROJECT_ROOT",
    "Settings",
    "get_settings",
    "reload_settings",
]
