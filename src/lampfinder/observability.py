"""Pipeline events and StatsD metrics for the lookup services.

Every milestone of a search or report (schema discovered, strategy hit,
suggestion used, report generated) goes through :meth:`Observability.emit_event`.
Counters and timings are only sent when ``observability.statsd_host`` is set.
"""

from __future__ import annotations

import json
import logging
import socket
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, Iterator, Mapping

from lampfinder.settings import Settings, get_settings

_LOGGER = logging.getLogger("lampfinder.observability")


def format_statsd_line(
    metric: str,
    value: float,
    metric_type: str,
    *,
    prefix: str = "",
    tags: Mapping[str, str] | None = None,
) -> str:
    """Render one StatsD datagram, DogStatsD-style tags appended as ``|#k:v``."""

    name = f"{prefix}.{metric}" if prefix else metric
    number = f"{value:.6f}".rstrip("0").rstrip(".") or "0"
    line = f"{name}:{number}|{metric_type}"
    if tags:
        line += "|#" + ",".join(f"{key}:{tags[key]}" for key in sorted(tags))
    return line


class StatsdSink:
    """Fire-and-forget UDP sender."""

    def __init__(self, host: str, port: int, prefix: str = "") -> None:
        self.address = (host, port)
        self.prefix = prefix
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def send(self, metric: str, value: float, metric_type: str, tags: Mapping[str, str] | None = None) -> None:
        line = format_statsd_line(metric, value, metric_type, prefix=self.prefix, tags=tags)
        try:
            self._socket.sendto(line.encode("utf-8"), self.address)
        except OSError:  # pragma: no cover - depends on the network
            _LOGGER.debug("StatsD send failed for %s", metric, exc_info=True)


@lru_cache(maxsize=None)
def _statsd_sink(host: str, port: int, prefix: str) -> StatsdSink:
    return StatsdSink(host, port, prefix)


class Observability:
    """Per-component facade over the event log and the metrics sink."""

    def __init__(
        self,
        *,
        settings: Settings,
        component: str | None = None,
        sink: StatsdSink | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.component = component or "core"
        self.sink = sink
        self._logger = logger or _LOGGER

    def emit_event(self, event: str, **fields: Any) -> None:
        """Log ``event`` as one JSON line (or ``event | {...}`` when structured logging is off)."""

        record: Dict[str, Any] = {
            "event": event,
            "service": self.settings.observability.service_name,
            "component": self.component,
            "env": self.settings.env,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        record.update({str(key): _jsonable(value) for key, value in fields.items()})
        if self.settings.observability.structured_logging:
            self._logger.info(json.dumps(record, ensure_ascii=False))
        else:
            self._logger.info("%s | %s", event, record)

    def increment(self, metric: str, *, value: float = 1.0, tags: Mapping[str, Any] | None = None) -> None:
        if self.sink:
            self.sink.send(metric, value, "c", _clean_tags(tags))

    def record_timing(self, metric: str, value_ms: float, *, tags: Mapping[str, Any] | None = None) -> None:
        if self.sink:
            self.sink.send(metric, value_ms, "ms", _clean_tags(tags))

    @contextmanager
    def timer(self, metric: str, **tags: Any) -> Iterator[Dict[str, Any]]:
        """Time the block and record it as ``metric``; the yielded dict may add tags."""

        extra: Dict[str, Any] = {}
        started = time.perf_counter()
        try:
            yield extra
        finally:
            self.record_timing(metric, (time.perf_counter() - started) * 1000, tags={**tags, **extra})


def get_observability(*, component: str | None = None, settings: Settings | None = None) -> Observability:
    """Return an :class:`Observability` bound to the shared StatsD sink, if one is configured."""

    resolved = settings or get_settings()
    config = resolved.observability
    sink = _statsd_sink(config.statsd_host, config.statsd_port, config.statsd_prefix) if config.statsd_host else None
    return Observability(settings=resolved, component=component, sink=sink)


def reset_observability_cache() -> None:
    """Drop shared StatsD sinks (used in tests)."""

    _statsd_sink.cache_clear()


def configure_logging(settings: Settings | None = None) -> None:
    """Configure root logging from ``runtime.log_level``."""

    resolved = settings or get_settings()
    level = getattr(logging, resolved.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    return str(value)


def _clean_tags(tags: Mapping[str, Any] | None) -> Dict[str, str] | None:
    cleaned = {str(key): str(value) for key, value in (tags or {}).items() if value is not None}
    return cleaned or None


__all__ = [
    "Observability",
    "StatsdSink",
    "configure_logging",
    "format_statsd_line",
    "get_observability",
    "reset_observability_cache",
]
