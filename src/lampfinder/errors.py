"""Exception taxonomy shared by the lamp resolution pipeline.

Only :class:`QueryValidationError` and :class:`TransientTransportError` ever
leave the core services. :class:`DegradedServiceError` is raised inside
optional collaborators (LLM, geocoding, gazetteer source) and always caught by
their callers, which fall back to a lower-confidence heuristic. Zero matches is
an empty result, not an exception.
"""

from __future__ import annotations


class LampFinderError(RuntimeError):
    """Base class for lampfinder failures."""


class QueryValidationError(LampFinderError):
    """The feature service rejected a query as malformed. Never retried."""

    def __init__(self, message: str, *, params: dict | None = None, details: object | None = None) -> None:
        super().__init__(message)
        self.params = dict(params or {})
        self.details = details


class TransientTransportError(LampFinderError):
    """Network, timeout or server-side failure that survived every retry."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class DegradedServiceError(LampFinderError):
    """An optional collaborator is unavailable or returned unusable output."""


__all__ = [
    "LampFinderError",
    "QueryValidationError",
    "TransientTransportError",
    "DegradedServiceError",
]
