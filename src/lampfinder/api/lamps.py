"""Lamp search and incident reporting API router."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, field_validator, model_validator

from lampfinder.models import IncidentCandidate, Priority, SearchResult
from lampfinder.services.factories import LampServices
from lampfinder.services.lamp_search import search_payload, summarize

router = APIRouter(prefix="/api", tags=["lamps"])
LOGGER = logging.getLogger(__name__)


class SearchRequest(BaseModel):
    """Body of ``POST /api/lamps/search``."""

    street: str = Field(max_length=200)
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)

    @field_validator("street")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("street must not be blank")
        return stripped

    @model_validator(mode="after")
    def _coordinates_together(self) -> "SearchRequest":
        if (self.lat is None) != (self.lng is None):
            raise ValueError("lat and lng must be provided together")
        return self


class ReportRequest(BaseModel):
    """Body of ``POST /api/lamps/report``."""

    street: str = Field(max_length=200)
    location_description: str = Field(min_length=3, max_length=1000)
    issue_description: str = Field(min_length=3, max_length=1000)

    @field_validator("street", "location_description", "issue_description")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("street")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        if not value:
            raise ValueError("street must not be blank")
        return value


class SearchResponse(BaseModel):
    success: bool = True
    data: Dict[str, Any]
    message: str
    cached: bool = False


class ReportData(BaseModel):
    report_id: str
    work_order_id: str
    candidates: List[IncidentCandidate] = Field(default_factory=list)
    confidence: float
    priority: Priority
    estimated_response: str
    instructions: str


class ReportResponse(BaseModel):
    success: bool = True
    data: ReportData
    message: str


def get_services(request: Request) -> LampServices:
    """Dependency provider returning the service graph built at startup."""

    return request.app.state.services


@router.post("/lamps/search", response_model=SearchResponse, summary="Find street lamps by street name")
async def search_lamps(payload: SearchRequest, services: LampServices = Depends(get_services)) -> SearchResponse:
    cache = services.response_cache
    key = cache.generate_key(payload.street, payload.lat, payload.lng)
    result: SearchResult | None = cache.get(key)
    cached = result is not None
    if result is None:
        result = await services.search.search(payload.street, payload.lat, payload.lng)
        cache.set(key, result)
    LOGGER.info("Lamp search street=%r count=%s cached=%s", payload.street, len(result.lamps), cached)
    return SearchResponse(data=search_payload(result), message=summarize(result, payload.street), cached=cached)


@router.post("/lamps/report", response_model=ReportResponse, summary="Report a broken street lamp")
async def report_lamp(payload: ReportRequest, services: LampServices = Depends(get_services)) -> ReportResponse:
    report = await services.reporting.process_report(
        payload.street, payload.location_description, payload.issue_description
    )
    work_order = services.reporting.generate_work_order(report)
    return ReportResponse(
        data=ReportData(
            report_id=report.id,
            work_order_id=work_order.work_order_id,
            candidates=report.detected_lamps,
            confidence=report.confidence,
            priority=work_order.priority,
            estimated_response=work_order.estimated_response,
            instructions=work_order.instructions,
        ),
        message=f"Report {report.id} created with {len(report.detected_lamps)} candidate lamps",
    )


@router.get("/health", summary="Service health and cache statistics")
async def health(services: LampServices = Depends(get_services)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "service": services.settings.observability.service_name,
        "environment": services.settings.env,
        "cache": services.response_cache.stats(),
    }


__all__ = ["ReportRequest", "SearchRequest", "get_services", "router"]
