"""Domain models shared by the lamp resolution and incident reporting services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

AttributeValue = Union[str, int, float, bool, None]
Coordinates = Tuple[float, float]

UNKNOWN_DISTANCE_METERS = 999.0


class FieldInfo(BaseModel):
    """Single field entry from the feature layer metadata."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str
    type: str = ""
    alias: str | None = None


class FieldSchema(BaseModel):
    """Street-name and lamp-identifier fields discovered on the feature layer."""

    model_config = ConfigDict(frozen=True)

    street_fields: List[str] = Field(min_length=1)
    lamp_id_fields: List[str] = Field(min_length=1)
    all_fields: List[FieldInfo] = Field(default_factory=list)
    discovered_at: float

    def public_view(self) -> Dict[str, List[str]]:
        """Return the subset of the schema exposed to API callers."""

        return {"street_fields": list(self.street_fields), "lamp_id_fields": list(self.lamp_id_fields)}


@dataclass(frozen=True, slots=True)
class StreetEntry:
    """Known street name paired with its comparable canonical form."""

    name: str
    normalized: str


@dataclass(slots=True)
class RawFeature:
    """Feature returned by the remote layer before conversion into a lamp record."""

    attributes: Dict[str, Any] = field(default_factory=dict)
    geometry: Dict[str, Any] | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "RawFeature":
        attributes = payload.get("attributes")
        geometry = payload.get("geometry")
        return cls(
            attributes=dict(attributes) if isinstance(attributes, Mapping) else {},
            geometry=dict(geometry) if isinstance(geometry, Mapping) else None,
        )


@dataclass(slots=True)
class FeaturePage:
    """One page of a paginated feature query."""

    features: List[RawFeature] = field(default_factory=list)
    exceeded_transfer_limit: bool = False


class LampRecord(BaseModel):
    """Street lamp resolved from a feature with usable geometry."""

    id: str
    lamp_number: str | None = None
    coords: Coordinates
    attributes: Dict[str, AttributeValue] = Field(default_factory=dict)

    @field_validator("attributes", mode="before")
    @classmethod
    def _coerce_attributes(cls, value: Any) -> Dict[str, AttributeValue]:
        if not isinstance(value, Mapping):
            return {}
        coerced: Dict[str, AttributeValue] = {}
        for key, item in value.items():
            if item is None or isinstance(item, (str, int, float, bool)):
                coerced[str(key)] = item
            else:
                coerced[str(key)] = str(item)
        return coerced


class SearchResult(BaseModel):
    """Outcome of a lamp search; an empty ``lamps`` list is a valid result."""

    lamps: List[LampRecord] = Field(default_factory=list)
    field_schema: FieldSchema
    suggested_street_names: List[str] | None = None
    strategy: str | None = None


class IncidentCandidate(BaseModel):
    """Lamp that may be the subject of a citizen incident report."""

    lamp_id: str
    lamp_number: str | None = None
    coords: Coordinates
    distance_meters: float = UNKNOWN_DISTANCE_METERS
    confidence: float = Field(ge=0.0, le=1.0)


class LocationAnalysis(BaseModel):
    """Structured reading of a citizen's free-text location description."""

    interpreted_location: str
    address_components: List[str] = Field(default_factory=list)
    landmarks: List[str] = Field(default_factory=list)
    confidence: float = 0.5


class GeocodeResult(BaseModel):
    """Coordinates resolved for a free-text address."""

    lat: float
    lng: float
    address: str
    confidence: float


class Priority(str, Enum):
    """Dispatch priority tiers."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class LampReport(BaseModel):
    """Citizen incident report with its ranked lamp candidates."""

    id: str
    timestamp: datetime
    street: str
    description: str
    issue: str
    citizen_location: str
    detected_lamps: List[IncidentCandidate] = Field(default_factory=list)
    confidence: float
    priority: Priority = Priority.LOW
    status: Literal["pending", "assigned", "completed"] = "pending"


class WorkOrder(BaseModel):
    """Dispatch instructions derived from a lamp report."""

    work_order_id: str
    assigned_lamps: List[str] = Field(default_factory=list)
    instructions: str
    priority: Priority
    estimated_response: str


__all__ = [
    "AttributeValue",
    "Coordinates",
    "FeaturePage",
    "FieldInfo",
    "FieldSchema",
    "GeocodeResult",
    "IncidentCandidate",
    "LampRecord",
    "LampReport",
    "LocationAnalysis",
    "Priority",
    "RawFeature",
    "SearchResult",
    "StreetEntry",
    "UNKNOWN_DISTANCE_METERS",
    "WorkOrder",
]
