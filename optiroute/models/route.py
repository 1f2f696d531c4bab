"""
optiroute/models/route.py

Waypoint and optimized-route models.

Field names serialize in camelCase (`originalId`, `totalDuration`) because the
dashboard consumes these payloads directly.
"""

from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Coordinate = Annotated[float, Field(strict=True, allow_inf_nan=False)]


class Waypoint(BaseModel):
    """
    A lat/lng point with a caller-assigned id.

    The id is the join key used to map optimized output back to the caller's
    input ("origin", "destination", or a per-stop identifier).
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    lat: Coordinate
    lng: Coordinate


class LegEndpoint(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    place: Optional[Dict[str, Any]] = None
    time: Optional[str] = None
    original_id: Optional[str] = None


class RouteAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    instruction: Optional[str] = None
    duration: Optional[float] = None
    length: Optional[float] = None


class RouteLeg(BaseModel):
    """The routed path between two consecutive waypoints in visiting order."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    departure: LegEndpoint
    arrival: LegEndpoint
    summary: Optional[Dict[str, Any]] = None
    polyline: Optional[str] = None
    actions: Optional[List[RouteAction]] = None


class OptimizedRouteResult(BaseModel):
    """
    Result of one optimization request (ephemeral, never persisted).

    Invariant: len(legs) == len(ordered_waypoints) - 1
    """
    model_config = ConfigDict(frozen=True)

    ordered_waypoints: List[Waypoint]
    legs: List[RouteLeg]
    total_duration_seconds: float
    total_length_meters: float

    def to_response(self) -> Dict[str, Any]:
        return {
            "optimizedWaypointDetails": [wp.model_dump() for wp in self.ordered_waypoints],
            "routeSections": [leg.model_dump(by_alias=True) for leg in self.legs],
            "totalDuration": self.total_duration_seconds,
            "totalLength": self.total_length_meters,
        }
