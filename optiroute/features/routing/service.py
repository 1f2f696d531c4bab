"""
optiroute/features/routing/service.py

Route optimization orchestrator.

1. Ask the sequencing endpoint for the optimal visiting order.
2. Sort its waypoints by `sequence`; first is origin, last is destination.
3. Request the detailed route through that order.
4. Pair section i with waypoints (i, i+1), carrying the caller's ids.
5. Sum section summaries (multi-section routes have no top-level summary).

Callers must have passed the plan & usage checks already.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from optiroute.core.errors import UpstreamProviderError
from optiroute.features.routing.here_client import ROUTING_FAILED, SEQUENCING_FAILED
from optiroute.models.route import (
    LegEndpoint,
    OptimizedRouteResult,
    RouteAction,
    RouteLeg,
    Waypoint,
)

logger = logging.getLogger("optiroute")

ORIGIN_ID = "origin"
DESTINATION_ID = "destination"


class Router(Protocol):
    async def find_sequence(self, origin: Waypoint, destination: Waypoint, via_stops: Sequence[Waypoint]) -> List[Dict[str, Any]]: ...

    async def calculate_route(self, origin: Waypoint, destination: Waypoint, via_stops: Sequence[Waypoint]) -> Dict[str, Any]: ...


def assign_ids(
    origin: Waypoint, destination: Waypoint, via_stops: Sequence[Waypoint]
) -> Tuple[Waypoint, Waypoint, List[Waypoint]]:
    """Fill in missing ids: "origin", "destination", and "via-{index}" for stops."""
    origin = origin if origin.id else origin.model_copy(update={"id": ORIGIN_ID})
    destination = destination if destination.id else destination.model_copy(update={"id": DESTINATION_ID})
    vias = [
        stop if stop.id else stop.model_copy(update={"id": f"via-{index}"})
        for index, stop in enumerate(via_stops)
    ]
    return origin, destination, vias


def _sequencing_error(details: str) -> UpstreamProviderError:
    return UpstreamProviderError(SEQUENCING_FAILED, code="sequencing_failed", details=details)


def order_waypoints(sequence_waypoints: List[Dict[str, Any]], expected_ids: Sequence[str]) -> List[Waypoint]:
    """Sort provider waypoints by `sequence` and check they match what was sent."""
    try:
        ranked = sorted(sequence_waypoints, key=lambda wp: int(wp["sequence"]))
        ordered = [
            Waypoint(id=str(wp["id"]), lat=float(wp["lat"]), lng=float(wp["lng"]))
            for wp in ranked
        ]
    except (KeyError, TypeError, ValueError) as e:
        raise _sequencing_error(f"Malformed waypoint in sequence response: {e}")

    if len(ordered) != len(expected_ids):
        raise _sequencing_error(f"Expected {len(expected_ids)} waypoints, got {len(ordered)}")
    unknown = [wp.id for wp in ordered if wp.id not in set(expected_ids)]
    if unknown:
        raise _sequencing_error(f"Unknown waypoint ids in sequence response: {', '.join(unknown)}")
    return ordered


def _endpoint(section_end: Optional[Dict[str, Any]], waypoint: Waypoint) -> LegEndpoint:
    section_end = section_end or {}
    return LegEndpoint(place=section_end.get("place"), time=section_end.get("time"), original_id=waypoint.id)


def build_legs(route: Dict[str, Any], ordered: List[Waypoint]) -> List[RouteLeg]:
    sections = route.get("sections") or []
    if len(sections) != len(ordered) - 1:
        raise UpstreamProviderError(
            ROUTING_FAILED,
            code="routing_failed",
            details=f"Expected {len(ordered) - 1} route sections, got {len(sections)}",
        )

    legs = []
    for index, section in enumerate(sections):
        actions = section.get("actions")
        legs.append(
            RouteLeg(
                departure=_endpoint(section.get("departure"), ordered[index]),
                arrival=_endpoint(section.get("arrival"), ordered[index + 1]),
                summary=section.get("summary"),
                polyline=section.get("polyline"),
                actions=[
                    RouteAction(
                        instruction=action.get("instruction"),
                        duration=action.get("duration"),
                        length=action.get("length"),
                    )
                    for action in actions
                ] if actions is not None else None,
            )
        )
    return legs


def _total(sections: List[Dict[str, Any]], field: str) -> float:
    return sum((section.get("summary") or {}).get(field) or 0 for section in sections)


async def optimize_route(
    router: Router,
    origin: Waypoint,
    destination: Waypoint,
    via_stops: Sequence[Waypoint] = (),
) -> OptimizedRouteResult:
    origin, destination, vias = assign_ids(origin, destination, via_stops)
    expected_ids = [origin.id, *(stop.id for stop in vias), destination.id]

    sequence = await router.find_sequence(origin, destination, vias)
    ordered = order_waypoints(sequence, expected_ids)

    route = await router.calculate_route(ordered[0], ordered[-1], ordered[1:-1])
    legs = build_legs(route, ordered)
    sections = route.get("sections") or []

    result = OptimizedRouteResult(
        ordered_waypoints=ordered,
        legs=legs,
        total_duration_seconds=_total(sections, "duration"),
        total_length_meters=_total(sections, "length"),
    )
    logger.info(
        "optimize.completed",
        extra={
            "waypoint_count": len(ordered),
            "total_duration_seconds": result.total_duration_seconds,
            "total_length_meters": result.total_length_meters,
        },
    )
    return result
