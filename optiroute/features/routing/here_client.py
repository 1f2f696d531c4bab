"""
optiroute/features/routing/here_client.py

HERE Waypoint Sequence (findsequence) and Routing v8 calls.

Each call returns the provider payload on success and raises
UpstreamProviderError (with HERE's own diagnostic text in `details`) on any
failure. No retries.
"""

import logging
from typing import Any, Dict, List, Sequence, Tuple

import httpx

from optiroute.core.errors import UnexpectedError, UpstreamProviderError
from optiroute.models.route import Waypoint

logger = logging.getLogger("optiroute")

HERE_SEQUENCE_URL = "https://wse.ls.hereapi.com/2/findsequence.json"
HERE_ROUTE_URL = "https://router.hereapi.com/v8/routes"

SEQUENCE_MODE = "fastest;car"
TRANSPORT_MODE = "car"
ROUTING_MODE = "fast"
ROUTE_RETURN = "polyline,summary,actions,instructions"

SEQUENCING_FAILED = "Failed to determine optimal waypoint sequence."
ROUTING_FAILED = "Failed to calculate route for the optimized sequence."


def _first_present(data: Any, keys: Sequence[str], default: str) -> str:
    if isinstance(data, dict):
        for key in keys:
            if data.get(key):
                return str(data[key])
    return default


def _latlng(lat: float, lng: float) -> str:
    return f"{lat},{lng}"


class HereRouter:
    def __init__(self, api_key: str, http: httpx.AsyncClient):
        self.api_key = api_key
        self.http = http

    async def _get_json(self, url: str, params: List[Tuple[str, str]], failure: str, code: str) -> Tuple[httpx.Response, Any]:
        try:
            response = await self.http.get(url, params=params + [("apiKey", self.api_key)])
        except httpx.HTTPError as e:
            raise UnexpectedError(str(e) or failure)
        try:
            data = response.json()
        except ValueError:
            raise UpstreamProviderError(
                failure,
                code=code,
                details=f"Unparseable response (HTTP {response.status_code})",
                provider_status=response.status_code,
            )
        return response, data

    async def find_sequence(self, origin: Waypoint, destination: Waypoint, via_stops: Sequence[Waypoint]) -> List[Dict[str, Any]]:
        """Ask HERE for the optimal visiting order. Returns its waypoint list (unsorted)."""
        params = [
            ("start", f"{origin.id};{_latlng(origin.lat, origin.lng)}"),
            ("end", f"{destination.id};{_latlng(destination.lat, destination.lng)}"),
            ("mode", SEQUENCE_MODE),
        ]
        for index, stop in enumerate(via_stops):
            params.append((f"destination{index + 1}", f"{stop.id};{_latlng(stop.lat, stop.lng)}"))

        logger.info("optimize.sequence.request", extra={"waypoint_count": len(via_stops) + 2})
        response, data = await self._get_json(HERE_SEQUENCE_URL, params, SEQUENCING_FAILED, "sequencing_failed")

        results = data.get("results") if isinstance(data, dict) else None
        waypoints = results[0].get("waypoints") if results and isinstance(results[0], dict) else None
        if not response.is_success or not waypoints:
            details = _first_present(data, ("faultCode", "type", "title"), "Unknown FindSequence API error")
            logger.error(
                "optimize.sequence.failed",
                extra={"provider_status": response.status_code, "provider_message": details},
            )
            raise UpstreamProviderError(
                SEQUENCING_FAILED,
                code="sequencing_failed",
                details=details,
                provider_status=response.status_code,
            )
        return waypoints

    async def calculate_route(self, origin: Waypoint, destination: Waypoint, via_stops: Sequence[Waypoint]) -> Dict[str, Any]:
        """Detailed route through the waypoints in the given order. Returns routes[0]."""
        params = [
            ("origin", _latlng(origin.lat, origin.lng)),
            ("destination", _latlng(destination.lat, destination.lng)),
            ("transportMode", TRANSPORT_MODE),
            ("routingMode", ROUTING_MODE),
            ("return", ROUTE_RETURN),
            ("departureTime", "any"),
        ]
        params.extend(("via", _latlng(stop.lat, stop.lng)) for stop in via_stops)

        response, data = await self._get_json(HERE_ROUTE_URL, params, ROUTING_FAILED, "routing_failed")

        routes = data.get("routes") if isinstance(data, dict) else None
        if not response.is_success or not routes:
            details = _first_present(data, ("title", "cause"), "Unknown HERE API error")
            logger.error(
                "optimize.route.failed",
                extra={"provider_status": response.status_code, "provider_message": details},
            )
            raise UpstreamProviderError(
                ROUTING_FAILED,
                code="routing_failed",
                details=details,
                provider_status=response.status_code,
            )
        return routes[0]
