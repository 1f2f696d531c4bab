"""
optiroute/client.py

Async Python client for the OptiRoute HTTP API.

Batch geocoding here runs on the caller's side: addresses already in the
local persistent cache are answered without a request, the rest go to
/api/geocode in small groups with a pause between groups.
"""

import logging
import time
from typing import Any, Dict, Iterable, Optional, Sequence, Union

import httpx

from optiroute.features.geocoding.batch import clean_addresses, geocode_batch
from optiroute.features.geocoding.cache import GeocodeCacheEntry, normalize_address
from optiroute.features.geocoding.here_client import GeocodeResult
from optiroute.features.geocoding.persistent_cache import PersistentGeocodeCache
from optiroute.models.route import Waypoint

logger = logging.getLogger("optiroute")

CLIENT_BATCH_SIZE = 2
CLIENT_BATCH_DELAY_SECONDS = 0.3
DEFAULT_TIMEOUT_SECONDS = 30.0


class OptiRouteAPIError(Exception):
    """Non-2xx response from the OptiRoute API."""

    def __init__(self, status_code: int, message: str, details: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.details = details
        self.code = code


WaypointLike = Union[Waypoint, Dict[str, Any]]


def _waypoint_payload(waypoint: WaypointLike) -> Dict[str, Any]:
    if isinstance(waypoint, Waypoint):
        return waypoint.model_dump(exclude_none=True)
    return Waypoint.model_validate(waypoint).model_dump(exclude_none=True)


class OptiRouteClient:
    def __init__(
        self,
        base_url: str,
        session_token: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        cache: Optional[PersistentGeocodeCache] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        headers = {"Authorization": f"Bearer {session_token}"} if session_token else {}
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=timeout)
        self.base_url = base_url.rstrip("/")
        self.headers = headers
        self.cache = cache

    async def __aenter__(self) -> "OptiRouteClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.http.post(f"{self.base_url}{path}", json=payload, headers=self.headers)
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not response.is_success:
            body = data if isinstance(data, dict) else {}
            raise OptiRouteAPIError(
                response.status_code,
                body.get("error") or response.reason_phrase or "Request failed",
                details=body.get("details"),
                code=body.get("code"),
            )
        return data

    async def geocode(self, address: str) -> GeocodeResult:
        key = normalize_address(address)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return GeocodeResult(lat=cached.lat, lng=cached.lng, address=cached.canonical_address)

        data = await self._post("/api/geocode", {"address": address})
        result = GeocodeResult(lat=data["lat"], lng=data["lng"], address=data["address"])
        if self.cache is not None:
            self.cache.set(
                key,
                GeocodeCacheEntry(
                    lat=result.lat,
                    lng=result.lng,
                    canonical_address=result.address,
                    cached_at=time.time(),
                ),
            )
        return result

    async def batch_geocode(
        self,
        addresses: Iterable[Any],
        batch_size: int = CLIENT_BATCH_SIZE,
        delay_seconds: float = CLIENT_BATCH_DELAY_SECONDS,
    ) -> Dict[str, Dict[str, Any]]:
        """
        Geocode many addresses, serving cached ones locally.

        Returns:
            {trimmed_address: {"lat", "lng", "address"} | {"error": message}}
        """
        results: Dict[str, Dict[str, Any]] = {}
        pending = []
        for address in clean_addresses(addresses):
            cached = self.cache.get(normalize_address(address)) if self.cache is not None else None
            if cached is not None:
                results[address] = {"lat": cached.lat, "lng": cached.lng, "address": cached.canonical_address}
            else:
                pending.append(address)

        if pending:
            logger.debug("client.batch_geocode", extra={"cached": len(results), "pending": len(pending)})
            results.update(await geocode_batch(self, pending, batch_size=batch_size, delay_seconds=delay_seconds))
        return results

    async def reverse_geocode(self, lat: float, lng: float) -> str:
        data = await self._post("/api/reverse-geocode", {"lat": lat, "lng": lng})
        return data["address"]

    async def optimize_route(
        self,
        origin: WaypointLike,
        destination: WaypointLike,
        via_stops: Sequence[WaypointLike] = (),
    ) -> Dict[str, Any]:
        """
        Returns the raw response:
            {"optimizedWaypointDetails", "routeSections", "totalDuration", "totalLength"}
        """
        payload = {
            "origin": _waypoint_payload(origin),
            "destination": _waypoint_payload(destination),
            "viaStops": [_waypoint_payload(stop) for stop in via_stops],
        }
        return await self._post("/api/optimize-route", payload)
