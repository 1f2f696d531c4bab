"""
optiroute/features/geocoding/here_client.py

HERE Geocoding & Search client.

Error taxonomy (shared by geocode and reverse_geocode):
- ValidationError:        empty input
- NotFoundError:          provider answered but had no result
- UpstreamProviderError:  provider answered non-2xx (its message kept in `details`)
- UnexpectedError:        network failure or unparseable body
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import httpx
from pydantic import BaseModel, ConfigDict

from optiroute.core.errors import (
    NotFoundError,
    UnexpectedError,
    UpstreamProviderError,
    ValidationError,
)
from optiroute.features.geocoding.cache import GeocodeCacheEntry, normalize_address

logger = logging.getLogger("optiroute")

HERE_GEOCODE_URL = "https://geocode.search.hereapi.com/v1/geocode"
HERE_REVGEOCODE_URL = "https://revgeocode.search.hereapi.com/v1/revgeocode"

GEOCODE_FAILED = "Failed to geocode address."
REVERSE_GEOCODE_FAILED = "Failed to reverse geocode location."


class GeocodeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float
    address: str  # canonical label as interpreted by HERE


class GeocodeCacheLike(Protocol):
    def get(self, key: str) -> Optional[GeocodeCacheEntry]: ...

    def set(self, key: str, entry: GeocodeCacheEntry) -> None: ...


def _provider_message(data: Any, default: str = "Unknown HERE API error") -> str:
    if isinstance(data, dict):
        for key in ("error_description", "error", "title", "cause"):
            if data.get(key):
                return str(data[key])
    return default


class HereGeocoder:
    def __init__(
        self,
        api_key: str,
        http: httpx.AsyncClient,
        cache: Optional[GeocodeCacheLike] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.api_key = api_key
        self.http = http
        self.cache = cache
        self._clock = clock

    async def _get_json(self, url: str, params: Dict[str, str], failure: str) -> Tuple[httpx.Response, Any]:
        try:
            response = await self.http.get(url, params={**params, "apiKey": self.api_key})
        except httpx.HTTPError as e:
            raise UnexpectedError(str(e) or "Failed to reach the geocoding provider.")
        try:
            data = response.json()
        except ValueError as e:
            if response.is_success:
                raise UnexpectedError(f"Invalid response from geocoding provider: {e}")
            # Gateway error pages and the like
            logger.error("geocode.provider_error", extra={"provider_status": response.status_code})
            raise UpstreamProviderError(
                failure,
                details=f"Unparseable response (HTTP {response.status_code})",
                provider_status=response.status_code,
            )
        return response, data

    async def geocode(self, address: str) -> GeocodeResult:
        """Translate free text to coordinates, serving repeats from the cache."""
        if not isinstance(address, str) or not address.strip():
            raise ValidationError("Invalid address provided. It must be a non-empty string.")

        key = normalize_address(address)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("geocode.cache_hit", extra={"cache_key": key})
                return GeocodeResult(lat=cached.lat, lng=cached.lng, address=cached.canonical_address)

        response, data = await self._get_json(HERE_GEOCODE_URL, {"q": address}, GEOCODE_FAILED)

        if not response.is_success:
            logger.error(
                "geocode.provider_error",
                extra={"provider_status": response.status_code, "provider_message": _provider_message(data)},
            )
            raise UpstreamProviderError(
                GEOCODE_FAILED,
                details=_provider_message(data),
                provider_status=response.status_code,
            )

        items = data.get("items") if isinstance(data, dict) else None
        if not items:
            raise NotFoundError("No results found for the provided address.")

        first = items[0]
        try:
            result = GeocodeResult(
                lat=first["position"]["lat"],
                lng=first["position"]["lng"],
                address=first.get("title") or address,
            )
        except (KeyError, TypeError) as e:
            raise UnexpectedError(f"Invalid response from geocoding provider: missing {e}")

        if self.cache is not None:
            self.cache.set(
                key,
                GeocodeCacheEntry(
                    lat=result.lat,
                    lng=result.lng,
                    canonical_address=result.address,
                    cached_at=self._clock(),
                ),
            )
        return result

    async def reverse_geocode(self, lat: float, lng: float) -> str:
        """Return the address label nearest to a coordinate."""
        response, data = await self._get_json(HERE_REVGEOCODE_URL, {"at": f"{lat},{lng}"}, REVERSE_GEOCODE_FAILED)

        if not response.is_success:
            logger.error(
                "reverse_geocode.provider_error",
                extra={"provider_status": response.status_code, "provider_message": _provider_message(data)},
            )
            raise UpstreamProviderError(
                REVERSE_GEOCODE_FAILED,
                details=_provider_message(data),
                provider_status=response.status_code,
            )

        items = data.get("items") if isinstance(data, dict) else None
        label = None
        if items:
            label = (items[0].get("address") or {}).get("label")
        if not label:
            logger.warning("reverse_geocode.no_result", extra={"lat": lat, "lng": lng})
            raise NotFoundError("No address found for this location.")
        return label
