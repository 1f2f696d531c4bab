"""
Geocoding API routes.

- POST /api/geocode:         one address -> coordinates
- POST /api/batch-geocode:   many addresses, throttled
- POST /api/reverse-geocode: coordinates -> address label
"""
from typing import Any, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from optiroute.api.deps import get_geocoder
from optiroute.core.config import settings
from optiroute.core.errors import ValidationError
from optiroute.features.geocoding.batch import clean_addresses, geocode_batch
from optiroute.features.geocoding.here_client import HereGeocoder
from optiroute.models.route import Coordinate

router = APIRouter(tags=["geocoding"])


class GeocodeRequest(BaseModel):
    address: Optional[str] = None


class BatchGeocodeRequest(BaseModel):
    # Elements are filtered, not validated: non-strings are skipped
    addresses: Optional[List[Any]] = None


class ReverseGeocodeRequest(BaseModel):
    lat: Optional[Coordinate] = None
    lng: Optional[Coordinate] = None


@router.post("/geocode")
async def geocode(request: GeocodeRequest, geocoder: HereGeocoder = Depends(get_geocoder)):
    """
    Returns:
        {"address": str, "lat": float, "lng": float}

    Errors:
        400: empty address
        404: no match
        500: provider or configuration failure
    """
    result = await geocoder.geocode(request.address)
    return {"address": result.address, "lat": result.lat, "lng": result.lng}


@router.post("/batch-geocode")
async def batch_geocode(request: BatchGeocodeRequest, geocoder: HereGeocoder = Depends(get_geocoder)):
    """
    Per-address outcomes; one failing address never fails the batch.

    Returns:
        {"results": {address: {"lat", "lng", "address"} | {"error": str}}}

    Errors:
        400: missing or empty array, or no usable address after filtering
    """
    if not request.addresses:
        raise ValidationError("Invalid addresses provided. Expected a non-empty array of address strings.")
    addresses = clean_addresses(request.addresses)
    if not addresses:
        raise ValidationError("No valid addresses provided after filtering.")

    results = await geocode_batch(
        geocoder,
        addresses,
        batch_size=settings.BATCH_GEOCODE_SIZE,
        delay_seconds=settings.BATCH_GEOCODE_DELAY_SECONDS,
    )
    return {"results": results}


@router.post("/reverse-geocode")
async def reverse_geocode(request: ReverseGeocodeRequest, geocoder: HereGeocoder = Depends(get_geocoder)):
    if request.lat is None or request.lng is None:
        raise ValidationError("Latitude and longitude are required.")

    address = await geocoder.reverse_geocode(request.lat, request.lng)
    return {"address": address}
