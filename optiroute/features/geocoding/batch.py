"""
optiroute/features/geocoding/batch.py

Batch geocoding with fixed-size groups and an inter-group delay.

Groups run strictly one after another; addresses inside a group run
concurrently. One address failing never affects its siblings.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Protocol

from optiroute.core.errors import AppError
from optiroute.features.geocoding.here_client import GeocodeResult

logger = logging.getLogger("optiroute")

SERVER_BATCH_SIZE = 5
SERVER_BATCH_DELAY_SECONDS = 0.2


class Geocoder(Protocol):
    async def geocode(self, address: str) -> GeocodeResult: ...


def clean_addresses(addresses: Iterable[Any]) -> List[str]:
    """Trim, drop empty/non-string entries and collapse duplicates (order kept)."""
    seen = set()
    cleaned = []
    for address in addresses:
        if not isinstance(address, str):
            continue
        trimmed = address.strip()
        if trimmed and trimmed not in seen:
            seen.add(trimmed)
            cleaned.append(trimmed)
    return cleaned


def chunked(items: List[str], size: int) -> List[List[str]]:
    if size < 1:
        raise ValueError("batch size must be >= 1")
    return [items[i:i + size] for i in range(0, len(items), size)]


def _outcome(result: Any) -> Dict[str, Any]:
    if isinstance(result, GeocodeResult):
        return {"lat": result.lat, "lng": result.lng, "address": result.address}
    if isinstance(result, AppError):
        return {"error": result.details or result.message}
    if isinstance(result, Exception):
        return {"error": str(result) or "Failed to process address"}
    return {"error": "Failed to process address"}


async def geocode_batch(
    geocoder: Geocoder,
    addresses: Iterable[Any],
    batch_size: int = SERVER_BATCH_SIZE,
    delay_seconds: float = SERVER_BATCH_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Dict[str, Dict[str, Any]]:
    """
    Geocode many addresses politely.

    Returns:
        {trimmed_address: {"lat", "lng", "address"} | {"error": message}}
        Empty or whitespace-only inputs are absent from the result.
    """
    groups = chunked(clean_addresses(addresses), batch_size)
    results: Dict[str, Dict[str, Any]] = {}

    for index, group in enumerate(groups):
        outcomes = await asyncio.gather(
            *(geocoder.geocode(address) for address in group),
            return_exceptions=True,
        )
        for address, outcome in zip(group, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception) and not isinstance(outcome, AppError):
                logger.warning(
                    "geocode.batch.address_failed",
                    extra={"address": address, "error_message": str(outcome)},
                )
            results[address] = _outcome(outcome)

        if index < len(groups) - 1:
            await sleep(delay_seconds)

    return results
