"""
optiroute/features/identity/clerk_client.py

Thin Clerk Backend API client (users + public metadata).
"""

import logging
from typing import Any, Dict, Optional

import httpx

from optiroute.core.errors import (
    ConfigurationError,
    NotFoundError,
    UnexpectedError,
    UpstreamProviderError,
)

logger = logging.getLogger("optiroute")

CLERK_API_BASE = "https://api.clerk.com/v1"


def _clerk_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    errors = data.get("errors") if isinstance(data, dict) else None
    if errors and isinstance(errors[0], dict):
        return errors[0].get("long_message") or errors[0].get("message") or str(errors[0])
    return f"HTTP {response.status_code}"


def primary_email(user: Dict[str, Any]) -> Optional[str]:
    """The user's primary email address, falling back to the first one listed."""
    addresses = user.get("email_addresses") or []
    primary_id = user.get("primary_email_address_id")
    for entry in addresses:
        if entry.get("id") == primary_id and entry.get("email_address"):
            return entry["email_address"]
    for entry in addresses:
        if entry.get("email_address"):
            return entry["email_address"]
    return None


def full_name(user: Dict[str, Any]) -> Optional[str]:
    parts = [user.get("first_name"), user.get("last_name")]
    name = " ".join(p for p in parts if p)
    return name or None


class ClerkClient:
    def __init__(self, secret_key: Optional[str], http: httpx.AsyncClient, api_url: str = CLERK_API_BASE):
        self.secret_key = secret_key
        self.http = http
        self.api_url = api_url.rstrip("/")

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.secret_key:
            raise ConfigurationError("Server configuration error: Missing Clerk secret key.")

        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            response = await self.http.request(method, f"{self.api_url}{path}", headers=headers, json=json)
        except httpx.HTTPError as e:
            raise UnexpectedError(str(e) or "Failed to reach the identity provider.")

        if response.status_code == 404:
            raise NotFoundError("User not found.")
        if response.status_code >= 300:
            message = _clerk_message(response)
            logger.error(
                "clerk.request_failed",
                extra={"method": method, "path": path, "provider_status": response.status_code, "provider_message": message},
            )
            raise UpstreamProviderError(
                "Identity provider request failed.",
                details=message,
                provider_status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise UnexpectedError(f"Invalid response from identity provider: {e}")

    async def get_user(self, user_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/users/{user_id}")

    async def update_public_metadata(self, user_id: str, public_metadata: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge `public_metadata` into the user's metadata.

        Clerk deep-merges the payload; keys sent as null are removed.
        """
        return await self._request(
            "PATCH",
            f"/users/{user_id}/metadata",
            json={"public_metadata": public_metadata},
        )
