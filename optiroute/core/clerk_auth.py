"""
Clerk session token verification.

Handles:
- RS256 verification with the instance PEM key (CLERK_JWT_KEY, no network)
- RS256 verification against the instance JWKS (cached per issuer/url,
  refetched once when a token names an unknown key, at most once a minute)
- Issuer/audience validation when configured
- Test helpers for deterministic testing (no network)
"""
import json
import time
from typing import Dict, Any, Optional, Callable

import httpx
import jwt
from jwt.algorithms import RSAAlgorithm

from optiroute.core.config import settings


JWKS_REFRESH_INTERVAL_SECONDS = 60.0

# JWKS override (tests) and cache keyed by issuer/jwks_url
_jwks_provider_override: Optional[Callable[[str], Dict[str, Any]]] = None
_jwks_cache: Dict[str, Dict[str, Any]] = {}
_jwks_fetched_at: Dict[str, float] = {}


def set_jwks_provider_for_tests(provider: Optional[Callable[[str], Dict[str, Any]]]) -> None:
    """Set or clear JWKS provider override for deterministic testing (no network)."""
    global _jwks_provider_override
    _jwks_provider_override = provider
    _jwks_cache.clear()
    _jwks_fetched_at.clear()


def _default_fetch_jwks(jwks_url: str) -> Dict[str, Any]:
    response = httpx.get(jwks_url, timeout=5.0)
    response.raise_for_status()
    return response.json()


def _resolve_jwks_url() -> str:
    if settings.CLERK_JWKS_URL:
        return settings.CLERK_JWKS_URL
    if settings.CLERK_ISSUER:
        return f"{settings.CLERK_ISSUER.rstrip('/')}/.well-known/jwks.json"
    raise jwt.PyJWTError("CLERK_JWT_KEY, CLERK_JWKS_URL or CLERK_ISSUER must be configured")


def get_jwks(jwks_url: str, refresh: bool = False) -> Dict[str, Any]:
    """
    Fetch JWKS using override (tests) or default fetcher. Cached per url.

    `refresh` bypasses the cache unless the cached copy is younger than
    JWKS_REFRESH_INTERVAL_SECONDS.
    """
    if jwks_url in _jwks_cache:
        fresh = time.monotonic() - _jwks_fetched_at.get(jwks_url, 0.0) < JWKS_REFRESH_INTERVAL_SECONDS
        if not refresh or fresh:
            return _jwks_cache[jwks_url]

    if _jwks_provider_override:
        jwks = _jwks_provider_override(jwks_url)
    else:
        jwks = _default_fetch_jwks(jwks_url)

    _jwks_cache[jwks_url] = jwks
    _jwks_fetched_at[jwks_url] = time.monotonic()
    return jwks


def _find_jwk(jwks: Dict[str, Any], kid: str) -> Optional[Dict[str, Any]]:
    return next((key for key in jwks.get("keys", []) if key.get("kid") == kid), None)


def _signing_key_for(token: str):
    if settings.CLERK_JWT_KEY:
        # .env files often carry the PEM on one line with literal \n
        return settings.CLERK_JWT_KEY.replace("\\n", "\n")

    kid = jwt.get_unverified_header(token).get("kid")
    if not kid:
        raise jwt.PyJWTError("Token missing 'kid' in header")

    jwks_url = _resolve_jwks_url()
    key = _find_jwk(get_jwks(jwks_url), kid)
    if key is None:
        # Clerk rotated its signing keys since the cached fetch
        key = _find_jwk(get_jwks(jwks_url, refresh=True), kid)
    if key is not None:
        return RSAAlgorithm.from_jwk(json.dumps(key))
    raise jwt.PyJWTError(f"Key ID '{kid}' not found in JWKS")


def verify_session_token(token: str) -> Dict[str, Any]:
    """
    Verify a Clerk session token and return its claims.

    Raises jwt.PyJWTError on any verification failure.
    """
    options = {
        "verify_signature": True,
        "verify_exp": True,
        "verify_aud": bool(settings.CLERK_AUDIENCE),
        "verify_iss": bool(settings.CLERK_ISSUER),
    }
    claims = jwt.decode(
        token,
        _signing_key_for(token),
        algorithms=["RS256"],
        audience=settings.CLERK_AUDIENCE,
        issuer=settings.CLERK_ISSUER,
        options=options,
    )
    if not claims.get("sub"):
        raise jwt.InvalidTokenError("No 'sub' claim in token")
    return claims


# ============================================================================
# Test Helpers (deterministic, no network)
# ============================================================================

def create_test_jwt(
    private_key: str,
    sub: str = "user_test_123",
    exp_minutes: int = 60,
    kid: Optional[str] = None,
    issuer: Optional[str] = None,
    audience: Optional[str] = None,
) -> str:
    """Create an RS256 session token signed with a PEM private key."""
    now = int(time.time())
    payload = {
        "sub": sub,
        "iat": now,
        "nbf": now,
        "exp": now + (exp_minutes * 60),
    }
    if issuer:
        payload["iss"] = issuer
    if audience:
        payload["aud"] = audience
    headers = {"kid": kid} if kid else None
    return jwt.encode(payload, private_key, algorithm="RS256", headers=headers)
