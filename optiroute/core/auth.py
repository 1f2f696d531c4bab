"""
Auth dependency for OptiRoute API.

Validates Clerk session tokens and extracts user_id from the request.
Accepts `Authorization: Bearer <token>` or Clerk's `__session` cookie.
"""
import logging

import jwt
from fastapi import Request
from starlette.concurrency import run_in_threadpool

from optiroute.core.clerk_auth import verify_session_token
from optiroute.core.errors import AuthError

logger = logging.getLogger("optiroute")

SESSION_COOKIE = "__session"


def _extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get(SESSION_COOKIE)


async def get_current_user_id(request: Request) -> str:
    """
    Resolve the authenticated Clerk user id.

    Raises:
        AuthError: Missing, expired or invalid session token
    """
    token = _extract_token(request)
    if not token:
        raise AuthError("Unauthorized")

    try:
        # May fetch the JWKS over the network
        claims = await run_in_threadpool(verify_session_token, token)
    except jwt.ExpiredSignatureError:
        raise AuthError("Session expired")
    except jwt.PyJWTError as e:
        logger.debug(f"Invalid session token: {e}")
        raise AuthError("Unauthorized")

    user_id = claims["sub"]
    request.state.user_id = user_id
    return user_id
