"""
Health endpoint.

Liveness only; reports which integrations are configured without exposing secrets.
"""

from fastapi import APIRouter

from optiroute.core.config import settings

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no outbound calls)."""
    return {
        "status": "ok",
        "configured": {
            "here": bool(settings.HERE_API_KEY),
            "clerk": bool(settings.CLERK_SECRET_KEY),
            "stripe": bool(settings.STRIPE_SECRET_KEY),
            "stripe_webhooks": bool(settings.STRIPE_WEBHOOK_SECRET),
        },
    }
