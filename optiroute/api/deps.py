"""
Request-scoped dependencies.

Long-lived resources (the outbound HTTP client and the geocode cache) are
built once in the application lifespan and read from `app.state`; the thin
provider clients wrapping them are built per request.
"""
import logging

import httpx
from fastapi import Depends, Request

from optiroute.core.config import settings
from optiroute.core.errors import ConfigurationError
from optiroute.features.billing.provider import BillingProvider
from optiroute.features.billing.reconciler import SubscriptionReconciler
from optiroute.features.billing.service import BillingService
from optiroute.features.billing.stripe_provider import StripeProvider
from optiroute.features.geocoding.cache import GeocodeCache
from optiroute.features.geocoding.here_client import HereGeocoder
from optiroute.features.identity.clerk_client import ClerkClient
from optiroute.features.identity.profile_store import ClerkProfileStore, ProfileStore
from optiroute.features.routing.here_client import HereRouter

logger = logging.getLogger("optiroute")


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http


def get_geocode_cache(request: Request) -> GeocodeCache:
    return request.app.state.geocode_cache


def _here_api_key() -> str:
    if not settings.HERE_API_KEY:
        logger.error("HERE_API_KEY is not configured.")
        raise ConfigurationError("Server configuration error: Missing API key.")
    return settings.HERE_API_KEY


def get_geocoder(
    http: httpx.AsyncClient = Depends(get_http_client),
    cache: GeocodeCache = Depends(get_geocode_cache),
) -> HereGeocoder:
    return HereGeocoder(_here_api_key(), http, cache=cache)


def get_router(http: httpx.AsyncClient = Depends(get_http_client)) -> HereRouter:
    return HereRouter(_here_api_key(), http)


def get_clerk_client(http: httpx.AsyncClient = Depends(get_http_client)) -> ClerkClient:
    return ClerkClient(settings.CLERK_SECRET_KEY, http, api_url=settings.CLERK_API_URL)


def get_profile_store(clerk: ClerkClient = Depends(get_clerk_client)) -> ProfileStore:
    return ClerkProfileStore(clerk)


def get_billing_provider() -> BillingProvider:
    if not settings.STRIPE_SECRET_KEY:
        logger.error("STRIPE_SECRET_KEY is not configured.")
        raise ConfigurationError("Server configuration error: Missing Stripe secret key.")
    return StripeProvider(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)


def get_billing_service(
    provider: BillingProvider = Depends(get_billing_provider),
    store: ProfileStore = Depends(get_profile_store),
    clerk: ClerkClient = Depends(get_clerk_client),
) -> BillingService:
    return BillingService(provider, store, clerk, app_url=settings.NEXT_PUBLIC_APP_URL)


def get_reconciler(
    provider: BillingProvider = Depends(get_billing_provider),
    store: ProfileStore = Depends(get_profile_store),
) -> SubscriptionReconciler:
    return SubscriptionReconciler(provider, store)
