"""
Runtime settings, read from the environment and `.env`.

Provider credentials are optional at import time so the app (and its tests)
can start without them; routes that need a missing credential fail with a
ConfigurationError instead. `validate_config` reports the gaps at startup.
"""
import logging
from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Live Stripe price ids of the two paid tiers
DEFAULT_PRICE_PRO = "price_1RMkdoAEvm0dTvhJ2ZAeLPkj"
DEFAULT_PRICE_UNLIMITED = "price_1RMkePAEvm0dTvhJro8NBlJF"

# Credential -> what stops working without it
REQUIRED_SETTINGS: Dict[str, str] = {
    "HERE_API_KEY": "geocoding and route optimization",
    "CLERK_SECRET_KEY": "user profiles and plan usage",
    "STRIPE_SECRET_KEY": "billing",
    "STRIPE_WEBHOOK_SECRET": "subscription webhooks",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ENV: str = "development"
    CONFIG_STRICT: bool = False

    HERE_API_KEY: Optional[str] = None

    CLERK_SECRET_KEY: Optional[str] = None
    CLERK_API_URL: str = "https://api.clerk.com/v1"
    # PEM public key; when set, sessions verify without a JWKS fetch
    CLERK_JWT_KEY: Optional[str] = None
    CLERK_ISSUER: Optional[str] = None
    CLERK_AUDIENCE: Optional[str] = None
    CLERK_JWKS_URL: Optional[str] = None

    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_PRO: str = DEFAULT_PRICE_PRO
    STRIPE_PRICE_UNLIMITED: str = DEFAULT_PRICE_UNLIMITED
    NEXT_PUBLIC_STRIPE_PUBLISHABLE_KEY: Optional[str] = None
    TRIAL_PERIOD_DAYS: int = 7

    NEXT_PUBLIC_APP_URL: str = "http://localhost:3000"
    CORS_ORIGINS: str = "http://localhost:3000"

    GEOCODE_CACHE_MAX_ENTRIES: int = 500
    GEOCODE_CACHE_TTL_SECONDS: int = 7 * 24 * 60 * 60
    BATCH_GEOCODE_SIZE: int = 5
    BATCH_GEOCODE_DELAY_SECONDS: float = 0.2

    HTTP_TIMEOUT_SECONDS: float = 10.0

    @property
    def cors_origins(self) -> list[str]:
        return [part.strip() for part in self.CORS_ORIGINS.split(",") if part.strip()]


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """
    Check that every provider credential is present.

    Only key names are reported, never values. With `strict` (defaults to
    CONFIG_STRICT) a gap raises RuntimeError; otherwise each missing key is
    logged as a warning and startup continues.
    """
    cfg = settings_obj or settings
    if strict is None:
        strict = cfg.CONFIG_STRICT

    missing = [name for name in REQUIRED_SETTINGS if not getattr(cfg, name, None)]
    if not missing:
        return True

    if strict:
        raise RuntimeError(f"Missing required configuration: {', '.join(missing)}")

    log = logger or logging.getLogger("optiroute")
    for name in missing:
        log.warning("%s is not set; %s will be unavailable", name, REQUIRED_SETTINGS[name])
    return True
