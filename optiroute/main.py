import logging
import os
from contextlib import asynccontextmanager

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from optiroute.core.config import settings, validate_config
from optiroute.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from optiroute.core.logging import configure_logging
from optiroute.core.middleware.request_id import RequestIdMiddleware
from optiroute.api import billing, geocoding, health, optimize
from optiroute.features.geocoding.cache import GeocodeCache

configure_logging(settings.ENV)
validate_config()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("optiroute")
    logger.info("Starting OptiRoute backend...")
    app.state.http = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)
    # One cache per process, shared by every geocoding request
    app.state.geocode_cache = GeocodeCache(
        max_entries=settings.GEOCODE_CACHE_MAX_ENTRIES,
        ttl_seconds=settings.GEOCODE_CACHE_TTL_SECONDS,
    )
    try:
        yield
    finally:
        await app.state.http.aclose()
        logger.info("Stopping OptiRoute backend...")


def create_app() -> FastAPI:
    app = FastAPI(title="OptiRoute API", lifespan=lifespan)

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-request-id"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(geocoding.router, prefix="/api")
    app.include_router(optimize.router, prefix="/api")
    app.include_router(billing.router, prefix="/api")
    app.include_router(health.router)
    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run("optiroute.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    main()
