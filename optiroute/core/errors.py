"""
Error taxonomy and the FastAPI handlers that render it.

Routes and services raise AppError subclasses; each carries its HTTP status
and a stable machine-readable `code`. Every failure, including framework 404s
and request validation, leaves the API as
{"error", "code", "request_id", "details"?} with an x-request-id header.
"""

import logging
import builtins
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from optiroute.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class AuthError(AppError):
    code = "unauthorized"
    status_code = 401


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class UpstreamProviderError(AppError):
    """A mapping, payments or identity provider call failed.

    `details` preserves the provider's own diagnostic text for support triage.
    """
    code = "upstream_error"
    status_code = 500

    def __init__(self, message: str, *, provider_status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.provider_status = provider_status


class ConfigurationError(AppError):
    code = "configuration_error"
    status_code = 500


class UnexpectedError(AppError):
    code = "internal_error"
    status_code = 500


HTTP_ERROR_CODES = {401: "unauthorized", 404: "not_found", 405: "method_not_allowed"}

logger = logging.getLogger("optiroute")


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def error_response(
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    details: Optional[str] = None,
) -> JSONResponse:
    """The one error body shape every failing route returns."""
    body = {"error": message, "code": code, "request_id": request_id}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body, headers={"x-request-id": request_id})


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id_for(request)
    fields = {
        "request_id": rid,
        "error_code": exc.code,
        "error_message": exc.message,
        "error_details": exc.details,
        "status": exc.status_code,
        "provider_status": getattr(exc, "provider_status", None),
    }
    logger.log(logging.ERROR if exc.status_code >= 500 else logging.WARNING, "app.error", extra=fields)
    return error_response(rid, exc.status_code, exc.code, exc.message, exc.details)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id_for(request)
    code = HTTP_ERROR_CODES.get(exc.status_code, "http_error")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    message = exc.detail if isinstance(exc.detail, str) and exc.detail else "HTTP error"
    return error_response(rid, exc.status_code, code, message)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _request_id_for(request)
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"Invalid request: {location} {first.get('msg', '')}".strip() if location else "Invalid request body."
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 400})
    return error_response(rid, 400, "validation_error", message)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id_for(request)
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    # Internal exception text never reaches the client
    return error_response(rid, 500, "internal_error", "Unexpected error")
