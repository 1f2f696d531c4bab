"""
Request correlation.

Every response carries `x-request-id`: the caller's own value when it sent
one, otherwise a fresh uuid4. The id is bound to the logging context for the
duration of the request, and error bodies repeat it (see core/errors.py).
"""
import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from optiroute.core.logging import bind_request_id, latency_bucket_ms, unbind_request_id

REQUEST_ID_HEADER = "x-request-id"

logger = logging.getLogger("optiroute")


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        request.state.request_id = rid
        token = bind_request_id(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            elapsed_ms = (time.perf_counter() - started) * 1000
            response.headers[REQUEST_ID_HEADER] = rid
            logger.log(
                logging.WARNING if response.status_code >= 500 else logging.INFO,
                "request.complete",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "latency_bucket": latency_bucket_ms(elapsed_ms),
                },
            )
            return response
        finally:
            unbind_request_id(token)
