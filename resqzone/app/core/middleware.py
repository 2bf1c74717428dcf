"""
Per-request logging middleware.

Each request gets a correlation id (the client's ``X-Request-ID`` or a
fresh one) bound into the logging context for the duration of the call,
and echoed back in the response headers. Regular requests are timed
(``X-Process-Time``) and logged once on completion; 4xx/5xx at WARNING.

SSE streams under ``/api/v1/stream`` are logged when opened and never
timed, since the response lives as long as the subscription.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from resqzone.app.core.logging_config import bind_request_context, reset_request_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
STREAM_PREFIX = "/api/v1/stream"
UNLOGGED_PREFIXES = ("/docs", "/redoc", "/openapi.json", "/health/live")


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        path = request.url.path
        peer = request.client.host if request.client else "-"
        token = bind_request_context(
            request_id=request_id, client_ip=peer, method=request.method, endpoint=path,
        )
        try:
            if path.startswith(STREAM_PREFIX):
                logger.info("Stream opened %s [%s]", path, peer, extra={"endpoint": path})
                response = await call_next(request)
            else:
                response = await self._timed(request, call_next, path)
        finally:
            reset_request_context(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @staticmethod
    async def _timed(request: Request, call_next, path: str) -> Response:
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed = (time.perf_counter() - started) * 1000
            logger.exception(
                "%s %s crashed after %.1fms", request.method, path, elapsed,
                extra={"duration_ms": elapsed, "status_code": 500, "endpoint": path},
            )
            raise

        elapsed = (time.perf_counter() - started) * 1000
        response.headers["X-Process-Time"] = f"{elapsed:.1f}ms"
        if not path.startswith(UNLOGGED_PREFIXES):
            logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                "%s %s → %d (%.1fms)", request.method, path, response.status_code, elapsed,
                extra={"duration_ms": elapsed, "status_code": response.status_code, "endpoint": path},
            )
        return response
