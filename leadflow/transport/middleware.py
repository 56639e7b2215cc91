# leadflow/transport/middleware.py
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from leadflow.infra.logging_config import LogContext, get_logger
from leadflow.infra.metrics import inc_counter, observe_histogram

logger = get_logger(__name__)

# Polled by orchestrators and scrapers; logged at DEBUG
QUIET_PATHS = frozenset({"/health", "/ready", "/metrics"})

TRIGGER_PREFIX = "/triggers/"


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagates X-Request-ID, minting one when the caller sent none"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        response = await call_next(request)
        response.headers["X-Request-ID"] = request.state.request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        method, path = request.method, request.url.path
        log_ctx = LogContext(logger, request_id=_request_id(request))
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000
            log_ctx.error(
                f"{method} {path} raised {exc.__class__.__name__} after {elapsed_ms:.1f}ms",
                extra={"method": method, "path": path, "duration_ms": elapsed_ms},
            )
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        line = f"{method} {path} -> {response.status_code} in {elapsed_ms:.1f}ms"
        fields = {"method": method, "path": path, "status_code": response.status_code, "duration_ms": elapsed_ms}
        if path in QUIET_PATHS:
            log_ctx.debug(line, extra=fields)
        elif response.status_code >= 500:
            log_ctx.warning(line, extra=fields)
        else:
            log_ctx.info(line, extra=fields)

        inc_counter("http_requests_total", method=method, status=str(response.status_code))
        observe_histogram("http_request_duration_ms", elapsed_ms)
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Turns anything that escaped a route into a JSON response"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = _request_id(request)
            logger.error(
                f"Unhandled {exc.__class__.__name__} on {request.url.path}: {exc}",
                extra={"request_id": request_id},
                exc_info=True,
            )

            # Trigger senders retry on non-2xx; reactions record their own errors
            if request.url.path.startswith(TRIGGER_PREFIX):
                return JSONResponse(status_code=200, content={"status": "done"})

            return JSONResponse(
                status_code=500,
                content={
                    "error": {"code": "internal", "message": "Internal error"},
                    "request_id": request_id,
                },
            )
