import time
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from ..config import settings

logger = structlog.get_logger("bookingcore.middleware")

_QUIET_PATHS = ("/health", "/ping")


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000.0, 2)


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """Bind request identity into the log context and time every request.

    Unhandled errors become a JSON 500 that still carries ``X-Request-ID``.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = (request.headers.get("X-Request-ID") or "").strip() or str(uuid.uuid4())
        tenant_slug = (request.headers.get("X-Tenant-Slug") or "").strip().lower() or None

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            tenant_slug=tenant_slug,
            path=request.url.path,
            method=request.method,
        )

        start = time.perf_counter()
        try:
            response: Response = await call_next(request)
        except Exception:
            logger.exception("request_failed", status=500, duration_ms=_elapsed_ms(start))
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error"},
                headers={"X-Request-ID": request_id},
            )

        duration_ms = _elapsed_ms(start)
        response.headers["X-Request-ID"] = request_id
        if response.status_code >= 500:
            logger.warning("request_finished", status=response.status_code, duration_ms=duration_ms)
        elif duration_ms >= settings.SLOW_REQUEST_MS:
            logger.warning("request_slow", status=response.status_code, duration_ms=duration_ms)
        elif request.url.path.startswith(_QUIET_PATHS):
            logger.debug("request_finished", status=response.status_code, duration_ms=duration_ms)
        else:
            logger.info("request_finished", status=response.status_code, duration_ms=duration_ms)
        return response
