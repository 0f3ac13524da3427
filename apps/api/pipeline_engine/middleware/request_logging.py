from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from pipeline_engine.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("pipeline_engine.request")


def _request_fields(request: Request, status_code: int, started: float) -> dict[str, Any]:
    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    path = resolve_http_path_label(request)
    observe_http_request(method=request.method, path=path, status=status_code, duration=duration_ms / 1000)
    fields: dict[str, Any] = {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "tenant_id": request.headers.get("x-tenant-id"),
    }
    entity_id = request.scope.get("path_params", {}).get("entity_id")
    if entity_id is not None:
        fields["entity_id"] = str(entity_id)
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One ``http.request`` line per request, labelled with the route template."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error("http.error", exc_info=True, extra=_request_fields(request, 500, started))
            raise

        fields = _request_fields(request, response.status_code, started)
        if response.status_code >= 500:
            logger.error("http.request", extra=fields)
        else:
            logger.info("http.request", extra=fields)
        return response
