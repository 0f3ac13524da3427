from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from pipeline_engine.context import reset_tenant_id, set_tenant_id

SYSTEM_ACTOR = "system"


@dataclass
class RequestContext:
    correlation_id: str
    tenant_id: str | None
    actor_id: str


def _header(request: Request, name: str) -> str | None:
    value = request.headers.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Exposes tenant and actor headers as ``request.state.context`` and binds the tenant for logging."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        tenant_id = _header(request, "x-tenant-id")
        request.state.context = RequestContext(
            correlation_id=getattr(request.state, "correlation_id", None) or "",
            tenant_id=tenant_id,
            actor_id=_header(request, "x-actor-id") or SYSTEM_ACTOR,
        )
        token = set_tenant_id(tenant_id)
        try:
            return await call_next(request)
        finally:
            reset_tenant_id(token)
