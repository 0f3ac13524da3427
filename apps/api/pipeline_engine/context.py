from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
tenant_id_var: ContextVar[str | None] = ContextVar("tenant_id", default=None)
transition_depth_var: ContextVar[int | None] = ContextVar("transition_depth", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_tenant_id(value: str | None) -> Token[str | None]:
    return tenant_id_var.set(value)


def reset_tenant_id(token: Token[str | None]) -> None:
    tenant_id_var.reset(token)


def get_tenant_id() -> str | None:
    return tenant_id_var.get()


def set_transition_depth(value: int | None) -> Token[int | None]:
    return transition_depth_var.set(value)


def reset_transition_depth(token: Token[int | None]) -> None:
    transition_depth_var.reset(token)


def get_transition_depth() -> int | None:
    return transition_depth_var.get()


@contextmanager
def bound_context(correlation_id: str | None = None, tenant_id: str | None = None) -> Iterator[None]:
    """Bind correlation and tenant ids for work running outside a request (Celery tasks)."""
    correlation_token = set_correlation_id(correlation_id) if correlation_id is not None else None
    tenant_token = set_tenant_id(tenant_id) if tenant_id is not None else None
    try:
        yield
    finally:
        if tenant_token is not None:
            reset_tenant_id(tenant_token)
        if correlation_token is not None:
            reset_correlation_id(correlation_token)
