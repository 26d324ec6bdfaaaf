"""Tenant context propagation via Python contextvars.

This module is the foundation of multi-tenant isolation. The TenantContext
is set by middleware at the start of each request and is accessible anywhere
in the call stack via get_current_tenant(). Every database session uses this
context to scope queries to the correct tenant schema.
"""

from __future__ import annotations

import contextvars
import re
from dataclasses import dataclass

# ── Tenant Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantContext:
    """Immutable tenant context for the current request."""

    tenant_id: str
    tenant_slug: str
    schema_name: str  # e.g., "tenant_acme"


_tenant_context: contextvars.ContextVar[TenantContext] = contextvars.ContextVar("tenant_context")

_SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]{0,62}$")


def schema_name_for(tenant_slug: str) -> str:
    """Derive the Postgres schema name for a tenant slug.

    Raises ValueError for slugs that cannot form a safe identifier.
    """
    if not _SLUG_PATTERN.match(tenant_slug):
        raise ValueError(f"Invalid tenant slug: {tenant_slug!r}")
    return f"tenant_{tenant_slug.replace('-', '_')}"


def get_current_tenant() -> TenantContext:
    """Get the tenant context for the current request.

    Raises RuntimeError if no tenant context has been set (i.e., the call
    is not within a tenant-scoped request).
    """
    try:
        return _tenant_context.get()
    except LookupError:
        raise RuntimeError("No tenant context set -- request is not tenant-scoped")


def set_tenant_context(ctx: TenantContext) -> contextvars.Token[TenantContext]:
    """Set the tenant context for the current request. Returns a token for reset."""
    return _tenant_context.set(ctx)


def reset_tenant_context(token: contextvars.Token[TenantContext]) -> None:
    _tenant_context.reset(token)


# ── Paths that skip tenant resolution ───────────────────────────────────────

SKIP_TENANT_PATHS = (
    "/health",
    "/metrics",
    "/docs",
    "/openapi.json",
    "/redoc",
)
