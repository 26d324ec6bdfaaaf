"""Tenant resolution middleware with JWT and header-based modes.

Resolves tenant context from:
1. JWT claims in Authorization header (preferred for user requests)
2. X-Tenant-ID + X-Tenant-Slug headers (service-to-service calls)

After resolution, sets TenantContext in contextvars for the request scope.
"""

from __future__ import annotations

import logging

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.app.core.security import bearer_token, decode_token
from src.app.core.tenant import (
    SKIP_TENANT_PATHS,
    TenantContext,
    reset_tenant_context,
    schema_name_for,
    set_tenant_context,
)

logger = logging.getLogger(__name__)


class TenantAuthMiddleware(BaseHTTPMiddleware):
    """Middleware that resolves tenant from JWT claims or tenant headers.

    Supports two modes:
    1. JWT mode: Extract tenant_id and tenant_slug from JWT claims.
    2. Header mode: Use X-Tenant-ID / X-Tenant-Slug for service-to-service calls.

    Paths in SKIP_TENANT_PATHS are excluded from tenant resolution.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if any(path.startswith(skip) for skip in SKIP_TENANT_PATHS):
            return await call_next(request)

        tenant_ctx = self._resolve_from_jwt(request) or self._resolve_from_header(request)

        if not tenant_ctx:
            # Exceptions raised here bypass FastAPI's handlers, so respond directly
            return JSONResponse(
                status_code=400,
                content={
                    "kind": "validation_error",
                    "message": (
                        "Missing tenant context. Provide Authorization header with JWT, "
                        "or X-Tenant-ID and X-Tenant-Slug headers."
                    ),
                },
            )

        token = set_tenant_context(tenant_ctx)
        try:
            return await call_next(request)
        finally:
            reset_tenant_context(token)

    def _resolve_from_jwt(self, request: Request) -> TenantContext | None:
        """Extract tenant context from JWT claims in Authorization header."""
        token_str = bearer_token(request.headers.get("Authorization"))
        if token_str is None:
            return None

        payload = decode_token(token_str)
        if payload is None:
            return None

        return self._build_context(payload.get("tenant_id"), payload.get("tenant_slug"))

    def _resolve_from_header(self, request: Request) -> TenantContext | None:
        """Resolve tenant from X-Tenant-ID / X-Tenant-Slug headers."""
        return self._build_context(
            request.headers.get("X-Tenant-ID"),
            request.headers.get("X-Tenant-Slug"),
        )

    @staticmethod
    def _build_context(tenant_id: str | None, tenant_slug: str | None) -> TenantContext | None:
        if not tenant_id or not tenant_slug:
            return None
        try:
            schema_name = schema_name_for(tenant_slug)
        except ValueError:
            logger.warning("Rejected tenant slug %r", tenant_slug)
            return None
        return TenantContext(
            tenant_id=tenant_id,
            tenant_slug=tenant_slug,
            schema_name=schema_name,
        )
