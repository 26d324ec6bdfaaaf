"""FastAPI dependency injection for tenant context and caller identity.

These dependencies are used in endpoint function signatures to inject
the correct tenant context and the authenticated caller.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from src.app.core.security import bearer_token, verify_token
from src.app.core.tenant import TenantContext, get_current_tenant
from src.app.governance.schemas import CallerIdentity


async def get_tenant() -> TenantContext:
    """Get the current tenant context (set by TenantAuthMiddleware)."""
    return get_current_tenant()


async def get_caller(
    request: Request,
    tenant: TenantContext = Depends(get_tenant),
) -> CallerIdentity:
    """Extract the caller identity from the identity provider's bearer token.

    Raises:
        HTTPException(401): If no valid bearer token is provided.
        HTTPException(403): If the token's tenant doesn't match the request tenant.
    """
    token_str = bearer_token(request.headers.get("Authorization"))
    if token_str is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(token_str)

    token_tenant_id = payload.get("tenant_id")
    if token_tenant_id and token_tenant_id != tenant.tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token tenant does not match request tenant context",
        )

    return CallerIdentity(id=str(payload["sub"]), display_name=payload.get("name"))


# Alias for cleaner endpoint signatures
require_auth = Depends(get_caller)
