"""JWT verification for bearer tokens issued by the external identity provider.

This service never issues tokens or stores credentials. It verifies the
signature and expiry of incoming access tokens and reads the claims it
needs: ``sub`` (caller id), ``name`` (display name), ``tenant_id`` and
``tenant_slug``.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, status
from jose import JWTError, jwt

from src.app.config import get_settings

logger = logging.getLogger(__name__)


def decode_token(token: str) -> dict | None:
    """Decode a JWT, returning its claims or None when it does not verify."""
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError as e:
        logger.debug("JWT rejected: %s", e)
        return None


def verify_token(token: str) -> dict:
    """Decode and validate an access token.

    Args:
        token: The JWT string.

    Returns:
        The decoded payload dict.

    Raises:
        HTTPException(401): If the token is invalid, expired, or has no subject.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    payload = decode_token(token)
    if payload is None:
        raise credentials_exception
    if payload.get("type", "access") != "access":
        raise credentials_exception
    if not payload.get("sub"):
        raise credentials_exception
    return payload


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer ...`` header value."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[7:]
