"""Structured request logging for the governance API.

Each request produces one ``http.request_completed`` (or ``http.request_failed``)
event carrying method, path, status, duration, tenant and caller, plus the
deal id and governance resource parsed from /api/v1/deals/{deal_id}/{resource}.
Enforcement blocks (423) are flagged with ``blocked=True`` so they can be
filtered out of ordinary client errors.

The request id is taken from an incoming X-Request-ID header when present,
otherwise generated, and is echoed on the response.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.app.config import Environment, get_settings
from src.app.core.security import bearer_token, decode_token

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_DEAL_PATH = re.compile(r"^/api/v1/deals/(?P<deal_id>[^/]+)(?:/(?P<resource>[^/]+))?")
_MAX_REQUEST_ID = 128


def configure_structlog() -> None:
    """JSON logs in production, console rendering elsewhere."""
    settings = get_settings()

    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.ENVIRONMENT == Environment.production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def governance_target(path: str) -> dict[str, str | None]:
    """Extract deal_id and resource from a governance path ({} otherwise)."""
    match = _DEAL_PATH.match(path)
    if match is None:
        return {}
    return {"deal_id": match["deal_id"], "resource": match["resource"] or "deal"}


def _caller(request: Request) -> tuple[str | None, str | None]:
    """Best-effort (tenant_id, user_id); the tenant middleware does the real check."""
    tenant_id = request.headers.get("X-Tenant-ID")
    user_id = None
    token = bearer_token(request.headers.get("Authorization"))
    if token is not None:
        payload = decode_token(token)
        if payload is not None:
            user_id = payload.get("sub")
            tenant_id = payload.get("tenant_id") or tenant_id
    return tenant_id, user_id


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request once, with governance context and timing.

    The request id and deal id are bound to structlog's contextvars for the
    duration of the request, so service-level events carry them too.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        incoming = request.headers.get(REQUEST_ID_HEADER, "")
        request_id = incoming[:_MAX_REQUEST_ID] or str(uuid.uuid4())
        tenant_id, user_id = _caller(request)
        fields: dict[str, Any] = {
            "method": request.method,
            "path": request.url.path,
            "tenant_id": tenant_id,
            "user_id": user_id,
            **governance_target(request.url.path),
        }

        start = time.monotonic()
        with structlog.contextvars.bound_contextvars(
            request_id=request_id, deal_id=fields.get("deal_id")
        ):
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "http.request_failed",
                    status_code=500,
                    duration_ms=round((time.monotonic() - start) * 1000, 2),
                    **fields,
                )
                raise

            status_code = response.status_code
            if status_code >= 500:
                log = logger.error
            elif status_code >= 400:
                log = logger.warning
            else:
                log = logger.info
            log(
                "http.request_completed",
                status_code=status_code,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
                blocked=status_code == 423,
                **fields,
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
