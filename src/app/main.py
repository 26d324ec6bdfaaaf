"""FastAPI application factory.

Creates the app with tenant middleware, logging middleware, metrics middleware,
CORS, Sentry, governance exception handlers, lifespan wiring of the governance
services onto app.state, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException

from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.middleware.tenant import TenantAuthMiddleware
from src.app.api.v1.router import router as v1_router
from src.app.config import Settings, get_settings
from src.app.core.database import close_db, get_tenant_session
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.governance.close_plan import ClosePlanGenerator
from src.app.governance.enforcement import EnforcementGate
from src.app.governance.errors import (
    ConflictError,
    EnforcementError,
    GovernanceError,
    NotFoundError,
    ValidationError,
)
from src.app.governance.evidence import EvidenceLedger
from src.app.governance.proof_pack import ProofPackService
from src.app.governance.repository import GovernanceRepository
from src.app.governance.risk import RiskPolicy, RiskScorer, RiskScoringService

log = structlog.get_logger(__name__)

# ── Governance Wiring ───────────────────────────────────────────────────────

ERROR_STATUS: dict[type[GovernanceError], int] = {
    ValidationError: 422,
    NotFoundError: 404,
    EnforcementError: 423,
    ConflictError: 409,
}

HTTP_KIND: dict[int, str] = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    503: "unavailable",
}


def init_governance(app: FastAPI, repository: Any, settings: Settings) -> None:
    """Build the governance services over a repository and put them on app.state."""
    gate = EnforcementGate(repository)
    app.state.governance_repository = repository
    app.state.enforcement_gate = gate
    app.state.evidence_ledger = EvidenceLedger(repository)
    app.state.risk_service = RiskScoringService(
        repository,
        RiskScorer(RiskPolicy.from_settings(settings)),
        gate=gate,
        auto_freeze_on_red=settings.RISK_AUTO_FREEZE_ON_RED,
    )
    app.state.close_plan_generator = ClosePlanGenerator(repository)
    app.state.proof_pack_service = ProofPackService(
        repository, activity_limit=settings.PROOF_PACK_ACTIVITY_LIMIT
    )


def install_exception_handlers(app: FastAPI) -> None:
    """Render every failure as {"kind", "message"} with a stable status code."""

    @app.exception_handler(GovernanceError)
    async def governance_error_handler(request: Request, exc: GovernanceError) -> JSONResponse:
        status_code = next(
            (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
            400,
        )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        if errors:
            first = errors[0]
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
        else:
            message = "Invalid request"
        return JSONResponse(
            status_code=422,
            content=ValidationError(message).to_dict(),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "kind": HTTP_KIND.get(exc.status_code, "http_error"),
                "message": str(exc.detail),
            },
            headers=exc.headers,
        )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: logging, Sentry, and governance services on startup."""
    settings = get_settings()
    configure_structlog()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    init_governance(
        app,
        GovernanceRepository(session_factory=get_tenant_session),
        settings,
    )
    log.info(
        "governance.initialized",
        auto_freeze_on_red=settings.RISK_AUTO_FREEZE_ON_RED,
        green_threshold=settings.RISK_GREEN_THRESHOLD,
        yellow_threshold=settings.RISK_YELLOW_THRESHOLD,
    )

    yield

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Deal Governance API",
        version="0.1.0",
        description="Evidence, risk, close plans, enforcement, and proof packs for sales deals",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Tenant middleware (inner -- resolves tenant context from JWT/header)
    app.add_middleware(TenantAuthMiddleware)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    install_exception_handlers(app)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
