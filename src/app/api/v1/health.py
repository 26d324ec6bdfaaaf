"""Health check endpoints.

/health is liveness only. /health/ready reports the service ready when the
database answers, the governance services are wired onto app.state, and every
tenant schema holding governance tables is at the Alembic head revision.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import structlog
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.app.config import get_settings
from src.app.core.database import list_governance_schemas

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["health"])

GOVERNANCE_SERVICES = (
    "evidence_ledger",
    "risk_service",
    "close_plan_generator",
    "enforcement_gate",
    "proof_pack_service",
)

MIGRATIONS_DIR = Path(__file__).resolve().parents[4] / "alembic"


@lru_cache
def migration_head() -> str | None:
    """Head revision of the governance migrations shipped with this build."""
    return ScriptDirectory(str(MIGRATIONS_DIR)).get_current_head()


def readiness_report(
    missing_services: list[str],
    schema_revisions: dict[str, str | None] | None,
    head: str | None,
    database_error: str | None = None,
) -> tuple[bool, dict[str, Any]]:
    """Combine the individual checks into (ready, response body)."""
    behind = sorted(
        schema for schema, revision in (schema_revisions or {}).items() if revision != head
    )
    checks: dict[str, Any] = {
        "database": "error" if database_error else "ok",
        "services": "missing" if missing_services else "ok",
        "migrations": "behind" if behind else "ok",
        "head_revision": head,
        "tenant_schemas": len(schema_revisions or {}),
    }
    if database_error:
        checks["database_error"] = database_error
    if missing_services:
        checks["missing_services"] = missing_services
    if behind:
        checks["schemas_behind"] = behind

    ready = not (database_error or missing_services or behind)
    return ready, {"status": "ready" if ready else "degraded", "checks": checks}


@router.get("/health")
async def health_check():
    """Basic liveness check; nothing external is touched."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 when ready, 503 with the failing checks otherwise."""
    missing = [
        name for name in GOVERNANCE_SERVICES if getattr(request.app.state, name, None) is None
    ]

    revisions = None
    database_error = None
    try:
        revisions = await list_governance_schemas()
    except Exception as e:
        database_error = str(e)
        logger.warning("health.database_unavailable", error=database_error)

    ready, body = readiness_report(missing, revisions, migration_head(), database_error)
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body,
    )
