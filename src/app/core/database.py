"""Async SQLAlchemy engine with multi-tenant schema isolation.

Provides:
- TenantBase: Declarative base for the governance tables (placeholder schema="tenant")
- get_tenant_session(): Session mapped onto the current tenant's schema, with
  the RLS tenant id and a bounded row-lock wait set on the connection
- list_governance_schemas(): Tenant schemas holding governance tables and
  their Alembic revision, for readiness checks
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import MetaData, event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.app.config import get_settings
from src.app.core.tenant import get_current_tenant

# Table whose presence marks a schema as migrated for governance
MARKER_TABLE = "deal_enforcement_events"

_engine: AsyncEngine | None = None


def sync_database_url(url: str | None = None) -> str:
    """DATABASE_URL with the async driver removed, for Alembic's sync engine."""
    return (url or get_settings().DATABASE_URL).replace("+asyncpg", "")


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
        )

        # Session settings must not survive into another tenant's checkout
        @event.listens_for(_engine.sync_engine, "checkout")
        def reset_session_settings(dbapi_conn: Any, connection_record: Any, connection_proxy: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("RESET ALL")
            cursor.close()

    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────

tenant_metadata = MetaData(schema="tenant")


class TenantBase(DeclarativeBase):
    """Base class for governance tables, which all live in the tenant's schema.

    The placeholder schema "tenant" is remapped at runtime via
    schema_translate_map (e.g. to "tenant_acme").
    """

    metadata = tenant_metadata


# ── Sessions ────────────────────────────────────────────────────────────────


async def get_tenant_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the current tenant's schema.

    Deal writers serialize on SELECT ... FOR UPDATE; lock_timeout bounds how
    long a second writer waits before its statement fails.
    """
    tenant = get_current_tenant()
    settings = get_settings()

    async with get_engine().connect() as conn:
        conn = await conn.execution_options(
            schema_translate_map={"tenant": tenant.schema_name}
        )
        await conn.execute(
            text(
                "SELECT set_config('app.current_tenant_id', :tid, false), "
                "set_config('lock_timeout', :lock_timeout, false)"
            ),
            {"tid": tenant.tenant_id, "lock_timeout": f"{settings.DB_LOCK_TIMEOUT_MS}ms"},
        )
        await conn.commit()

        async with AsyncSession(bind=conn, expire_on_commit=False) as session:
            yield session


async def list_governance_schemas() -> dict[str, str | None]:
    """Map each tenant schema holding governance tables to its Alembic revision."""
    async with get_engine().connect() as conn:
        result = await conn.execute(
            text(
                "SELECT table_schema FROM information_schema.tables "
                "WHERE table_name = :marker AND table_schema LIKE 'tenant%' "
                "ORDER BY table_schema"
            ),
            {"marker": MARKER_TABLE},
        )
        schemas = [row[0] for row in result]

        revisions: dict[str, str | None] = {}
        for schema in schemas:
            version = await conn.execute(
                text(f'SELECT version_num FROM "{schema}".alembic_version')
            )
            revisions[schema] = version.scalar_one_or_none()
        return revisions


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
