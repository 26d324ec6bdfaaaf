"""Alembic environment for the governance tables.

Every governance table lives in a tenant schema. Pick the target with one of:
  alembic -x schema=tenant_acme upgrade head
  alembic -x tenant=acme upgrade head
  alembic -x tenants=acme,globex upgrade head     (online mode only)

Each schema gets its own alembic_version table, so tenants are migrated and
tracked independently. The resolved schema is handed to the migration
scripts through config.attributes["schema"].
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool, text

from src.app.core.database import TenantBase, sync_database_url
from src.app.core.tenant import schema_name_for
from src.app.governance import models  # noqa: F401  (registers tables on TenantBase)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = TenantBase.metadata


def target_schemas() -> list[str]:
    """Resolve the -x arguments into the list of schemas to migrate."""
    args = context.get_x_argument(as_dictionary=True)
    if "tenants" in args:
        return [schema_name_for(slug.strip()) for slug in args["tenants"].split(",") if slug.strip()]
    if "tenant" in args:
        return [schema_name_for(args["tenant"])]
    return [args.get("schema", "tenant")]


def run_migrations_offline() -> None:
    """Emit SQL for a single schema without connecting."""
    schemas = target_schemas()
    if len(schemas) != 1:
        raise SystemExit("Offline mode migrates one schema at a time; use -x tenant=<slug>")
    schema = schemas[0]
    config.attributes["schema"] = schema

    context.configure(
        url=sync_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        version_table_schema=schema,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Migrate each target schema in turn, one transaction per schema."""
    connectable = create_engine(sync_database_url(), poolclass=pool.NullPool)

    for schema in target_schemas():
        config.attributes["schema"] = schema
        with connectable.connect() as connection:
            # The version table is created inside the schema, so it must exist first
            connection.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema}"'))
            connection.commit()

            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                version_table_schema=schema,
                include_schemas=True,
                schema_translate_map={"tenant": schema},
            )

            with context.begin_transaction():
                context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
