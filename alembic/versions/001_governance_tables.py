"""Create deal governance tables.

Revision ID: 001_governance
Revises:
Create Date: 2026-10-18

Creates the tenant-schema tables for deal governance:
- accounts, deals, deal_stakeholders, activities: CRM-owned rows this
  service reads (deals also carry the denormalized enforcement fields)
- deal_evidence: one row per (deal, MEDDPICC category)
- close_plans / close_plan_items: one plan per deal, ordered items
- deal_risk_scores: append-only risk history
- deal_enforcement_events: append-only enforcement log, unique per (deal, sequence)
- proof_packs: write-once snapshots

All tables include RLS policies for tenant isolation. No foreign key
constraints (application-level referential integrity via repository).
"""

from typing import Sequence, Union

from alembic import context, op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_governance"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TABLES = (
    "accounts",
    "deals",
    "deal_stakeholders",
    "activities",
    "deal_evidence",
    "close_plans",
    "close_plan_items",
    "deal_risk_scores",
    "deal_enforcement_events",
    "proof_packs",
)


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _created_at_column() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def _enable_rls(schema: str, table: str) -> None:
    op.execute(f'ALTER TABLE "{schema}".{table} ENABLE ROW LEVEL SECURITY')
    op.execute(f'ALTER TABLE "{schema}".{table} FORCE ROW LEVEL SECURITY')
    op.execute(f"""
        CREATE POLICY tenant_isolation ON "{schema}".{table}
        FOR ALL
        USING (tenant_id::text = current_setting('app.current_tenant_id', true))
        WITH CHECK (tenant_id::text = current_setting('app.current_tenant_id', true))
    """)


def _target_schema() -> str:
    """Schema resolved by env.py; falls back to -x schema for direct runs."""
    schema = context.config.attributes.get("schema")
    if schema:
        return schema
    return context.get_x_argument(as_dictionary=True).get("schema", "tenant")


def upgrade() -> None:
    schema = _target_schema()

    # ── CRM-owned tables ────────────────────────────────────────────────

    op.create_table(
        "accounts",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        _created_at_column(),
        schema="tenant",
    )

    op.create_table(
        "deals",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("account_id", UUID(as_uuid=True), nullable=True),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column(
            "stage",
            sa.String(50),
            server_default=sa.text("'INTAKE'"),
            nullable=False,
        ),
        sa.Column("stage_entered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "forecast",
            sa.String(50),
            server_default=sa.text("'PIPELINE'"),
            nullable=False,
        ),
        sa.Column("close_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("amount_micros", sa.BigInteger(), nullable=True),
        sa.Column(
            "currency",
            sa.String(3),
            server_default=sa.text("'USD'"),
            nullable=False,
        ),
        sa.Column(
            "enforcement_state",
            sa.String(20),
            server_default=sa.text("'ACTIVE'"),
            nullable=False,
        ),
        sa.Column("frozen_reason_code", sa.String(50), nullable=True),
        sa.Column(
            "version",
            sa.Integer(),
            server_default=sa.text("1"),
            nullable=False,
        ),
        _created_at_column(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        schema="tenant",
    )
    op.execute(
        f'CREATE INDEX idx_deals_tenant_account '
        f'ON "{schema}".deals(tenant_id, account_id)'
    )

    op.create_table(
        "deal_stakeholders",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("contact_name", sa.String(200), nullable=False),
        sa.Column("title", sa.String(200), nullable=True),
        sa.Column("persona", sa.String(100), nullable=True),
        sa.Column("role_in_deal", sa.String(50), nullable=False),
        sa.Column(
            "authority_level",
            sa.Integer(),
            server_default=sa.text("1"),
            nullable=False,
        ),
        _created_at_column(),
        schema="tenant",
    )
    op.execute(
        f'CREATE INDEX idx_deal_stakeholders_deal '
        f'ON "{schema}".deal_stakeholders(tenant_id, deal_id)'
    )

    op.create_table(
        "activities",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        schema="tenant",
    )
    op.execute(
        f'CREATE INDEX idx_activities_deal_occurred '
        f'ON "{schema}".activities(tenant_id, deal_id, occurred_at DESC)'
    )

    # ── deal_evidence table ─────────────────────────────────────────────

    op.create_table(
        "deal_evidence",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("category", sa.String(50), nullable=False),
        sa.Column(
            "status",
            sa.String(30),
            server_default=sa.text("'MISSING'"),
            nullable=False,
        ),
        sa.Column(
            "evidence_refs",
            sa.JSON(),
            server_default=sa.text("'[]'::json"),
            nullable=False,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("last_updated_by_id", sa.String(200), nullable=True),
        _created_at_column(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "deal_id", "category", name="uq_deal_evidence_deal_category"
        ),
        schema="tenant",
    )

    # ── close plan tables ───────────────────────────────────────────────

    op.create_table(
        "close_plans",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("target_close_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "version",
            sa.Integer(),
            server_default=sa.text("1"),
            nullable=False,
        ),
        _created_at_column(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("deal_id", name="uq_close_plan_deal"),
        schema="tenant",
    )

    op.create_table(
        "close_plan_items",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("plan_id", UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(50), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("owner_id", sa.String(200), nullable=True),
        sa.Column(
            "status",
            sa.String(30),
            server_default=sa.text("'PENDING'"),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "task_ids",
            sa.JSON(),
            server_default=sa.text("'[]'::json"),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "plan_id", "sort_order", name="uq_close_plan_item_plan_order"
        ),
        schema="tenant",
    )

    # ── append-only histories ───────────────────────────────────────────

    op.create_table(
        "deal_risk_scores",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(20), nullable=False),
        sa.Column(
            "factors",
            sa.JSON(),
            server_default=sa.text("'{}'::json"),
            nullable=False,
        ),
        schema="tenant",
    )
    op.execute(
        f'CREATE INDEX idx_deal_risk_scores_deal_computed '
        f'ON "{schema}".deal_risk_scores(tenant_id, deal_id, computed_at DESC)'
    )

    op.create_table(
        "deal_enforcement_events",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(30), nullable=False),
        sa.Column("capability", sa.String(30), nullable=True),
        sa.Column("reason_code", sa.String(50), nullable=False),
        sa.Column("resulting_state", sa.String(20), nullable=False),
        sa.Column("actor_id", sa.String(200), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "deal_id", "sequence", name="uq_enforcement_event_deal_sequence"
        ),
        schema="tenant",
    )

    op.create_table(
        "proof_packs",
        _id_column(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("deal_name", sa.String(300), nullable=False),
        sa.Column("account_name", sa.String(300), nullable=True),
        sa.Column("deal_value_micros", sa.BigInteger(), nullable=True),
        sa.Column("stage", sa.String(50), nullable=False),
        sa.Column("close_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "evidence_snapshot",
            sa.JSON(),
            server_default=sa.text("'[]'::json"),
            nullable=False,
        ),
        sa.Column(
            "stakeholder_snapshot",
            sa.JSON(),
            server_default=sa.text("'[]'::json"),
            nullable=False,
        ),
        sa.Column(
            "activity_summary",
            sa.JSON(),
            server_default=sa.text("'{}'::json"),
            nullable=False,
        ),
        sa.Column("win_probability", sa.Integer(), nullable=False),
        sa.Column("risk_score", sa.Integer(), nullable=True),
        sa.Column("risk_state", sa.String(20), nullable=True),
        sa.Column("executive_summary", sa.Text(), nullable=False),
        sa.Column("generated_by_id", sa.String(200), nullable=False),
        sa.Column("generated_by_name", sa.String(200), nullable=True),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False),
        schema="tenant",
    )
    op.execute(
        f'CREATE INDEX idx_proof_packs_deal_generated '
        f'ON "{schema}".proof_packs(tenant_id, deal_id, generated_at DESC)'
    )

    for table in TABLES:
        _enable_rls(schema, table)


def downgrade() -> None:
    schema = _target_schema()

    for table in reversed(TABLES):
        op.execute(f'DROP POLICY IF EXISTS tenant_isolation ON "{schema}".{table}')
        op.drop_table(table, schema="tenant")
