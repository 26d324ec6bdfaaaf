"""Deal governance persistence models -- tenant-scoped tables.

SQLAlchemy models using TenantBase for schema_translate_map isolation:
- DealModel, AccountModel, StakeholderModel, ActivityModel: CRM-owned tables
  this service reads (and, for DealModel, patches governance fields on)
- EvidenceModel: one row per (deal, MEDDPICC category)
- ClosePlanModel / ClosePlanItemModel: at most one plan per deal, items with a
  unique contiguous sort order
- RiskScoreModel: append-only risk history
- EnforcementEventModel: append-only enforcement log, sequenced per deal
- ProofPackModel: write-once snapshots

Enumerated columns are stored as their string value; the repository parses
them back into the closed enums on read. Money columns are BigInteger micros.

All models use the "tenant" placeholder schema, remapped at runtime to the
actual tenant schema (e.g., "tenant_acme") via schema_translate_map.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import TenantBase


# ── CRM-owned Tables ────────────────────────────────────────────────────────


class AccountModel(TenantBase):
    """Company account owning one or more deals (read only here)."""

    __tablename__ = "accounts"
    __table_args__ = ({"schema": "tenant"},)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class DealModel(TenantBase):
    """Deal owned by the surrounding CRM.

    This service only patches stage, forecast, amount, and the denormalized
    enforcement fields. The enforcement fields mirror the latest entry of
    the enforcement log and are checked against it on every gated write.
    """

    __tablename__ = "deals"
    __table_args__ = ({"schema": "tenant"},)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    account_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    stage: Mapped[str] = mapped_column(
        String(50), default="INTAKE", server_default=text("'INTAKE'")
    )
    stage_entered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    forecast: Mapped[str] = mapped_column(
        String(50), default="PIPELINE", server_default=text("'PIPELINE'")
    )
    close_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    amount_micros: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[str] = mapped_column(
        String(3), default="USD", server_default=text("'USD'")
    )
    enforcement_state: Mapped[str] = mapped_column(
        String(20), default="ACTIVE", server_default=text("'ACTIVE'")
    )
    frozen_reason_code: Mapped[str | None] = mapped_column(
        String(50), nullable=True
    )
    version: Mapped[int] = mapped_column(
        Integer, default=1, server_default=text("1")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class StakeholderModel(TenantBase):
    """Contact mapped onto a deal with a single role."""

    __tablename__ = "deal_stakeholders"
    __table_args__ = ({"schema": "tenant"},)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    contact_name: Mapped[str] = mapped_column(String(200), nullable=False)
    title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    persona: Mapped[str | None] = mapped_column(String(100), nullable=True)
    role_in_deal: Mapped[str] = mapped_column(String(50), nullable=False)
    authority_level: Mapped[int] = mapped_column(
        Integer, default=1, server_default=text("1")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class ActivityModel(TenantBase):
    """Logged touchpoint on a deal (call, email, meeting, note)."""

    __tablename__ = "activities"
    __table_args__ = ({"schema": "tenant"},)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


# ── Evidence Ledger ─────────────────────────────────────────────────────────


class EvidenceModel(TenantBase):
    """Qualification evidence for one MEDDPICC category of a deal.

    Exactly one row per (deal_id, category), enforced by unique constraint
    so that upserts collapse onto the same record.
    """

    __tablename__ = "deal_evidence"
    __table_args__ = (
        UniqueConstraint(
            "deal_id",
            "category",
            name="uq_deal_evidence_deal_category",
        ),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), default="MISSING", server_default=text("'MISSING'")
    )
    evidence_refs: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_updated_by_id: Mapped[str | None] = mapped_column(
        String(200), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


# ── Close Plans ─────────────────────────────────────────────────────────────


class ClosePlanModel(TenantBase):
    """At most one close plan per deal; version bumps on every replace."""

    __tablename__ = "close_plans"
    __table_args__ = (
        UniqueConstraint("deal_id", name="uq_close_plan_deal"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    target_close_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    version: Mapped[int] = mapped_column(
        Integer, default=1, server_default=text("1")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class ClosePlanItemModel(TenantBase):
    """Remediation item within a close plan; sort_order unique per plan."""

    __tablename__ = "close_plan_items"
    __table_args__ = (
        UniqueConstraint(
            "plan_id",
            "sort_order",
            name="uq_close_plan_item_plan_order",
        ),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    plan_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    owner_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(
        String(30), default="PENDING", server_default=text("'PENDING'")
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    task_ids: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )


# ── Append-only Histories ───────────────────────────────────────────────────


class RiskScoreModel(TenantBase):
    """Risk history entry. Rows are inserted, never updated."""

    __tablename__ = "deal_risk_scores"
    __table_args__ = ({"schema": "tenant"},)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    factors: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )


class EnforcementEventModel(TenantBase):
    """Enforcement log entry, totally ordered per deal by sequence."""

    __tablename__ = "deal_enforcement_events"
    __table_args__ = (
        UniqueConstraint(
            "deal_id",
            "sequence",
            name="uq_enforcement_event_deal_sequence",
        ),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)
    capability: Mapped[str | None] = mapped_column(String(30), nullable=True)
    reason_code: Mapped[str] = mapped_column(String(50), nullable=False)
    resulting_state: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


class ProofPackModel(TenantBase):
    """Write-once proof pack snapshot."""

    __tablename__ = "proof_packs"
    __table_args__ = ({"schema": "tenant"},)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    deal_name: Mapped[str] = mapped_column(String(300), nullable=False)
    account_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    deal_value_micros: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    stage: Mapped[str] = mapped_column(String(50), nullable=False)
    close_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    evidence_snapshot: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    stakeholder_snapshot: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    activity_summary: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    win_probability: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    executive_summary: Mapped[str] = mapped_column(Text, nullable=False)
    generated_by_id: Mapped[str] = mapped_column(String(200), nullable=False)
    generated_by_name: Mapped[str | None] = mapped_column(
        String(200), nullable=True
    )
    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
