"""REST API endpoints for deal governance.

Exposes the Evidence Ledger, close plans, risk history, the Enforcement Gate,
and proof packs under /api/v1/deals/{deal_id}/..., plus the gated deal PATCH. All
endpoints require authentication and tenant context, following the patterns
of the other v1 routers. Services are read from app.state.

Governance failures propagate as GovernanceError subclasses and are rendered
by the application's exception handlers as {"kind", "message"}. Amounts in
micros travel as decimal strings.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from src.app.api.deps import get_caller, get_tenant
from src.app.core.tenant import TenantContext
from src.app.governance.errors import ValidationError, parse_enum
from src.app.governance.schemas import (
    AmountChange,
    CallerIdentity,
    ClosePlan,
    ClosePlanItem,
    ClosePlanItemSpec,
    DealRead,
    DealStage,
    EnforcementEvent,
    EnforcementReasonCode,
    EnforcementState,
    EvidenceRecord,
    ForecastCategory,
    ForecastChange,
    IntegrityReport,
    ProofPack,
    RiskScore,
    RiskState,
    StageChange,
    format_micros,
    parse_micros,
)

router = APIRouter(prefix="/api/v1/deals", tags=["governance"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class EvidenceUpsertRequest(BaseModel):
    """Create or replace the evidence record for one category."""

    category: str
    status: str
    evidence_refs: list[str] = Field(default_factory=list)
    notes: str | None = None


class ClosePlanRequest(BaseModel):
    """Regenerate the close plan; ``items`` overrides derivation when present."""

    target_close_date: datetime | None = None
    items: list[ClosePlanItemSpec] | None = None
    expected_version: int | None = Field(default=None, ge=0)


class ClosePlanItemUpdateRequest(BaseModel):
    status: str
    completed_at: datetime | None = None


class EnforcementUpdateRequest(BaseModel):
    state: str
    reason_code: str | None = None


class ProofPackRequest(BaseModel):
    executive_summary: str | None = None


class DealPatchRequest(BaseModel):
    """Gated deal fields. Omitted fields are left unchanged."""

    stage: str | None = None
    forecast: str | None = None
    amount_micros: str | int | None = None


# ── Response Schemas ─────────────────────────────────────────────────────────


class DealResponse(BaseModel):
    """Governance view of a deal; amount_micros as a decimal string."""

    id: str
    name: str
    account_name: str | None = None
    stage: DealStage
    stage_entered_at: datetime | None = None
    forecast: ForecastCategory
    close_date: datetime | None = None
    amount_micros: str | None = None
    currency: str
    enforcement_state: EnforcementState
    frozen_reason_code: EnforcementReasonCode | None = None
    version: int


class EnforcementStatusResponse(BaseModel):
    integrity: IntegrityReport
    events: list[EnforcementEvent] = Field(default_factory=list)


class EnforcementTransitionResponse(BaseModel):
    deal: DealResponse
    event: EnforcementEvent | None = None


class ProofPackResponse(BaseModel):
    """Proof pack snapshot; deal_value_micros as a decimal string."""

    id: str
    deal_id: str
    deal_name: str
    account_name: str | None = None
    deal_value_micros: str | None = None
    stage: DealStage
    close_date: datetime | None = None
    evidence_snapshot: list[dict[str, Any]] = Field(default_factory=list)
    stakeholder_snapshot: list[dict[str, Any]] = Field(default_factory=list)
    activity_summary: dict[str, Any] = Field(default_factory=dict)
    win_probability: int
    risk_score: int | None = None
    risk_state: RiskState | None = None
    executive_summary: str
    generated_by_id: str
    generated_by_name: str | None = None
    generated_at: datetime


# ── Dependency Injection Helper ──────────────────────────────────────────────


def _get_service(request: Request, name: str) -> Any:
    """Retrieve a governance service from app.state, 503 if not available."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deal governance not initialized",
        )
    return service


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _deal_to_response(deal: DealRead) -> DealResponse:
    return DealResponse(
        id=deal.id,
        name=deal.name,
        account_name=deal.account_name,
        stage=deal.stage,
        stage_entered_at=deal.stage_entered_at,
        forecast=deal.forecast,
        close_date=deal.close_date,
        amount_micros=format_micros(deal.amount_micros),
        currency=deal.currency,
        enforcement_state=deal.enforcement_state,
        frozen_reason_code=deal.frozen_reason_code,
        version=deal.version,
    )


def _proof_pack_to_response(pack: ProofPack) -> ProofPackResponse:
    data = pack.model_dump()
    data["deal_value_micros"] = format_micros(pack.deal_value_micros)
    return ProofPackResponse(**data)


# ── Evidence Endpoints ───────────────────────────────────────────────────────


@router.get("/{deal_id}/evidence", response_model=list[EvidenceRecord])
async def read_evidence(
    deal_id: str,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    tenant: TenantContext = Depends(get_tenant),
) -> list[EvidenceRecord]:
    """Return one evidence entry per category (MISSING when unrecorded)."""
    ledger = _get_service(request, "evidence_ledger")
    return await ledger.read_evidence(tenant.tenant_id, deal_id)


@router.put("/{deal_id}/evidence", response_model=EvidenceRecord)
async def upsert_evidence(
    deal_id: str,
    body: EvidenceUpsertRequest,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    tenant: TenantContext = Depends(get_tenant),
) -> EvidenceRecord:
    """Create or replace the evidence record for one category."""
    ledger = _get_service(request, "evidence_ledger")
    return await ledger.upsert_evidence(
        tenant.tenant_id,
        deal_id,
        body.category,
        body.status,
        refs=body.evidence_refs,
        notes=body.notes,
        editor_id=caller.id,
    )


# ── Close Plan Endpoints ─────────────────────────────────────────────────────


@router.get("/{deal_id}/close-plan", response_model=ClosePlan | None)
async def get_close_plan(
    deal_id: str,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    tenant: TenantContext = Depends(get_tenant),
) -> ClosePlan | None:
    """Return the deal's close plan, or null if none has been generated."""
    generator = _get_service(request, "close_plan_generator")
    return await generator.get_close_plan(tenant.tenant_id, deal_id)


@router.post("/{deal_id}/close-plan", response_model=ClosePlan)
async def generate_close_plan(
    deal_id: str,
    body: ClosePlanRequest,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    tenant: TenantContext = Depends(get_tenant),
) -> ClosePlan:
    """Replace the close plan with explicit items or items derived from gaps."""
    generator = _get_service(request, "close_plan_generator")
    return await generator.generate_close_plan(
        tenant.tenant_id,
        deal_id,
        explicit_items=body.items,
        target_close_date=body.target_close_date,
        expected_version=body.expected_version,
    )


@router.patch("/{deal_id}/close-plan/items/{item_id}", response_model=ClosePlanItem)
async def update_close_plan_item(
    deal_id: str,
    item_id: str,
    body: ClosePlanItemUpdateRequest,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    tenant: TenantContext = Depends(get_tenant),
) -> ClosePlanItem:
    """Update one close plan item's status."""
    generator = _get_service(request, "close_plan_generator")
    return await generator.update_close_plan_item(
        tenant.tenant_id,
        deal_id,
        item_id,
        body.status,
        completed_at=body.completed_at,
    )


# ── Risk Endpoints ───────────────────────────────────────────────────────────


@router.post("/{deal_id}/risk-scores", response_model=RiskScore, status_code=201)
async def compute_risk_score(
    deal_id: str,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    tenant: TenantContext = Depends(get_tenant),
) -> RiskScore:
    """Score the deal now and append the result to its risk history."""
    service = _get_service(request, "risk_service")
    return await service.compute_risk_score(tenant.tenant_id, deal_id)


@router.get("/{deal_id}/risk-scores", response_model=list[RiskScore])
async def list_risk_scores(
    deal_id: str,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    tenant: TenantContext = Depends(get_tenant),
) -> list[RiskScore]:
    """Full risk history, newest first."""
    service = _get_service(request, "risk_service")
    return await service.list_risk_scores(tenant.tenant_id, deal_id)


@router.get("/{deal_id}/risk-scores/latest", response_model=RiskScore)
async def latest_risk_score(
    deal_id: str,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    tenant: TenantContext = Depends(get_tenant),
) -> RiskScore:
    """Most recent risk score, 404 if the deal has never been scored."""
    service = _get_service(request, "risk_service")
    score = await service.latest_risk_score(tenant.tenant_id, deal_id)
    if score is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No risk score for deal: {deal_id}",
        )
    return score


# ── Enforcement Endpoints ────────────────────────────────────────────────────


@router.get("/{deal_id}/enforcement", response_model=EnforcementStatusResponse)
async def get_enforcement(
    deal_id: str,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    tenant: TenantContext = Depends(get_tenant),
) -> EnforcementStatusResponse:
    """Effective enforcement state, integrity check, and the log newest first."""
    gate = _get_service(request, "enforcement_gate")
    integrity = await gate.check_integrity(tenant.tenant_id, deal_id)
    events = await gate.list_enforcement_events(tenant.tenant_id, deal_id)
    return EnforcementStatusResponse(integrity=integrity, events=events)


@router.put("/{deal_id}/enforcement", response_model=EnforcementTransitionResponse)
async def set_enforcement_state(
    deal_id: str,
    body: EnforcementUpdateRequest,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    tenant: TenantContext = Depends(get_tenant),
) -> EnforcementTransitionResponse:
    """Freeze or clear a deal. Re-requesting the current state is a no-op."""
    gate = _get_service(request, "enforcement_gate")
    deal, event = await gate.set_enforcement_state(
        tenant.tenant_id,
        deal_id,
        body.state,
        body.reason_code,
        actor_id=caller.id,
    )
    return EnforcementTransitionResponse(deal=_deal_to_response(deal), event=event)


@router.patch("/{deal_id}", response_model=DealResponse)
async def patch_deal(
    deal_id: str,
    body: DealPatchRequest,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    tenant: TenantContext = Depends(get_tenant),
) -> DealResponse:
    """Apply gated changes to stage, forecast, and amount.

    Fails with 423 and the active reason code while the deal is FROZEN.
    """
    gate = _get_service(request, "enforcement_gate")

    changes: list[Any] = []
    if body.stage is not None:
        changes.append(StageChange(stage=parse_enum(DealStage, body.stage, "stage")))
    if body.forecast is not None:
        changes.append(
            ForecastChange(forecast=parse_enum(ForecastCategory, body.forecast, "forecast"))
        )
    if body.amount_micros is not None:
        changes.append(AmountChange(amount_micros=parse_micros(body.amount_micros)))
    if not changes:
        raise ValidationError("Provide at least one of stage, forecast, amount_micros")

    deal = await gate.apply_deal_changes(
        tenant.tenant_id, deal_id, changes, actor_id=caller.id
    )
    return _deal_to_response(deal)


# ── Proof Pack Endpoints ─────────────────────────────────────────────────────


@router.post("/{deal_id}/proof-packs", response_model=ProofPackResponse, status_code=201)
async def generate_proof_pack(
    deal_id: str,
    body: ProofPackRequest,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    tenant: TenantContext = Depends(get_tenant),
) -> ProofPackResponse:
    """Compile and persist an immutable proof pack."""
    service = _get_service(request, "proof_pack_service")
    pack = await service.generate_proof_pack(
        tenant.tenant_id, deal_id, caller, summary=body.executive_summary
    )
    return _proof_pack_to_response(pack)


@router.get("/{deal_id}/proof-packs", response_model=list[ProofPackResponse])
async def list_proof_packs(
    deal_id: str,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    tenant: TenantContext = Depends(get_tenant),
) -> list[ProofPackResponse]:
    """Proof pack history, newest first."""
    service = _get_service(request, "proof_pack_service")
    packs = await service.list_proof_packs(tenant.tenant_id, deal_id)
    return [_proof_pack_to_response(p) for p in packs]
