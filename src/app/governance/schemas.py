"""Pydantic schemas and closed enumerations for deal governance.

Defines every structured type that crosses a module boundary:
- Enums: EvidenceCategory, EvidenceStatus, DealStage, ForecastCategory,
  EnforcementState, EnforcementReasonCode, EnforcementEventType,
  ClosePlanItemStatus, RiskState, StakeholderRole, DealCapability
- Collaborator reads: DealRead, StakeholderRead, ActivityRead, CallerIdentity
- Evidence Ledger: EvidenceRecord
- Close plans: ClosePlanItemSpec, ClosePlanItem, ClosePlan
- Risk history: RiskAssessment, RiskScore
- Enforcement log: EnforcementEvent, IntegrityReport
- Deal mutations: StageChange, ForecastChange, AmountChange (DealChange union)
- Snapshots: ProofPack

All enums are closed: constructing one from an unrecognized string raises,
and services convert that into a ValidationError before any write.
Monetary amounts are integer micros; parse_micros() is the single entry point
for amounts arriving as strings from an external boundary.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from src.app.governance.errors import ValidationError


# ── Enums ───────────────────────────────────────────────────────────────────


class EvidenceCategory(str, Enum):
    """MEDDPICC qualification dimensions tracked per deal (closed set)."""

    METRICS = "METRICS"
    ECONOMIC_BUYER = "ECONOMIC_BUYER"
    DECISION_CRITERIA = "DECISION_CRITERIA"
    DECISION_PROCESS = "DECISION_PROCESS"
    PAPER_PROCESS = "PAPER_PROCESS"
    IDENTIFY_PAIN = "IDENTIFY_PAIN"
    CHAMPION = "CHAMPION"
    COMPETITION = "COMPETITION"


class EvidenceStatus(str, Enum):
    """Strength of the evidence behind a category, weakest first."""

    MISSING = "MISSING"
    CLAIMED = "CLAIMED"
    EVIDENCED = "EVIDENCED"
    BUYER_CONFIRMED = "BUYER_CONFIRMED"


class DealStage(str, Enum):
    """Pipeline stages of a deal."""

    INTAKE = "INTAKE"
    QUALIFIED = "QUALIFIED"
    DISCOVERY = "DISCOVERY"
    SOLUTION_FIT = "SOLUTION_FIT"
    POV = "POV"
    PROPOSAL = "PROPOSAL"
    NEGOTIATION = "NEGOTIATION"
    LEGAL = "LEGAL"
    PROCUREMENT = "PROCUREMENT"
    COMMIT = "COMMIT"
    CLOSED_WON = "CLOSED_WON"
    CLOSED_LOST = "CLOSED_LOST"


CLOSED_STAGES: frozenset[DealStage] = frozenset(
    {DealStage.CLOSED_WON, DealStage.CLOSED_LOST}
)


class ForecastCategory(str, Enum):
    PIPELINE = "PIPELINE"
    BEST_CASE = "BEST_CASE"
    COMMIT = "COMMIT"
    CLOSED = "CLOSED"
    OMITTED = "OMITTED"


class EnforcementState(str, Enum):
    ACTIVE = "ACTIVE"
    FROZEN = "FROZEN"


class EnforcementReasonCode(str, Enum):
    """Why a deal was frozen or released."""

    DRI_RED_REQUIRES_ESCALATION = "DRI_RED_REQUIRES_ESCALATION"
    DRI_BLACK_AUTO_HALT = "DRI_BLACK_AUTO_HALT"
    POLICY_VIOLATION_HARD = "POLICY_VIOLATION_HARD"
    POLICY_VIOLATION_SOFT = "POLICY_VIOLATION_SOFT"
    MANUAL_FREEZE = "MANUAL_FREEZE"
    MANUAL_CLEAR = "MANUAL_CLEAR"
    REMEDIATION_COMPLETE = "REMEDIATION_COMPLETE"


# Codes that may put a deal into FROZEN vs. codes that may release it.
FREEZE_REASON_CODES: frozenset[EnforcementReasonCode] = frozenset(
    {
        EnforcementReasonCode.DRI_RED_REQUIRES_ESCALATION,
        EnforcementReasonCode.DRI_BLACK_AUTO_HALT,
        EnforcementReasonCode.POLICY_VIOLATION_HARD,
        EnforcementReasonCode.POLICY_VIOLATION_SOFT,
        EnforcementReasonCode.MANUAL_FREEZE,
    }
)
CLEAR_REASON_CODES: frozenset[EnforcementReasonCode] = frozenset(
    {
        EnforcementReasonCode.MANUAL_CLEAR,
        EnforcementReasonCode.REMEDIATION_COMPLETE,
    }
)


class EnforcementEventType(str, Enum):
    FREEZE = "FREEZE"
    UNFREEZE = "UNFREEZE"
    MUTATION_BLOCKED = "MUTATION_BLOCKED"


class ClosePlanItemStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    BLOCKED = "BLOCKED"


class RiskState(str, Enum):
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"


class StakeholderRole(str, Enum):
    """Role a stakeholder plays in the deal."""

    ECONOMIC_BUYER = "ECONOMIC_BUYER"
    CHAMPION = "CHAMPION"
    TECH_EVAL = "TECH_EVAL"
    COACH = "COACH"
    INFLUENCER = "INFLUENCER"
    END_USER = "END_USER"
    BLOCKER = "BLOCKER"
    LEGAL = "LEGAL"
    PROCUREMENT = "PROCUREMENT"


class DealCapability(str, Enum):
    """Deal mutations gated by the enforcement layer."""

    STAGE_CHANGE = "STAGE_CHANGE"
    FORECAST_CHANGE = "FORECAST_CHANGE"
    AMOUNT_CHANGE = "AMOUNT_CHANGE"


# ── Money ───────────────────────────────────────────────────────────────────


def _is_ascii_integer(text: str) -> bool:
    digits = text.removeprefix("-")
    return digits.isascii() and digits.isdecimal()


def parse_micros(value: Any, field: str = "amount_micros") -> int:
    """Parse an integer-micros amount from an int or a decimal digit string.

    Floats are rejected outright to keep money out of binary floating point.

    Raises:
        ValidationError: If the value is not a non-negative integer.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer amount in micros")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and _is_ascii_integer(value.strip()):
        parsed = int(value.strip())
    else:
        raise ValidationError(
            f"{field} must be an integer amount in micros, got {value!r}"
        )
    if parsed < 0:
        raise ValidationError(f"{field} must be non-negative, got {parsed}")
    return parsed


def format_micros(value: int | None) -> str | None:
    """Render micros as a string for transmission at an external boundary."""
    return str(value) if value is not None else None


# ── Collaborator Reads ──────────────────────────────────────────────────────


class CallerIdentity(BaseModel):
    """Authenticated caller, as asserted by the external identity provider."""

    id: str
    display_name: str | None = None


class DealRead(BaseModel):
    """Governance-relevant view of a deal owned by the surrounding CRM."""

    id: str
    tenant_id: str
    account_id: str | None = None
    account_name: str | None = None
    name: str
    stage: DealStage
    stage_entered_at: datetime | None = None
    forecast: ForecastCategory = ForecastCategory.PIPELINE
    close_date: datetime | None = None
    amount_micros: int | None = Field(default=None, ge=0)
    currency: str = "USD"
    enforcement_state: EnforcementState = EnforcementState.ACTIVE
    frozen_reason_code: EnforcementReasonCode | None = None
    version: int = 1
    updated_at: datetime | None = None


class StakeholderRead(BaseModel):
    id: str
    deal_id: str
    contact_name: str
    title: str | None = None
    persona: str | None = None
    role_in_deal: StakeholderRole
    authority_level: int = Field(default=1, ge=0)


class ActivityRead(BaseModel):
    id: str
    deal_id: str
    type: str
    summary: str | None = None
    occurred_at: datetime


# ── Evidence Ledger ─────────────────────────────────────────────────────────


class EvidenceRecord(BaseModel):
    """One (deal, category) evidence entry.

    ``id`` is None for entries synthesized by the ledger for categories that
    have no stored record yet.
    """

    id: str | None = None
    deal_id: str
    category: EvidenceCategory
    status: EvidenceStatus = EvidenceStatus.MISSING
    evidence_refs: list[str] = Field(default_factory=list)
    notes: str | None = None
    last_updated_by_id: str | None = None
    updated_at: datetime | None = None


# ── Close Plans ─────────────────────────────────────────────────────────────


class ClosePlanItemSpec(BaseModel):
    """Item content as supplied by a caller or emitted by the generator.

    Unknown keys (such as the id and sort_order of a stored item being
    resubmitted) are ignored.
    """

    title: str = Field(min_length=1)
    description: str | None = None
    category: str | None = None
    due_date: datetime | None = None
    owner_id: str | None = None
    task_ids: list[str] = Field(default_factory=list)
    status: ClosePlanItemStatus = ClosePlanItemStatus.PENDING
    completed_at: datetime | None = None


class ClosePlanItem(ClosePlanItemSpec):
    id: str
    sort_order: int = Field(ge=0)


class ClosePlan(BaseModel):
    id: str
    deal_id: str
    target_close_date: datetime | None = None
    version: int = 1
    items: list[ClosePlanItem] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Risk History ────────────────────────────────────────────────────────────


class RiskAssessment(BaseModel):
    """Output of the pure scorer, before it is appended to history."""

    model_config = ConfigDict(frozen=True)

    total: int = Field(ge=0, le=100)
    state: RiskState
    factors: dict[str, float] = Field(default_factory=dict)


class RiskScore(BaseModel):
    """Immutable risk history entry. The current score is the newest entry."""

    model_config = ConfigDict(frozen=True)

    id: str
    deal_id: str
    computed_at: datetime
    total: int = Field(ge=0, le=100)
    state: RiskState
    factors: dict[str, float] = Field(default_factory=dict)


# ── Enforcement Log ─────────────────────────────────────────────────────────


class EnforcementEvent(BaseModel):
    """Append-only enforcement audit entry, totally ordered per deal."""

    model_config = ConfigDict(frozen=True)

    id: str
    deal_id: str
    sequence: int = Field(ge=1)
    event_type: EnforcementEventType
    capability: DealCapability | None = None
    reason_code: EnforcementReasonCode
    resulting_state: EnforcementState
    actor_id: str | None = None
    created_at: datetime


class IntegrityReport(BaseModel):
    """Comparison of the deal's denormalized enforcement field against the log."""

    deal_id: str
    recorded_state: EnforcementState
    recorded_reason_code: EnforcementReasonCode | None = None
    effective_state: EnforcementState
    effective_reason_code: EnforcementReasonCode | None = None
    event_count: int = 0
    consistent: bool = True


# ── Deal Mutations ──────────────────────────────────────────────────────────


class StageChange(BaseModel):
    kind: Literal["stage"] = "stage"
    capability: ClassVar[DealCapability] = DealCapability.STAGE_CHANGE
    stage: DealStage

    def field_updates(self, now: datetime) -> dict[str, Any]:
        return {"stage": self.stage, "stage_entered_at": now}


class ForecastChange(BaseModel):
    kind: Literal["forecast"] = "forecast"
    capability: ClassVar[DealCapability] = DealCapability.FORECAST_CHANGE
    forecast: ForecastCategory

    def field_updates(self, now: datetime) -> dict[str, Any]:
        return {"forecast": self.forecast}


class AmountChange(BaseModel):
    kind: Literal["amount"] = "amount"
    capability: ClassVar[DealCapability] = DealCapability.AMOUNT_CHANGE
    amount_micros: int = Field(ge=0)

    def field_updates(self, now: datetime) -> dict[str, Any]:
        return {"amount_micros": self.amount_micros}


DealChange = Annotated[
    Union[StageChange, ForecastChange, AmountChange],
    Field(discriminator="kind"),
]


# ── Snapshots ───────────────────────────────────────────────────────────────


class ProofPack(BaseModel):
    """Write-once, point-in-time compilation of a deal's qualification state."""

    model_config = ConfigDict(frozen=True)

    id: str
    deal_id: str
    deal_name: str
    account_name: str | None = None
    deal_value_micros: int | None = Field(default=None, ge=0)
    stage: DealStage
    close_date: datetime | None = None
    evidence_snapshot: list[dict[str, Any]] = Field(default_factory=list)
    stakeholder_snapshot: list[dict[str, Any]] = Field(default_factory=list)
    activity_summary: dict[str, Any] = Field(default_factory=dict)
    win_probability: int = Field(ge=0, le=100)
    risk_score: int | None = None
    risk_state: RiskState | None = None
    executive_summary: str
    generated_by_id: str
    generated_by_name: str | None = None
    generated_at: datetime
