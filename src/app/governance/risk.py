"""Deterministic deal risk scoring and the append-only risk history.

Computes a 0-100 composite score (higher = healthier) from four factors:
evidence completeness, time in stage, stakeholder coverage, and schedule
slippage. The score is a pure numeric calculation over a RiskInputs snapshot;
RiskScoringService gathers the snapshot and appends one immutable history
entry per invocation.

Exports:
    EVIDENCE_STRENGTH: Per-status strength mapping shared with proof packs.
    RiskPolicy: All weights and thresholds (configurable via settings).
    RiskInputs: Snapshot of the inputs the scorer reads.
    RiskScorer: Pure scorer.
    RiskScoringService: Gathers inputs, scores, appends history.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from src.app.core.monitoring import risk_scores_total
from src.app.governance.errors import NotFoundError, ValidationError
from src.app.governance.evidence import complete_ledger
from src.app.governance.repository import GovernanceRepository
from src.app.governance.schemas import (
    CLOSED_STAGES,
    DealRead,
    DealStage,
    EvidenceRecord,
    EvidenceStatus,
    RiskAssessment,
    RiskScore,
    RiskState,
    StakeholderRead,
    StakeholderRole,
)

if TYPE_CHECKING:
    from src.app.config import Settings
    from src.app.governance.enforcement import EnforcementGate

logger = structlog.get_logger(__name__)


EVIDENCE_STRENGTH: dict[EvidenceStatus, int] = {
    EvidenceStatus.MISSING: 0,
    EvidenceStatus.CLAIMED: 40,
    EvidenceStatus.EVIDENCED: 75,
    EvidenceStatus.BUYER_CONFIRMED: 100,
}

# Expected days in each open stage before the time-in-stage penalty applies.
STAGE_BENCHMARK_DAYS: dict[DealStage, int] = {
    DealStage.INTAKE: 3,
    DealStage.QUALIFIED: 5,
    DealStage.DISCOVERY: 10,
    DealStage.SOLUTION_FIT: 7,
    DealStage.POV: 14,
    DealStage.PROPOSAL: 7,
    DealStage.NEGOTIATION: 10,
    DealStage.LEGAL: 10,
    DealStage.PROCUREMENT: 10,
    DealStage.COMMIT: 5,
}

COVERAGE_ROLES: tuple[StakeholderRole, ...] = (
    StakeholderRole.CHAMPION,
    StakeholderRole.ECONOMIC_BUYER,
)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for non-negatives."""
    return math.floor(value + 0.5)


def _whole_days(later: datetime, earlier: datetime) -> int:
    return (later - earlier).days


# ── Policy & Inputs ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RiskPolicy:
    """Weights and thresholds for the composite risk score.

    Args:
        green_threshold: Total at or above this is GREEN.
        yellow_threshold: Total at or above this is YELLOW (below green).
        evidence_weight: Multiplier on mean evidence strength (0-100).
        stage_penalty_per_day: Points lost per day beyond the stage benchmark.
        max_stage_penalty: Cap on the time-in-stage penalty.
        stakeholder_weight: Bonus per covered role, penalty per missing role.
        slippage_penalty_per_day: Points lost per day past the close date.
        max_slippage_penalty: Cap on the slippage penalty.
    """

    green_threshold: float = 70.0
    yellow_threshold: float = 40.0
    evidence_weight: float = 1.0
    stage_penalty_per_day: float = 1.0
    max_stage_penalty: float = 15.0
    stakeholder_weight: float = 5.0
    slippage_penalty_per_day: float = 2.0
    max_slippage_penalty: float = 40.0

    def __post_init__(self) -> None:
        if self.green_threshold <= self.yellow_threshold:
            raise ValidationError(
                f"green_threshold ({self.green_threshold}) must be greater than "
                f"yellow_threshold ({self.yellow_threshold})"
            )
        negatives = [
            name
            for name in (
                "evidence_weight",
                "stage_penalty_per_day",
                "max_stage_penalty",
                "stakeholder_weight",
                "slippage_penalty_per_day",
                "max_slippage_penalty",
            )
            if getattr(self, name) < 0
        ]
        if negatives:
            raise ValidationError(f"Risk weights must be non-negative: {', '.join(negatives)}")

    @classmethod
    def from_settings(cls, settings: Settings) -> RiskPolicy:
        return cls(
            green_threshold=settings.RISK_GREEN_THRESHOLD,
            yellow_threshold=settings.RISK_YELLOW_THRESHOLD,
            evidence_weight=settings.RISK_EVIDENCE_WEIGHT,
            stage_penalty_per_day=settings.RISK_STAGE_PENALTY_PER_DAY,
            max_stage_penalty=settings.RISK_MAX_STAGE_PENALTY,
            stakeholder_weight=settings.RISK_STAKEHOLDER_WEIGHT,
            slippage_penalty_per_day=settings.RISK_SLIPPAGE_PENALTY_PER_DAY,
            max_slippage_penalty=settings.RISK_MAX_SLIPPAGE_PENALTY,
        )


@dataclass(frozen=True)
class RiskInputs:
    """Point-in-time snapshot of everything the scorer reads."""

    evidence_statuses: tuple[EvidenceStatus, ...]
    stage: DealStage
    stage_entered_at: datetime | None = None
    close_date: datetime | None = None
    stakeholder_roles: frozenset[StakeholderRole] = field(default_factory=frozenset)

    @classmethod
    def from_state(
        cls,
        deal: DealRead,
        evidence: Iterable[EvidenceRecord],
        stakeholders: Iterable[StakeholderRead],
    ) -> RiskInputs:
        return cls(
            evidence_statuses=tuple(record.status for record in evidence),
            stage=deal.stage,
            stage_entered_at=deal.stage_entered_at,
            close_date=deal.close_date,
            stakeholder_roles=frozenset(s.role_in_deal for s in stakeholders),
        )


# ── Scorer ──────────────────────────────────────────────────────────────────


class RiskScorer:
    """Compute the composite risk score (0-100, higher = healthier).

    Factors:
        evidence:     mean(EVIDENCE_STRENGTH over the ledger) * evidence_weight
        stage:        -(days beyond benchmark * per_day), capped; closed stages exempt
        stakeholders: +weight per covered role, -weight per missing role
                      (CHAMPION, ECONOMIC_BUYER)
        schedule:     -(days past close date * per_day), capped; closed stages exempt

    State derivation:
        total >= green_threshold:  GREEN
        total >= yellow_threshold: YELLOW
        otherwise:                 RED
    """

    def __init__(self, policy: RiskPolicy | None = None) -> None:
        self._policy = policy or RiskPolicy()

    @property
    def policy(self) -> RiskPolicy:
        return self._policy

    # ── Factor Scorers (private) ─────────────────────────────────────────

    def _evidence_completeness(self, statuses: tuple[EvidenceStatus, ...]) -> float:
        if not statuses:
            return 0.0
        return sum(EVIDENCE_STRENGTH[s] for s in statuses) / len(statuses)

    def _days_in_stage(self, inputs: RiskInputs, now: datetime) -> int:
        if inputs.stage_entered_at is None:
            return 0
        return max(0, _whole_days(now, inputs.stage_entered_at))

    def _stage_penalty(self, inputs: RiskInputs, days_in_stage: int) -> float:
        # Closed stages have no benchmark
        benchmark = STAGE_BENCHMARK_DAYS.get(inputs.stage)
        if benchmark is None:
            return 0.0
        overdue = max(0, days_in_stage - benchmark)
        return min(
            overdue * self._policy.stage_penalty_per_day,
            self._policy.max_stage_penalty,
        )

    def _stakeholder_coverage(self, roles: frozenset[StakeholderRole]) -> float:
        weight = self._policy.stakeholder_weight
        return sum(weight if role in roles else -weight for role in COVERAGE_ROLES)

    def _days_past_close(self, inputs: RiskInputs, now: datetime) -> int:
        if inputs.close_date is None or inputs.stage in CLOSED_STAGES:
            return 0
        return max(0, _whole_days(now, inputs.close_date))

    def _slippage_penalty(self, days_past_close: int) -> float:
        return min(
            days_past_close * self._policy.slippage_penalty_per_day,
            self._policy.max_slippage_penalty,
        )

    def classify(self, total: float) -> RiskState:
        if total >= self._policy.green_threshold:
            return RiskState.GREEN
        if total >= self._policy.yellow_threshold:
            return RiskState.YELLOW
        return RiskState.RED

    # ── Main Scoring Method ──────────────────────────────────────────────

    def score(self, inputs: RiskInputs, now: datetime) -> RiskAssessment:
        """Score a snapshot of deal state at time ``now``.

        Args:
            inputs: RiskInputs snapshot.
            now: Evaluation time (timezone-aware).

        Returns:
            RiskAssessment with integer total, state, and factor breakdown.
        """
        completeness = self._evidence_completeness(inputs.evidence_statuses)
        evidence = completeness * self._policy.evidence_weight

        days_in_stage = self._days_in_stage(inputs, now)
        stage_penalty = self._stage_penalty(inputs, days_in_stage)

        coverage = self._stakeholder_coverage(inputs.stakeholder_roles)

        days_past_close = self._days_past_close(inputs, now)
        slippage = self._slippage_penalty(days_past_close)

        raw = evidence - stage_penalty + coverage - slippage
        total = round_half_up(max(0.0, min(100.0, raw)))

        factors = {
            "evidence_completeness": completeness,
            "evidence": evidence,
            "stage_penalty": -stage_penalty,
            "stakeholder_coverage": coverage,
            "schedule_slippage": -slippage,
            "days_in_stage": float(days_in_stage),
            "days_past_close": float(days_past_close),
            "green_threshold": float(self._policy.green_threshold),
            "yellow_threshold": float(self._policy.yellow_threshold),
        }
        return RiskAssessment(total=total, state=self.classify(total), factors=factors)


# ── Service ─────────────────────────────────────────────────────────────────


class RiskScoringService:
    """Compute risk scores on demand and append them to the deal's history.

    Args:
        repository: GovernanceRepository (or test double).
        scorer: RiskScorer carrying the active policy.
        gate: EnforcementGate used for the optional auto-freeze on RED.
        auto_freeze_on_red: Freeze the deal when a computed score is RED.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        repository: GovernanceRepository,
        scorer: RiskScorer | None = None,
        *,
        gate: EnforcementGate | None = None,
        auto_freeze_on_red: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._scorer = scorer or RiskScorer()
        self._gate = gate
        self._auto_freeze_on_red = auto_freeze_on_red
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _require_deal(self, tenant_id: str, deal_id: str) -> None:
        if await self._repository.get_deal(tenant_id, deal_id) is None:
            raise NotFoundError("Deal", deal_id)

    async def compute_risk_score(self, tenant_id: str, deal_id: str) -> RiskScore:
        """Score the deal's current state and append a history entry.

        Raises:
            NotFoundError: If the deal does not exist.
        """
        deal = await self._repository.get_deal(tenant_id, deal_id)
        if deal is None:
            raise NotFoundError("Deal", deal_id)

        stored = await self._repository.list_evidence(tenant_id, deal_id)
        stakeholders = await self._repository.list_stakeholders(tenant_id, deal_id)
        inputs = RiskInputs.from_state(
            deal, complete_ledger(deal_id, stored), stakeholders
        )

        now = self._clock()
        assessment = self._scorer.score(inputs, now)
        score = await self._repository.append_risk_score(
            tenant_id,
            RiskScore(
                id=str(uuid.uuid4()),
                deal_id=deal_id,
                computed_at=now,
                total=assessment.total,
                state=assessment.state,
                factors=assessment.factors,
            ),
        )
        risk_scores_total.labels(state=score.state.value).inc()

        logger.info(
            "risk.scored",
            tenant_id=tenant_id,
            deal_id=deal_id,
            total=score.total,
            state=score.state.value,
        )

        if (
            self._auto_freeze_on_red
            and self._gate is not None
            and score.state == RiskState.RED
        ):
            await self._gate.apply_risk_policy(tenant_id, deal_id, score.state)

        return score

    async def latest_risk_score(
        self, tenant_id: str, deal_id: str
    ) -> RiskScore | None:
        """Most recent history entry by computed_at, or None if never scored.

        Raises:
            NotFoundError: If the deal does not exist.
        """
        await self._require_deal(tenant_id, deal_id)
        return await self._repository.latest_risk_score(tenant_id, deal_id)

    async def list_risk_scores(self, tenant_id: str, deal_id: str) -> list[RiskScore]:
        """Full risk history, newest first."""
        await self._require_deal(tenant_id, deal_id)
        return await self._repository.list_risk_scores(tenant_id, deal_id)
