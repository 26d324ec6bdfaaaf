"""Proof Pack snapshots -- immutable point-in-time qualification artifacts.

A proof pack freezes the deal, its stored evidence, stakeholder roster,
recent activity, latest risk score, a win probability, and an executive
summary into one write-once record. There is no update path.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.app.core.monitoring import proof_packs_total
from src.app.governance.errors import NotFoundError, ValidationError
from src.app.governance.repository import GovernanceRepository
from src.app.governance.risk import EVIDENCE_STRENGTH
from src.app.governance.schemas import (
    ActivityRead,
    CallerIdentity,
    DealRead,
    EvidenceRecord,
    EvidenceStatus,
    ProofPack,
    StakeholderRead,
    StakeholderRole,
)

logger = structlog.get_logger(__name__)

GAP_STATUSES = frozenset({EvidenceStatus.MISSING, EvidenceStatus.CLAIMED})

_SECONDS_PER_DAY = 86400


def compute_win_probability(statuses: Iterable[EvidenceStatus]) -> int:
    """Mean evidence strength as an integer percentage, halves rounded up.

    Returns 0 when there is no stored evidence.
    """
    strengths = [EVIDENCE_STRENGTH[s] for s in statuses]
    if not strengths:
        return 0
    n = len(strengths)
    return (2 * sum(strengths) + n) // (2 * n)


def days_to_close(close_date: datetime, now: datetime) -> int:
    """Whole days until close, rounded up (negative once the date has passed)."""
    return math.ceil((close_date - now).total_seconds() / _SECONDS_PER_DAY)


def compose_executive_summary(
    deal: DealRead,
    win_probability: int,
    stakeholders: Iterable[StakeholderRead],
    evidence: Iterable[EvidenceRecord],
    now: datetime,
) -> str:
    """Compose the markdown executive summary for a proof pack."""
    roster = list(stakeholders)
    records = list(evidence)
    champion = next((s for s in roster if s.role_in_deal == StakeholderRole.CHAMPION), None)
    buyer = next((s for s in roster if s.role_in_deal == StakeholderRole.ECONOMIC_BUYER), None)
    validated = [r.category.value for r in records if r.status == EvidenceStatus.BUYER_CONFIRMED]
    gaps = [r.category.value for r in records if r.status in GAP_STATUSES]

    summary = f"**{deal.name}** is currently in **{deal.stage.value}** stage"
    if deal.close_date is not None:
        summary += f" with {days_to_close(deal.close_date, now)} days to target close"
    summary += f".\n\n**Win Probability:** {win_probability}%\n\n"

    if champion is not None:
        summary += f"**Champion:** {champion.contact_name}\n"
    if buyer is not None:
        summary += f"**Economic Buyer:** {buyer.contact_name}\n"

    if validated:
        summary += f"\n**Validated:** {', '.join(validated)}\n"
    if gaps:
        summary += f"\n**Gaps to Address:** {', '.join(gaps)}\n"

    return summary


# ── Snapshot Builders ───────────────────────────────────────────────────────


def _evidence_snapshot(records: list[EvidenceRecord]) -> list[dict[str, Any]]:
    return [
        {
            "category": r.category.value,
            "status": r.status.value,
            "evidence_refs": list(r.evidence_refs),
            "notes": r.notes,
            "last_updated_by_id": r.last_updated_by_id,
        }
        for r in records
    ]


def _stakeholder_snapshot(roster: list[StakeholderRead]) -> list[dict[str, Any]]:
    return [
        {
            "name": s.contact_name,
            "title": s.title,
            "persona": s.persona,
            "role_in_deal": s.role_in_deal.value,
            "authority_level": s.authority_level,
        }
        for s in roster
    ]


def _activity_summary(activities: list[ActivityRead]) -> dict[str, Any]:
    return {
        "recent_count": len(activities),
        "activities": [
            {
                "type": a.type,
                "summary": a.summary,
                "occurred_at": a.occurred_at.isoformat(),
            }
            for a in activities
        ],
    }


class ProofPackService:
    """Compiles and lists proof pack snapshots.

    Args:
        repository: GovernanceRepository (or test double).
        activity_limit: Number of most recent activities captured.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        repository: GovernanceRepository,
        *,
        activity_limit: int = 10,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._activity_limit = activity_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def generate_proof_pack(
        self,
        tenant_id: str,
        deal_id: str,
        author: CallerIdentity,
        summary: str | None = None,
    ) -> ProofPack:
        """Compile and persist a proof pack for the deal's current state.

        Args:
            tenant_id: Tenant UUID string.
            deal_id: Deal UUID string.
            author: Identity of the caller generating the pack.
            summary: Explicit executive summary; composed when absent or blank.

        Raises:
            ValidationError: If the author has no id.
            NotFoundError: If the deal does not exist.
        """
        if not author.id:
            raise ValidationError("author id is required")

        deal = await self._repository.get_deal(tenant_id, deal_id)
        if deal is None:
            raise NotFoundError("Deal", deal_id)

        evidence = await self._repository.list_evidence(tenant_id, deal_id)
        stakeholders = await self._repository.list_stakeholders(tenant_id, deal_id)
        activities = await self._repository.list_recent_activities(
            tenant_id, deal_id, self._activity_limit
        )
        latest_risk = await self._repository.latest_risk_score(tenant_id, deal_id)

        now = self._clock()
        win_probability = compute_win_probability(r.status for r in evidence)
        executive_summary = summary if summary and summary.strip() else (
            compose_executive_summary(deal, win_probability, stakeholders, evidence, now)
        )

        pack = ProofPack(
            id=str(uuid.uuid4()),
            deal_id=deal_id,
            deal_name=deal.name,
            account_name=deal.account_name,
            deal_value_micros=deal.amount_micros,
            stage=deal.stage,
            close_date=deal.close_date,
            evidence_snapshot=_evidence_snapshot(evidence),
            stakeholder_snapshot=_stakeholder_snapshot(stakeholders),
            activity_summary=_activity_summary(activities),
            win_probability=win_probability,
            risk_score=latest_risk.total if latest_risk else None,
            risk_state=latest_risk.state if latest_risk else None,
            executive_summary=executive_summary,
            generated_by_id=author.id,
            generated_by_name=author.display_name,
            generated_at=now,
        )
        saved = await self._repository.add_proof_pack(tenant_id, pack)
        proof_packs_total.inc()

        logger.info(
            "proof_pack.generated",
            tenant_id=tenant_id,
            deal_id=deal_id,
            proof_pack_id=saved.id,
            win_probability=saved.win_probability,
            generated_by_id=author.id,
        )
        return saved

    async def list_proof_packs(self, tenant_id: str, deal_id: str) -> list[ProofPack]:
        """Full proof pack history, newest first."""
        deal = await self._repository.get_deal(tenant_id, deal_id)
        if deal is None:
            raise NotFoundError("Deal", deal_id)
        return await self._repository.list_proof_packs(tenant_id, deal_id)
