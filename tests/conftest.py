"""Shared fixtures for deal governance tests.

Provides:
- InMemoryGovernanceRepository: test double with the GovernanceRepository
  contract (per-deal lock around mutate_deal and replace_close_plan)
- A fixed clock and seed helpers for deals, stakeholders, and activities
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.app.governance.errors import ConflictError, NotFoundError
from src.app.governance.repository import DealMutator, ItemMutator
from src.app.governance.schemas import (
    ActivityRead,
    ClosePlan,
    ClosePlanItem,
    ClosePlanItemSpec,
    DealRead,
    DealStage,
    EnforcementEvent,
    EvidenceCategory,
    EvidenceRecord,
    ProofPack,
    RiskScore,
    StakeholderRead,
    StakeholderRole,
)

TENANT_ID = "6f1c2a7e-3b4d-4c8e-9a21-0d5e7f9b1c34"
OTHER_TENANT_ID = "a93e6d10-58f2-4b7a-8c3d-2e41f6a0b975"
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


class TickingClock:
    """Clock advancing one minute per call, for ordering history entries."""

    def __init__(self, start: datetime = NOW) -> None:
        self._current = start

    def __call__(self) -> datetime:
        value = self._current
        self._current += timedelta(minutes=1)
        return value


# ── In-Memory Test Double ────────────────────────────────────────────────────


class InMemoryGovernanceRepository:
    """In-memory GovernanceRepository for testing without database."""

    def __init__(self) -> None:
        self._deals: dict[str, DealRead] = {}
        self._stakeholders: list[StakeholderRead] = []
        self._activities: list[ActivityRead] = []
        self._evidence: dict[tuple[str, EvidenceCategory], EvidenceRecord] = {}
        self._plans: dict[str, ClosePlan] = {}
        self._risk_scores: list[RiskScore] = []
        self._events: list[EnforcementEvent] = []
        self._proof_packs: list[ProofPack] = []
        self._locks: dict[str, asyncio.Lock] = {}

    # ── Seed Helpers ─────────────────────────────────────────────────────

    def add_deal(
        self, tenant_id: str = TENANT_ID, stage: DealStage = DealStage.DISCOVERY, **fields: Any
    ) -> DealRead:
        deal = DealRead(
            id=fields.pop("id", str(uuid.uuid4())),
            tenant_id=tenant_id,
            name=fields.pop("name", "Acme Platform Expansion"),
            account_name=fields.pop("account_name", "Acme Corp"),
            stage=stage,
            stage_entered_at=fields.pop("stage_entered_at", NOW),
            **fields,
        )
        self._deals[deal.id] = deal
        return deal

    def add_stakeholder(
        self, deal: DealRead, role: StakeholderRole, name: str = "Dana Chen", **fields: Any
    ) -> StakeholderRead:
        stakeholder = StakeholderRead(
            id=str(uuid.uuid4()),
            deal_id=deal.id,
            contact_name=name,
            role_in_deal=role,
            **fields,
        )
        self._stakeholders.append(stakeholder)
        return stakeholder

    def add_activity(
        self, deal: DealRead, occurred_at: datetime, type: str = "call", summary: str | None = None
    ) -> ActivityRead:
        activity = ActivityRead(
            id=str(uuid.uuid4()),
            deal_id=deal.id,
            type=type,
            summary=summary,
            occurred_at=occurred_at,
        )
        self._activities.append(activity)
        return activity

    def overwrite_deal(self, deal_id: str, **updates: Any) -> None:
        """Write deal fields directly, bypassing the enforcement log."""
        self._deals[deal_id] = self._deals[deal_id].model_copy(update=updates)

    def _deal(self, tenant_id: str, deal_id: str) -> DealRead | None:
        deal = self._deals.get(deal_id)
        if deal and deal.tenant_id == tenant_id:
            return deal
        return None

    def _lock(self, deal_id: str) -> asyncio.Lock:
        return self._locks.setdefault(deal_id, asyncio.Lock())

    # ── Deals & Collaborator Reads ───────────────────────────────────────

    async def get_deal(self, tenant_id: str, deal_id: str) -> DealRead | None:
        return self._deal(tenant_id, deal_id)

    async def list_stakeholders(self, tenant_id: str, deal_id: str) -> list[StakeholderRead]:
        return [s for s in self._stakeholders if s.deal_id == deal_id]

    async def list_recent_activities(
        self, tenant_id: str, deal_id: str, limit: int
    ) -> list[ActivityRead]:
        activities = [a for a in self._activities if a.deal_id == deal_id]
        activities.sort(key=lambda a: a.occurred_at, reverse=True)
        return activities[:limit]

    async def mutate_deal(
        self, tenant_id: str, deal_id: str, mutator: DealMutator
    ) -> tuple[DealRead, EnforcementEvent | None]:
        async with self._lock(deal_id):
            deal = self._deal(tenant_id, deal_id)
            if deal is None:
                raise NotFoundError("Deal", deal_id)
            log = [e for e in self._events if e.deal_id == deal_id]
            latest = max(log, key=lambda e: e.sequence) if log else None

            mutation = mutator(deal, latest)
            if mutation.is_empty:
                return deal, None

            appended = None
            if mutation.event is not None:
                pending = mutation.event
                appended = EnforcementEvent(
                    id=str(uuid.uuid4()),
                    deal_id=deal_id,
                    sequence=(latest.sequence if latest else 0) + 1,
                    event_type=pending.event_type,
                    capability=pending.capability,
                    reason_code=pending.reason_code,
                    resulting_state=pending.resulting_state,
                    actor_id=pending.actor_id,
                    created_at=NOW,
                )
                self._events.append(appended)

            if mutation.deal_updates:
                deal = deal.model_copy(
                    update={
                        **mutation.deal_updates,
                        "version": deal.version + 1,
                        "updated_at": NOW,
                    }
                )
                self._deals[deal_id] = deal

            return deal, appended

    # ── Evidence ─────────────────────────────────────────────────────────

    async def list_evidence(self, tenant_id: str, deal_id: str) -> list[EvidenceRecord]:
        order = list(EvidenceCategory)
        records = [r for (d, _), r in self._evidence.items() if d == deal_id]
        return sorted(records, key=lambda r: order.index(r.category))

    async def upsert_evidence(self, tenant_id: str, record: EvidenceRecord) -> EvidenceRecord:
        if self._deal(tenant_id, record.deal_id) is None:
            raise NotFoundError("Deal", record.deal_id)
        key = (record.deal_id, record.category)
        existing = self._evidence.get(key)
        saved = record.model_copy(
            update={"id": existing.id if existing else str(uuid.uuid4())}
        )
        self._evidence[key] = saved
        return saved

    # ── Close Plans ──────────────────────────────────────────────────────

    async def get_close_plan(self, tenant_id: str, deal_id: str) -> ClosePlan | None:
        return self._plans.get(deal_id)

    async def replace_close_plan(
        self,
        tenant_id: str,
        deal_id: str,
        items: list[ClosePlanItemSpec],
        target_close_date: datetime | None,
        expected_version: int | None = None,
    ) -> ClosePlan:
        async with self._lock(deal_id):
            if self._deal(tenant_id, deal_id) is None:
                raise NotFoundError("Deal", deal_id)
            current = self._plans.get(deal_id)
            current_version = current.version if current else 0
            if expected_version is not None and expected_version != current_version:
                raise ConflictError(
                    f"Close plan for deal {deal_id} is at version {current_version}, "
                    f"expected {expected_version}; resubmit the full request"
                )
            plan = ClosePlan(
                id=current.id if current else str(uuid.uuid4()),
                deal_id=deal_id,
                target_close_date=target_close_date,
                version=current_version + 1,
                items=[
                    ClosePlanItem(
                        id=str(uuid.uuid4()),
                        sort_order=index,
                        **entry.model_dump(exclude={"id", "sort_order"}),
                    )
                    for index, entry in enumerate(items)
                ],
                created_at=current.created_at if current else NOW,
                updated_at=NOW,
            )
            self._plans[deal_id] = plan
            return plan

    async def update_close_plan_item(
        self, tenant_id: str, deal_id: str, item_id: str, mutator: ItemMutator
    ) -> ClosePlanItem:
        plan = self._plans.get(deal_id)
        if plan is None:
            raise NotFoundError("Close plan", deal_id)
        for index, item in enumerate(plan.items):
            if item.id == item_id:
                updated = mutator(item)
                items = list(plan.items)
                items[index] = updated
                self._plans[deal_id] = plan.model_copy(update={"items": items})
                return updated
        raise NotFoundError("Close plan item", item_id)

    # ── Risk History ─────────────────────────────────────────────────────

    async def append_risk_score(self, tenant_id: str, score: RiskScore) -> RiskScore:
        self._risk_scores.append(score)
        return score

    async def list_risk_scores(
        self, tenant_id: str, deal_id: str, limit: int | None = None
    ) -> list[RiskScore]:
        scores = [s for s in self._risk_scores if s.deal_id == deal_id]
        scores.sort(key=lambda s: s.computed_at, reverse=True)
        return scores if limit is None else scores[:limit]

    async def latest_risk_score(self, tenant_id: str, deal_id: str) -> RiskScore | None:
        scores = await self.list_risk_scores(tenant_id, deal_id, limit=1)
        return scores[0] if scores else None

    # ── Enforcement Log ──────────────────────────────────────────────────

    async def list_enforcement_events(
        self, tenant_id: str, deal_id: str
    ) -> list[EnforcementEvent]:
        events = [e for e in self._events if e.deal_id == deal_id]
        return sorted(events, key=lambda e: e.sequence, reverse=True)

    # ── Proof Packs ──────────────────────────────────────────────────────

    async def add_proof_pack(self, tenant_id: str, pack: ProofPack) -> ProofPack:
        self._proof_packs.append(pack)
        return pack

    async def list_proof_packs(self, tenant_id: str, deal_id: str) -> list[ProofPack]:
        packs = [p for p in self._proof_packs if p.deal_id == deal_id]
        return sorted(packs, key=lambda p: p.generated_at, reverse=True)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def repo() -> InMemoryGovernanceRepository:
    return InMemoryGovernanceRepository()


@pytest.fixture
def deal(repo: InMemoryGovernanceRepository) -> DealRead:
    return repo.add_deal()
