"""Tests for proof pack compilation, win probability, and summaries."""

from __future__ import annotations

from datetime import timedelta

import pydantic
import pytest

from src.app.governance.errors import NotFoundError, ValidationError
from src.app.governance.evidence import EvidenceLedger
from src.app.governance.proof_pack import (
    ProofPackService,
    compose_executive_summary,
    compute_win_probability,
    days_to_close,
)
from src.app.governance.risk import RiskScoringService
from src.app.governance.schemas import (
    CallerIdentity,
    DealStage,
    EvidenceCategory,
    EvidenceRecord,
    EvidenceStatus,
    RiskState,
    StakeholderRole,
)
from tests.conftest import NOW, TENANT_ID, TickingClock, fixed_clock

AUTHOR = CallerIdentity(id="user-42", display_name="Morgan Lee")


class TestWinProbability:
    def test_mean_of_four_statuses(self):
        statuses = [
            EvidenceStatus.BUYER_CONFIRMED,
            EvidenceStatus.EVIDENCED,
            EvidenceStatus.CLAIMED,
            EvidenceStatus.MISSING,
        ]

        assert compute_win_probability(statuses) == 54

    def test_no_evidence_is_zero(self):
        assert compute_win_probability([]) == 0

    def test_halves_round_up(self):
        statuses = [EvidenceStatus.EVIDENCED, EvidenceStatus.MISSING]

        assert compute_win_probability(statuses) == 38


class TestDaysToClose:
    def test_partial_days_round_up(self):
        assert days_to_close(NOW + timedelta(days=2, hours=1), NOW) == 3

    def test_whole_days(self):
        assert days_to_close(NOW + timedelta(days=2), NOW) == 2

    def test_past_close_is_negative(self):
        assert days_to_close(NOW - timedelta(days=1, hours=12), NOW) == -1


class TestExecutiveSummary:
    def test_full_summary(self, repo):
        deal = repo.add_deal(stage=DealStage.LEGAL, close_date=NOW + timedelta(days=14))
        champion = repo.add_stakeholder(deal, StakeholderRole.CHAMPION, name="Dana Chen")
        buyer = repo.add_stakeholder(deal, StakeholderRole.ECONOMIC_BUYER, name="Priya Nair")
        evidence = [
            EvidenceRecord(deal_id=deal.id, category=EvidenceCategory.METRICS,
                           status=EvidenceStatus.BUYER_CONFIRMED),
            EvidenceRecord(deal_id=deal.id, category=EvidenceCategory.CHAMPION,
                           status=EvidenceStatus.EVIDENCED),
            EvidenceRecord(deal_id=deal.id, category=EvidenceCategory.COMPETITION,
                           status=EvidenceStatus.CLAIMED),
            EvidenceRecord(deal_id=deal.id, category=EvidenceCategory.IDENTIFY_PAIN,
                           status=EvidenceStatus.MISSING),
        ]

        summary = compose_executive_summary(deal, 54, [champion, buyer], evidence, NOW)

        assert summary == (
            "**Acme Platform Expansion** is currently in **LEGAL** stage "
            "with 14 days to target close.\n\n"
            "**Win Probability:** 54%\n\n"
            "**Champion:** Dana Chen\n"
            "**Economic Buyer:** Priya Nair\n"
            "\n**Validated:** METRICS\n"
            "\n**Gaps to Address:** COMPETITION, IDENTIFY_PAIN\n"
        )

    def test_minimal_summary(self, repo):
        deal = repo.add_deal(stage=DealStage.INTAKE)

        summary = compose_executive_summary(deal, 0, [], [], NOW)

        assert summary == (
            "**Acme Platform Expansion** is currently in **INTAKE** stage.\n\n"
            "**Win Probability:** 0%\n\n"
        )


class TestProofPackService:
    async def _seed_evidence(self, repo, deal) -> None:
        ledger = EvidenceLedger(repo, clock=fixed_clock)
        for category, status in [
            (EvidenceCategory.METRICS, EvidenceStatus.BUYER_CONFIRMED),
            (EvidenceCategory.ECONOMIC_BUYER, EvidenceStatus.EVIDENCED),
            (EvidenceCategory.CHAMPION, EvidenceStatus.CLAIMED),
            (EvidenceCategory.COMPETITION, EvidenceStatus.MISSING),
        ]:
            await ledger.upsert_evidence(
                TENANT_ID, deal.id, category, status, refs=[f"{category.value.lower()}-doc"]
            )

    @pytest.mark.asyncio
    async def test_generate_snapshots_current_state(self, repo):
        deal = repo.add_deal(
            stage=DealStage.NEGOTIATION,
            close_date=NOW + timedelta(days=10),
            amount_micros=480_000_000_000,
        )
        repo.add_stakeholder(deal, StakeholderRole.CHAMPION, name="Dana Chen", title="VP Ops")
        await self._seed_evidence(repo, deal)
        service = ProofPackService(repo, clock=fixed_clock)

        pack = await service.generate_proof_pack(TENANT_ID, deal.id, AUTHOR)

        assert pack.win_probability == 54
        assert pack.deal_name == deal.name
        assert pack.account_name == "Acme Corp"
        assert pack.deal_value_micros == 480_000_000_000
        assert pack.stage == DealStage.NEGOTIATION
        assert pack.generated_by_id == "user-42"
        assert pack.generated_by_name == "Morgan Lee"
        assert pack.generated_at == NOW
        assert [e["category"] for e in pack.evidence_snapshot] == [
            "METRICS", "ECONOMIC_BUYER", "CHAMPION", "COMPETITION",
        ]
        assert pack.evidence_snapshot[0]["evidence_refs"] == ["metrics-doc"]
        assert pack.stakeholder_snapshot == [
            {
                "name": "Dana Chen",
                "title": "VP Ops",
                "persona": None,
                "role_in_deal": "CHAMPION",
                "authority_level": 1,
            }
        ]
        assert pack.risk_score is None
        assert pack.risk_state is None
        assert "**Champion:** Dana Chen" in pack.executive_summary
        assert "with 10 days to target close" in pack.executive_summary

    @pytest.mark.asyncio
    async def test_activity_summary_is_limited_and_newest_first(self, repo, deal):
        for days_ago in (3, 1, 2):
            repo.add_activity(
                deal, NOW - timedelta(days=days_ago), summary=f"{days_ago} days ago"
            )
        service = ProofPackService(repo, activity_limit=2, clock=fixed_clock)

        pack = await service.generate_proof_pack(TENANT_ID, deal.id, AUTHOR)

        assert pack.activity_summary["recent_count"] == 2
        assert [a["summary"] for a in pack.activity_summary["activities"]] == [
            "1 days ago",
            "2 days ago",
        ]
        assert pack.activity_summary["activities"][0]["occurred_at"] == (
            (NOW - timedelta(days=1)).isoformat()
        )

    @pytest.mark.asyncio
    async def test_latest_risk_score_is_captured(self, repo, deal):
        await RiskScoringService(repo, clock=fixed_clock).compute_risk_score(
            TENANT_ID, deal.id
        )
        service = ProofPackService(repo, clock=fixed_clock)

        pack = await service.generate_proof_pack(TENANT_ID, deal.id, AUTHOR)

        assert pack.risk_score == 0
        assert pack.risk_state == RiskState.RED

    @pytest.mark.asyncio
    async def test_explicit_summary_wins_blank_is_composed(self, repo, deal):
        service = ProofPackService(repo, clock=fixed_clock)

        explicit = await service.generate_proof_pack(
            TENANT_ID, deal.id, AUTHOR, summary="Ready for deal desk."
        )
        blank = await service.generate_proof_pack(TENANT_ID, deal.id, AUTHOR, summary="   ")

        assert explicit.executive_summary == "Ready for deal desk."
        assert blank.executive_summary.startswith("**Acme Platform Expansion**")

    @pytest.mark.asyncio
    async def test_pack_is_unaffected_by_later_changes(self, repo, deal):
        await self._seed_evidence(repo, deal)
        service = ProofPackService(repo, clock=fixed_clock)
        pack = await service.generate_proof_pack(TENANT_ID, deal.id, AUTHOR)

        await EvidenceLedger(repo, clock=fixed_clock).upsert_evidence(
            TENANT_ID, deal.id, "COMPETITION", "BUYER_CONFIRMED"
        )

        stored = (await service.list_proof_packs(TENANT_ID, deal.id))[0]
        assert stored.win_probability == 54
        assert stored.evidence_snapshot[-1]["status"] == "MISSING"
        with pytest.raises(pydantic.ValidationError):
            pack.win_probability = 100

    @pytest.mark.asyncio
    async def test_list_newest_first(self, repo, deal):
        service = ProofPackService(repo, clock=TickingClock())

        first = await service.generate_proof_pack(TENANT_ID, deal.id, AUTHOR)
        second = await service.generate_proof_pack(TENANT_ID, deal.id, AUTHOR)

        packs = await service.list_proof_packs(TENANT_ID, deal.id)
        assert [p.id for p in packs] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_author_id_required(self, repo, deal):
        service = ProofPackService(repo, clock=fixed_clock)

        with pytest.raises(ValidationError):
            await service.generate_proof_pack(TENANT_ID, deal.id, CallerIdentity(id=""))

    @pytest.mark.asyncio
    async def test_unknown_deal_raises_not_found(self, repo):
        service = ProofPackService(repo, clock=fixed_clock)

        with pytest.raises(NotFoundError):
            await service.generate_proof_pack(TENANT_ID, "no-such-deal", AUTHOR)
        with pytest.raises(NotFoundError):
            await service.list_proof_packs(TENANT_ID, "no-such-deal")
