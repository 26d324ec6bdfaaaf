"""Close-plan generation -- ordered remediation items from qualification gaps.

generate_plan_items() is a pure, deterministic function of (deal, evidence,
stakeholders). Rules run in a fixed priority order and each rule's output is
appended in rule order:

1. One remediation item per evidence category not at BUYER_CONFIRMED, in
   REMEDIATION_ITEMS table order.
2. Stage in PROPOSAL_STAGES: "Prepare final proposal".
3. Stage in REVIEW_STAGES: "Complete security review", "Obtain legal approval".
4. No ECONOMIC_BUYER on the roster: "Identify economic buyer".

Sort order equals emission order. Regeneration replaces the whole item set
atomically; callers wanting to keep manually completed items pass them back
as explicit items.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timezone
from typing import Any, TypeVar

import pydantic
import structlog

from src.app.core.monitoring import plan_regenerations_total
from src.app.governance.errors import NotFoundError, ValidationError, parse_enum
from src.app.governance.repository import GovernanceRepository
from src.app.governance.schemas import (
    ClosePlan,
    ClosePlanItem,
    ClosePlanItemSpec,
    ClosePlanItemStatus,
    DealRead,
    DealStage,
    EvidenceCategory,
    EvidenceRecord,
    EvidenceStatus,
    StakeholderRead,
    StakeholderRole,
)

logger = structlog.get_logger(__name__)

ItemT = TypeVar("ItemT", bound=ClosePlanItemSpec)


# ── Remediation Table ───────────────────────────────────────────────────────

REMEDIATION_ITEMS: tuple[tuple[EvidenceCategory, ClosePlanItemSpec], ...] = (
    (
        EvidenceCategory.ECONOMIC_BUYER,
        ClosePlanItemSpec(
            title="Confirm Economic Buyer access",
            description="Schedule meeting with economic buyer to validate decision authority",
            category="stakeholder",
        ),
    ),
    (
        EvidenceCategory.CHAMPION,
        ClosePlanItemSpec(
            title="Strengthen Champion relationship",
            description="Ensure champion is actively selling internally",
            category="champion",
        ),
    ),
    (
        EvidenceCategory.DECISION_CRITERIA,
        ClosePlanItemSpec(
            title="Document decision criteria",
            description="Get buyer confirmation on evaluation criteria",
            category="technical",
        ),
    ),
    (
        EvidenceCategory.PAPER_PROCESS,
        ClosePlanItemSpec(
            title="Map paper process",
            description="Document procurement, legal, and signature requirements",
            category="legal",
        ),
    ),
    (
        EvidenceCategory.METRICS,
        ClosePlanItemSpec(
            title="Quantify business impact",
            description="Document specific metrics and ROI case",
            category="commercial",
        ),
    ),
    (
        EvidenceCategory.DECISION_PROCESS,
        ClosePlanItemSpec(
            title="Map decision process",
            description="Confirm approval steps, approvers, and timeline with the buyer",
            category="stakeholder",
        ),
    ),
    (
        EvidenceCategory.IDENTIFY_PAIN,
        ClosePlanItemSpec(
            title="Validate business pain",
            description="Get buyer confirmation of the pain and the cost of inaction",
            category="commercial",
        ),
    ),
    (
        EvidenceCategory.COMPETITION,
        ClosePlanItemSpec(
            title="Document competitive position",
            description="Identify competing options and our differentiation against each",
            category="competitive",
        ),
    ),
)

PROPOSAL_STAGES = frozenset({DealStage.PROPOSAL, DealStage.LEGAL, DealStage.PROCUREMENT})
REVIEW_STAGES = frozenset({DealStage.LEGAL, DealStage.PROCUREMENT, DealStage.COMMIT})

FINAL_PROPOSAL_ITEM = ClosePlanItemSpec(
    title="Prepare final proposal",
    description="Finalize pricing and terms document",
    category="commercial",
)
REVIEW_ITEMS = (
    ClosePlanItemSpec(
        title="Complete security review",
        description="Ensure all security questionnaires are submitted",
        category="technical",
    ),
    ClosePlanItemSpec(
        title="Obtain legal approval",
        description="Get contract through legal review",
        category="legal",
    ),
)
IDENTIFY_BUYER_ITEM = ClosePlanItemSpec(
    title="Identify economic buyer",
    description="Map org chart to find budget holder",
    category="stakeholder",
)


# ── Pure Rules ──────────────────────────────────────────────────────────────


def generate_plan_items(
    deal: DealRead,
    evidence: Iterable[EvidenceRecord],
    stakeholders: Iterable[StakeholderRead],
) -> list[ClosePlanItemSpec]:
    """Derive the ordered remediation items for a deal.

    Categories with no stored evidence count as gaps.
    """
    statuses = {record.category: record.status for record in evidence}
    items: list[ClosePlanItemSpec] = []

    for category, template in REMEDIATION_ITEMS:
        if statuses.get(category) != EvidenceStatus.BUYER_CONFIRMED:
            items.append(template.model_copy())

    if deal.stage in PROPOSAL_STAGES:
        items.append(FINAL_PROPOSAL_ITEM.model_copy())

    if deal.stage in REVIEW_STAGES:
        items.extend(item.model_copy() for item in REVIEW_ITEMS)

    if not any(s.role_in_deal == StakeholderRole.ECONOMIC_BUYER for s in stakeholders):
        items.append(IDENTIFY_BUYER_ITEM.model_copy())

    return items


def _coerce_items(items: Sequence[Any], now: datetime) -> list[ClosePlanItemSpec]:
    """Validate explicit items, keeping status and applying the completion stamp rule."""
    coerced = []
    for item in items:
        raw = item.model_dump() if isinstance(item, pydantic.BaseModel) else item
        try:
            entry = ClosePlanItemSpec.model_validate(raw)
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid close plan item: {exc.errors()[0]['msg']}") from exc
        coerced.append(apply_item_status(entry, entry.status, entry.completed_at, now))
    return coerced


def apply_item_status(
    item: ItemT,
    status: ClosePlanItemStatus,
    completed_at: datetime | None,
    now: datetime,
) -> ItemT:
    """Return the item with the new status and a consistent completion stamp.

    Entering COMPLETE stamps completed_at (explicit value, else ``now``);
    staying COMPLETE keeps the existing stamp unless one is supplied;
    any other status clears it.
    """
    if status == ClosePlanItemStatus.COMPLETE:
        if completed_at is not None:
            stamp = completed_at
        elif item.status == ClosePlanItemStatus.COMPLETE and item.completed_at:
            stamp = item.completed_at
        else:
            stamp = now
    else:
        stamp = None
    return item.model_copy(update={"status": status, "completed_at": stamp})


# ── Generator Service ───────────────────────────────────────────────────────


class ClosePlanGenerator:
    """Generates, replaces, and updates deal close plans.

    Args:
        repository: GovernanceRepository (or test double).
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        repository: GovernanceRepository,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def get_close_plan(self, tenant_id: str, deal_id: str) -> ClosePlan | None:
        deal = await self._repository.get_deal(tenant_id, deal_id)
        if deal is None:
            raise NotFoundError("Deal", deal_id)
        return await self._repository.get_close_plan(tenant_id, deal_id)

    async def generate_close_plan(
        self,
        tenant_id: str,
        deal_id: str,
        explicit_items: Sequence[Any] | None = None,
        target_close_date: datetime | None = None,
        expected_version: int | None = None,
    ) -> ClosePlan:
        """Replace the deal's close plan with explicit or derived items.

        Args:
            tenant_id: Tenant UUID string.
            deal_id: Deal UUID string.
            explicit_items: Items used verbatim when given (an empty list
                produces an empty plan). None derives items from the gaps.
            target_close_date: Defaults to the deal's close date.
            expected_version: Current plan version the caller last saw (0 when
                no plan existed). A mismatch raises ConflictError.

        Raises:
            ValidationError: If an explicit item is malformed.
            NotFoundError: If the deal does not exist.
            ConflictError: On a concurrent or stale regeneration.
        """
        deal = await self._repository.get_deal(tenant_id, deal_id)
        if deal is None:
            raise NotFoundError("Deal", deal_id)

        if explicit_items is not None:
            items = _coerce_items(explicit_items, self._clock())
            source = "explicit"
        else:
            evidence = await self._repository.list_evidence(tenant_id, deal_id)
            stakeholders = await self._repository.list_stakeholders(tenant_id, deal_id)
            items = generate_plan_items(deal, evidence, stakeholders)
            source = "derived"

        plan = await self._repository.replace_close_plan(
            tenant_id,
            deal_id,
            items,
            target_close_date or deal.close_date,
            expected_version=expected_version,
        )
        plan_regenerations_total.labels(source=source).inc()

        logger.info(
            "close_plan.replaced",
            tenant_id=tenant_id,
            deal_id=deal_id,
            source=source,
            version=plan.version,
            item_count=len(plan.items),
        )
        return plan

    async def update_close_plan_item(
        self,
        tenant_id: str,
        deal_id: str,
        item_id: str,
        status: Any,
        completed_at: datetime | None = None,
    ) -> ClosePlanItem:
        """Set an item's status, maintaining its completion timestamp.

        Raises:
            ValidationError: If status is missing or unknown.
            NotFoundError: If the plan or item does not exist.
        """
        parsed_status = parse_enum(ClosePlanItemStatus, status, "status")
        now = self._clock()

        item = await self._repository.update_close_plan_item(
            tenant_id,
            deal_id,
            item_id,
            lambda current: apply_item_status(current, parsed_status, completed_at, now),
        )

        logger.info(
            "close_plan.item_updated",
            tenant_id=tenant_id,
            deal_id=deal_id,
            item_id=item_id,
            status=parsed_status.value,
        )
        return item
