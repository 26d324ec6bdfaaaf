"""Deal governance repository -- async persistence for all governance entities.

Provides GovernanceRepository with the session_factory callable pattern.
Handles serialization between Pydantic schemas and SQLAlchemy models for
deals, evidence, close plans, risk history, the enforcement log, and proof
packs.

All methods take tenant_id as first argument for tenant-scoped queries.

Transactions:
- Evidence upsert is a single INSERT ... ON CONFLICT on (deal_id, category).
- Close-plan replacement and enforcement mutations lock the deal row with
  SELECT ... FOR UPDATE, so writers for the same deal serialize. A writer
  that outwaits the session lock_timeout gets ConflictError.
- Appends to risk history and proof packs are single-row inserts.
Reads never lock.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.governance.errors import ConflictError, NotFoundError
from src.app.governance.models import (
    AccountModel,
    ActivityModel,
    ClosePlanItemModel,
    ClosePlanModel,
    DealModel,
    EnforcementEventModel,
    EvidenceModel,
    ProofPackModel,
    RiskScoreModel,
    StakeholderModel,
)
from src.app.governance.schemas import (
    ActivityRead,
    ClosePlan,
    ClosePlanItem,
    ClosePlanItemSpec,
    ClosePlanItemStatus,
    DealCapability,
    DealRead,
    DealStage,
    EnforcementEvent,
    EnforcementEventType,
    EnforcementReasonCode,
    EnforcementState,
    EvidenceCategory,
    EvidenceRecord,
    EvidenceStatus,
    ForecastCategory,
    ProofPack,
    RiskScore,
    RiskState,
    StakeholderRead,
    StakeholderRole,
)

logger = structlog.get_logger(__name__)

# Postgres SQLSTATE raised when lock_timeout expires
LOCK_NOT_AVAILABLE = "55P03"


# ── Deal Mutations ──────────────────────────────────────────────────────────


@dataclass
class PendingEvent:
    """Enforcement event to append; id and sequence are assigned on write."""

    event_type: EnforcementEventType
    reason_code: EnforcementReasonCode
    resulting_state: EnforcementState
    capability: DealCapability | None = None
    actor_id: str | None = None


@dataclass
class DealMutation:
    """What to write inside a locked deal transaction.

    An empty mutation (no event, no updates) commits nothing.
    """

    event: PendingEvent | None = None
    deal_updates: dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.event is None and not self.deal_updates


DealMutator = Callable[[DealRead, EnforcementEvent | None], DealMutation]
ItemMutator = Callable[[ClosePlanItem], ClosePlanItem]


# ── Serialization Helpers ───────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_uuid(value: str, entity: str) -> uuid.UUID:
    """Parse an identifier; malformed ids cannot exist, so report not-found."""
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFoundError(entity, value) from None


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _model_to_deal(model: DealModel, account_name: str | None = None) -> DealRead:
    """Convert DealModel to DealRead schema."""
    return DealRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        account_id=str(model.account_id) if model.account_id else None,
        account_name=account_name,
        name=model.name,
        stage=DealStage(model.stage),
        stage_entered_at=model.stage_entered_at,
        forecast=ForecastCategory(model.forecast),
        close_date=model.close_date,
        amount_micros=model.amount_micros,
        currency=model.currency,
        enforcement_state=EnforcementState(model.enforcement_state),
        frozen_reason_code=(
            EnforcementReasonCode(model.frozen_reason_code)
            if model.frozen_reason_code
            else None
        ),
        version=model.version,
        updated_at=model.updated_at,
    )


def _model_to_stakeholder(model: StakeholderModel) -> StakeholderRead:
    return StakeholderRead(
        id=str(model.id),
        deal_id=str(model.deal_id),
        contact_name=model.contact_name,
        title=model.title,
        persona=model.persona,
        role_in_deal=StakeholderRole(model.role_in_deal),
        authority_level=model.authority_level or 0,
    )


def _model_to_activity(model: ActivityModel) -> ActivityRead:
    return ActivityRead(
        id=str(model.id),
        deal_id=str(model.deal_id),
        type=model.type,
        summary=model.summary,
        occurred_at=model.occurred_at,
    )


def _model_to_evidence(model: EvidenceModel) -> EvidenceRecord:
    return EvidenceRecord(
        id=str(model.id),
        deal_id=str(model.deal_id),
        category=EvidenceCategory(model.category),
        status=EvidenceStatus(model.status),
        evidence_refs=list(model.evidence_refs or []),
        notes=model.notes,
        last_updated_by_id=model.last_updated_by_id,
        updated_at=model.updated_at,
    )


def _model_to_plan_item(model: ClosePlanItemModel) -> ClosePlanItem:
    return ClosePlanItem(
        id=str(model.id),
        title=model.title,
        description=model.description,
        category=model.category,
        sort_order=model.sort_order,
        due_date=model.due_date,
        owner_id=model.owner_id,
        status=ClosePlanItemStatus(model.status),
        completed_at=model.completed_at,
        task_ids=list(model.task_ids or []),
    )


def _model_to_plan(
    model: ClosePlanModel, items: list[ClosePlanItemModel]
) -> ClosePlan:
    return ClosePlan(
        id=str(model.id),
        deal_id=str(model.deal_id),
        target_close_date=model.target_close_date,
        version=model.version,
        items=[_model_to_plan_item(i) for i in sorted(items, key=lambda i: i.sort_order)],
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_risk_score(model: RiskScoreModel) -> RiskScore:
    return RiskScore(
        id=str(model.id),
        deal_id=str(model.deal_id),
        computed_at=model.computed_at,
        total=model.total,
        state=RiskState(model.state),
        factors=dict(model.factors or {}),
    )


def _model_to_event(model: EnforcementEventModel) -> EnforcementEvent:
    return EnforcementEvent(
        id=str(model.id),
        deal_id=str(model.deal_id),
        sequence=model.sequence,
        event_type=EnforcementEventType(model.event_type),
        capability=DealCapability(model.capability) if model.capability else None,
        reason_code=EnforcementReasonCode(model.reason_code),
        resulting_state=EnforcementState(model.resulting_state),
        actor_id=model.actor_id,
        created_at=model.created_at,
    )


def _model_to_proof_pack(model: ProofPackModel) -> ProofPack:
    return ProofPack(
        id=str(model.id),
        deal_id=str(model.deal_id),
        deal_name=model.deal_name,
        account_name=model.account_name,
        deal_value_micros=model.deal_value_micros,
        stage=DealStage(model.stage),
        close_date=model.close_date,
        evidence_snapshot=list(model.evidence_snapshot or []),
        stakeholder_snapshot=list(model.stakeholder_snapshot or []),
        activity_summary=dict(model.activity_summary or {}),
        win_probability=model.win_probability,
        risk_score=model.risk_score,
        risk_state=RiskState(model.risk_state) if model.risk_state else None,
        executive_summary=model.executive_summary,
        generated_by_id=model.generated_by_id,
        generated_by_name=model.generated_by_name,
        generated_at=model.generated_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class GovernanceRepository:
    """Async persistence for deal governance entities.

    All methods take tenant_id as first argument for tenant-scoped queries.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def _load_deal(
        self,
        session: AsyncSession,
        tenant_id: str,
        deal_id: str,
        *,
        for_update: bool = False,
    ) -> DealModel:
        stmt = select(DealModel).where(
            DealModel.tenant_id == _parse_uuid(tenant_id, "Tenant"),
            DealModel.id == _parse_uuid(deal_id, "Deal"),
        )
        if for_update:
            stmt = stmt.with_for_update()
        try:
            result = await session.execute(stmt)
        except DBAPIError as exc:
            if getattr(exc.orig, "sqlstate", None) != LOCK_NOT_AVAILABLE:
                raise
            await session.rollback()
            logger.warning("deal.lock_timeout", tenant_id=tenant_id, deal_id=deal_id)
            raise ConflictError(
                f"Deal {deal_id} is locked by another governance write; retry the request"
            ) from exc
        model = result.scalar_one_or_none()
        if model is None:
            raise NotFoundError("Deal", deal_id)
        return model

    async def _latest_event_model(
        self, session: AsyncSession, deal_uuid: uuid.UUID
    ) -> EnforcementEventModel | None:
        stmt = (
            select(EnforcementEventModel)
            .where(EnforcementEventModel.deal_id == deal_uuid)
            .order_by(EnforcementEventModel.sequence.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    # ── Deals & Collaborator Reads ──────────────────────────────────────────

    async def get_deal(self, tenant_id: str, deal_id: str) -> DealRead | None:
        """Get a deal with its account name, or None if absent."""
        try:
            deal_uuid = _parse_uuid(deal_id, "Deal")
        except NotFoundError:
            return None
        async for session in self._session_factory():
            stmt = (
                select(DealModel, AccountModel.name)
                .outerjoin(AccountModel, AccountModel.id == DealModel.account_id)
                .where(
                    DealModel.tenant_id == uuid.UUID(tenant_id),
                    DealModel.id == deal_uuid,
                )
            )
            result = await session.execute(stmt)
            row = result.first()
            if row is None:
                return None
            return _model_to_deal(row[0], account_name=row[1])

    async def list_stakeholders(
        self, tenant_id: str, deal_id: str
    ) -> list[StakeholderRead]:
        """List the deal's stakeholder roster in creation order."""
        async for session in self._session_factory():
            stmt = (
                select(StakeholderModel)
                .where(
                    StakeholderModel.tenant_id == uuid.UUID(tenant_id),
                    StakeholderModel.deal_id == _parse_uuid(deal_id, "Deal"),
                )
                .order_by(StakeholderModel.created_at, StakeholderModel.id)
            )
            result = await session.execute(stmt)
            return [_model_to_stakeholder(m) for m in result.scalars().all()]

    async def list_recent_activities(
        self, tenant_id: str, deal_id: str, limit: int
    ) -> list[ActivityRead]:
        """List the most recent activities, newest first."""
        async for session in self._session_factory():
            stmt = (
                select(ActivityModel)
                .where(
                    ActivityModel.tenant_id == uuid.UUID(tenant_id),
                    ActivityModel.deal_id == _parse_uuid(deal_id, "Deal"),
                )
                .order_by(ActivityModel.occurred_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_activity(m) for m in result.scalars().all()]

    async def mutate_deal(
        self, tenant_id: str, deal_id: str, mutator: DealMutator
    ) -> tuple[DealRead, EnforcementEvent | None]:
        """Run mutator against the locked deal and its latest enforcement event.

        The deal row is held FOR UPDATE for the whole transaction, so the
        enforcement decision, the event append, and the deal patch commit
        together or not at all.

        Args:
            tenant_id: Tenant UUID string.
            deal_id: Deal UUID string.
            mutator: Decides what to write given (deal, latest_event).

        Returns:
            Tuple of (deal after the write, appended event or None).

        Raises:
            NotFoundError: If the deal does not exist.
        """
        async for session in self._session_factory():
            model = await self._load_deal(session, tenant_id, deal_id, for_update=True)
            latest = await self._latest_event_model(session, model.id)
            latest_event = _model_to_event(latest) if latest is not None else None

            account_name = None
            if model.account_id is not None:
                account = await session.get(AccountModel, model.account_id)
                account_name = account.name if account is not None else None

            current = _model_to_deal(model, account_name=account_name)
            mutation = mutator(current, latest_event)
            if mutation.is_empty:
                await session.rollback()
                return current, None

            appended: EnforcementEventModel | None = None
            if mutation.event is not None:
                pending = mutation.event
                appended = EnforcementEventModel(
                    id=uuid.uuid4(),
                    tenant_id=model.tenant_id,
                    deal_id=model.id,
                    sequence=(latest.sequence if latest is not None else 0) + 1,
                    event_type=pending.event_type.value,
                    capability=_column_value(pending.capability),
                    reason_code=pending.reason_code.value,
                    resulting_state=pending.resulting_state.value,
                    actor_id=pending.actor_id,
                    created_at=_utcnow(),
                )
                session.add(appended)

            if mutation.deal_updates:
                for key, value in mutation.deal_updates.items():
                    setattr(model, key, _column_value(value))
                model.version = (model.version or 0) + 1
                model.updated_at = _utcnow()

            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                logger.warning("enforcement.write_conflict", tenant_id=tenant_id, deal_id=deal_id)
                raise ConflictError(
                    f"Concurrent enforcement write on deal {deal_id}; retry the request"
                ) from exc

            return (
                _model_to_deal(model, account_name=account_name),
                _model_to_event(appended) if appended is not None else None,
            )

    # ── Evidence ────────────────────────────────────────────────────────────

    async def list_evidence(
        self, tenant_id: str, deal_id: str
    ) -> list[EvidenceRecord]:
        """List stored evidence records only (no defaults for missing categories)."""
        async for session in self._session_factory():
            stmt = select(EvidenceModel).where(
                EvidenceModel.tenant_id == uuid.UUID(tenant_id),
                EvidenceModel.deal_id == _parse_uuid(deal_id, "Deal"),
            )
            result = await session.execute(stmt)
            records = [_model_to_evidence(m) for m in result.scalars().all()]
            order = list(EvidenceCategory)
            return sorted(records, key=lambda r: order.index(r.category))

    async def upsert_evidence(
        self, tenant_id: str, record: EvidenceRecord
    ) -> EvidenceRecord:
        """Create or replace the single record for (deal_id, category).

        Raises:
            NotFoundError: If the deal does not exist.
        """
        async for session in self._session_factory():
            deal = await self._load_deal(session, tenant_id, record.deal_id)
            now = record.updated_at or _utcnow()
            values = {
                "status": record.status.value,
                "evidence_refs": list(record.evidence_refs),
                "notes": record.notes,
                "last_updated_by_id": record.last_updated_by_id,
                "updated_at": now,
            }
            stmt = (
                insert(EvidenceModel)
                .values(
                    id=uuid.uuid4(),
                    tenant_id=deal.tenant_id,
                    deal_id=deal.id,
                    category=record.category.value,
                    **values,
                )
                .on_conflict_do_update(
                    constraint="uq_deal_evidence_deal_category",
                    set_=values,
                )
                .returning(EvidenceModel)
            )
            result = await session.execute(stmt)
            model = result.scalar_one()
            await session.commit()
            return _model_to_evidence(model)

    # ── Close Plans ─────────────────────────────────────────────────────────

    async def get_close_plan(
        self, tenant_id: str, deal_id: str
    ) -> ClosePlan | None:
        """Get the deal's close plan with items ordered by sort_order."""
        async for session in self._session_factory():
            stmt = select(ClosePlanModel).where(
                ClosePlanModel.tenant_id == uuid.UUID(tenant_id),
                ClosePlanModel.deal_id == _parse_uuid(deal_id, "Deal"),
            )
            result = await session.execute(stmt)
            plan = result.scalar_one_or_none()
            if plan is None:
                return None
            items_result = await session.execute(
                select(ClosePlanItemModel).where(ClosePlanItemModel.plan_id == plan.id)
            )
            return _model_to_plan(plan, list(items_result.scalars().all()))

    async def replace_close_plan(
        self,
        tenant_id: str,
        deal_id: str,
        items: list[ClosePlanItemSpec],
        target_close_date: datetime | None,
        expected_version: int | None = None,
    ) -> ClosePlan:
        """Atomically replace the deal's entire close plan.

        The deal row is locked FOR UPDATE, the previous item set is deleted,
        and the new items are written with sort_order equal to list position,
        all in one transaction. The plan version increments on every replace.

        Args:
            tenant_id: Tenant UUID string.
            deal_id: Deal UUID string.
            items: New item set, in order.
            target_close_date: Plan target close date.
            expected_version: If given, the caller's view of the current plan
                version (0 for "no plan yet").

        Raises:
            NotFoundError: If the deal does not exist.
            ConflictError: On a stale expected_version or a concurrent
                first-plan insert.
        """
        async for session in self._session_factory():
            deal = await self._load_deal(session, tenant_id, deal_id, for_update=True)

            result = await session.execute(
                select(ClosePlanModel)
                .where(ClosePlanModel.deal_id == deal.id)
                .with_for_update()
            )
            plan = result.scalar_one_or_none()
            current_version = plan.version if plan is not None else 0
            if expected_version is not None and expected_version != current_version:
                await session.rollback()
                raise ConflictError(
                    f"Close plan for deal {deal_id} is at version {current_version}, "
                    f"expected {expected_version}; resubmit the full request"
                )

            now = _utcnow()
            if plan is None:
                plan = ClosePlanModel(
                    id=uuid.uuid4(),
                    tenant_id=deal.tenant_id,
                    deal_id=deal.id,
                    target_close_date=target_close_date,
                    version=1,
                    created_at=now,
                    updated_at=now,
                )
                session.add(plan)
            else:
                await session.execute(
                    delete(ClosePlanItemModel).where(ClosePlanItemModel.plan_id == plan.id)
                )
                plan.target_close_date = target_close_date
                plan.version = current_version + 1
                plan.updated_at = now

            item_models = [
                ClosePlanItemModel(
                    id=uuid.uuid4(),
                    tenant_id=deal.tenant_id,
                    plan_id=plan.id,
                    title=entry.title,
                    description=entry.description,
                    category=entry.category,
                    sort_order=index,
                    due_date=entry.due_date,
                    owner_id=entry.owner_id,
                    status=entry.status.value,
                    completed_at=entry.completed_at,
                    task_ids=list(entry.task_ids),
                )
                for index, entry in enumerate(items)
            ]
            session.add_all(item_models)

            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                logger.warning("close_plan.write_conflict", tenant_id=tenant_id, deal_id=deal_id)
                raise ConflictError(
                    f"Concurrent close plan regeneration on deal {deal_id}; "
                    "resubmit the full request"
                ) from exc

            return _model_to_plan(plan, item_models)

    async def update_close_plan_item(
        self,
        tenant_id: str,
        deal_id: str,
        item_id: str,
        mutator: ItemMutator,
    ) -> ClosePlanItem:
        """Apply mutator to one plan item under a row lock and persist its status.

        Raises:
            NotFoundError: If the plan or item does not exist.
        """
        async for session in self._session_factory():
            plan_result = await session.execute(
                select(ClosePlanModel).where(
                    ClosePlanModel.tenant_id == uuid.UUID(tenant_id),
                    ClosePlanModel.deal_id == _parse_uuid(deal_id, "Deal"),
                )
            )
            plan = plan_result.scalar_one_or_none()
            if plan is None:
                raise NotFoundError("Close plan", deal_id)

            item_result = await session.execute(
                select(ClosePlanItemModel)
                .where(
                    ClosePlanItemModel.plan_id == plan.id,
                    ClosePlanItemModel.id == _parse_uuid(item_id, "Close plan item"),
                )
                .with_for_update()
            )
            model = item_result.scalar_one_or_none()
            if model is None:
                raise NotFoundError("Close plan item", item_id)

            updated = mutator(_model_to_plan_item(model))
            model.status = updated.status.value
            model.completed_at = updated.completed_at
            plan.updated_at = _utcnow()
            await session.commit()
            return _model_to_plan_item(model)

    # ── Risk History ────────────────────────────────────────────────────────

    async def append_risk_score(self, tenant_id: str, score: RiskScore) -> RiskScore:
        """Append one immutable risk history entry."""
        async for session in self._session_factory():
            model = RiskScoreModel(
                id=uuid.UUID(score.id),
                tenant_id=uuid.UUID(tenant_id),
                deal_id=_parse_uuid(score.deal_id, "Deal"),
                computed_at=score.computed_at,
                total=score.total,
                state=score.state.value,
                factors=dict(score.factors),
            )
            session.add(model)
            await session.commit()
            return _model_to_risk_score(model)

    async def list_risk_scores(
        self, tenant_id: str, deal_id: str, limit: int | None = None
    ) -> list[RiskScore]:
        """List risk history newest first."""
        async for session in self._session_factory():
            stmt = (
                select(RiskScoreModel)
                .where(
                    RiskScoreModel.tenant_id == uuid.UUID(tenant_id),
                    RiskScoreModel.deal_id == _parse_uuid(deal_id, "Deal"),
                )
                .order_by(RiskScoreModel.computed_at.desc(), RiskScoreModel.id.desc())
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [_model_to_risk_score(m) for m in result.scalars().all()]

    async def latest_risk_score(
        self, tenant_id: str, deal_id: str
    ) -> RiskScore | None:
        scores = await self.list_risk_scores(tenant_id, deal_id, limit=1)
        return scores[0] if scores else None

    # ── Enforcement Log ─────────────────────────────────────────────────────

    async def list_enforcement_events(
        self, tenant_id: str, deal_id: str
    ) -> list[EnforcementEvent]:
        """List the enforcement log newest first (by sequence)."""
        async for session in self._session_factory():
            stmt = (
                select(EnforcementEventModel)
                .where(
                    EnforcementEventModel.tenant_id == uuid.UUID(tenant_id),
                    EnforcementEventModel.deal_id == _parse_uuid(deal_id, "Deal"),
                )
                .order_by(EnforcementEventModel.sequence.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_event(m) for m in result.scalars().all()]

    # ── Proof Packs ─────────────────────────────────────────────────────────

    async def add_proof_pack(self, tenant_id: str, pack: ProofPack) -> ProofPack:
        """Persist a proof pack once. There is no update path."""
        async for session in self._session_factory():
            model = ProofPackModel(
                id=uuid.UUID(pack.id),
                tenant_id=uuid.UUID(tenant_id),
                deal_id=_parse_uuid(pack.deal_id, "Deal"),
                deal_name=pack.deal_name,
                account_name=pack.account_name,
                deal_value_micros=pack.deal_value_micros,
                stage=pack.stage.value,
                close_date=pack.close_date,
                evidence_snapshot=list(pack.evidence_snapshot),
                stakeholder_snapshot=list(pack.stakeholder_snapshot),
                activity_summary=dict(pack.activity_summary),
                win_probability=pack.win_probability,
                risk_score=pack.risk_score,
                risk_state=_column_value(pack.risk_state),
                executive_summary=pack.executive_summary,
                generated_by_id=pack.generated_by_id,
                generated_by_name=pack.generated_by_name,
                generated_at=pack.generated_at,
            )
            session.add(model)
            await session.commit()
            return _model_to_proof_pack(model)

    async def list_proof_packs(
        self, tenant_id: str, deal_id: str
    ) -> list[ProofPack]:
        """List proof packs newest first."""
        async for session in self._session_factory():
            stmt = (
                select(ProofPackModel)
                .where(
                    ProofPackModel.tenant_id == uuid.UUID(tenant_id),
                    ProofPackModel.deal_id == _parse_uuid(deal_id, "Deal"),
                )
                .order_by(ProofPackModel.generated_at.desc(), ProofPackModel.id.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_proof_pack(m) for m in result.scalars().all()]
