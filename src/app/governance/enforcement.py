"""Enforcement Gate -- freeze/unfreeze state machine and gated deal mutations.

State machine: ACTIVE -> FROZEN (policy trigger or manual freeze, with a
reason code) -> ACTIVE (manual clear or remediation). No terminal state.

The append-only enforcement log is the record of truth. A deal's effective
state is the resulting_state of its latest event (ACTIVE when the log is
empty). The denormalized enforcement fields on the deal row are written in
the same transaction as every event; when they disagree with the log the
disagreement is logged as ``enforcement.state_divergence`` and reported by
check_integrity(), and the log wins: the next gate write on the deal (a
no-op transition included) rewrites the fields from the log without
appending an event.

Every decision runs inside GovernanceRepository.mutate_deal(), which holds the
deal row lock, so event sequence numbers are totally ordered per deal.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any

import pydantic
import structlog

from src.app.core.monitoring import (
    enforcement_blocks_total,
    enforcement_transitions_total,
)
from src.app.governance.errors import (
    EnforcementError,
    NotFoundError,
    ValidationError,
    parse_enum,
)
from src.app.governance.repository import (
    DealMutation,
    GovernanceRepository,
    PendingEvent,
)
from src.app.governance.schemas import (
    CLEAR_REASON_CODES,
    FREEZE_REASON_CODES,
    AmountChange,
    DealChange,
    DealRead,
    EnforcementEvent,
    EnforcementEventType,
    EnforcementReasonCode,
    EnforcementState,
    ForecastChange,
    IntegrityReport,
    RiskState,
    StageChange,
)

logger = structlog.get_logger(__name__)

_CHANGE_ADAPTER: pydantic.TypeAdapter[Any] = pydantic.TypeAdapter(DealChange)


def effective_state(
    latest: EnforcementEvent | None,
) -> tuple[EnforcementState, EnforcementReasonCode | None]:
    """Derive (state, active reason code) from the latest log entry."""
    if latest is None or latest.resulting_state == EnforcementState.ACTIVE:
        return EnforcementState.ACTIVE, None
    return EnforcementState.FROZEN, latest.reason_code


def parse_changes(changes: Sequence[Any]) -> list[StageChange | ForecastChange | AmountChange]:
    """Parse raw change payloads into typed DealChange variants.

    Raises:
        ValidationError: On an unknown kind or an invalid value.
    """
    parsed = []
    for change in changes:
        if isinstance(change, (StageChange, ForecastChange, AmountChange)):
            parsed.append(change)
            continue
        try:
            parsed.append(_CHANGE_ADAPTER.validate_python(change))
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid deal change: {exc.errors()[0]['msg']}") from exc
    return parsed


class EnforcementGate:
    """Policy layer gating deal mutations on the enforcement state.

    Args:
        repository: GovernanceRepository (or test double).
        clock: Returns the current UTC time; stamps stage changes.
    """

    def __init__(
        self,
        repository: GovernanceRepository,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _warn_on_divergence(
        self,
        tenant_id: str,
        deal: DealRead,
        state: EnforcementState,
        reason: EnforcementReasonCode | None,
    ) -> None:
        if deal.enforcement_state != state or deal.frozen_reason_code != reason:
            logger.warning(
                "enforcement.state_divergence",
                tenant_id=tenant_id,
                deal_id=deal.id,
                recorded_state=deal.enforcement_state.value,
                recorded_reason_code=(
                    deal.frozen_reason_code.value if deal.frozen_reason_code else None
                ),
                effective_state=state.value,
                effective_reason_code=reason.value if reason else None,
            )

    @staticmethod
    def _reconcile_updates(
        deal: DealRead,
        state: EnforcementState,
        reason: EnforcementReasonCode | None,
    ) -> dict[str, Any]:
        """Deal field writes that bring the recorded state back in line with the log."""
        if deal.enforcement_state == state and deal.frozen_reason_code == reason:
            return {}
        return {"enforcement_state": state, "frozen_reason_code": reason}

    # ── State Transitions ───────────────────────────────────────────────────

    async def set_enforcement_state(
        self,
        tenant_id: str,
        deal_id: str,
        state: Any,
        reason_code: Any = None,
        actor_id: str | None = None,
    ) -> tuple[DealRead, EnforcementEvent | None]:
        """Transition a deal between ACTIVE and FROZEN.

        Freezing requires a freeze reason code (defaults to MANUAL_FREEZE);
        clearing defaults to MANUAL_CLEAR. A request for the state the deal is
        already in appends nothing, but rewrites deal fields that have drifted
        from the log.

        Returns:
            Tuple of (deal after the call, appended event or None for a no-op).

        Raises:
            ValidationError: On an unknown state or a reason code that does
                not fit the transition.
            NotFoundError: If the deal does not exist.
        """
        target = parse_enum(EnforcementState, state, "state")
        if target == EnforcementState.FROZEN:
            reason = (
                parse_enum(EnforcementReasonCode, reason_code, "reason_code")
                if reason_code not in (None, "")
                else EnforcementReasonCode.MANUAL_FREEZE
            )
            if reason not in FREEZE_REASON_CODES:
                raise ValidationError(f"{reason.value} cannot be used to freeze a deal")
            event_type = EnforcementEventType.FREEZE
        else:
            reason = (
                parse_enum(EnforcementReasonCode, reason_code, "reason_code")
                if reason_code not in (None, "")
                else EnforcementReasonCode.MANUAL_CLEAR
            )
            if reason not in CLEAR_REASON_CODES:
                raise ValidationError(f"{reason.value} cannot be used to clear a deal")
            event_type = EnforcementEventType.UNFREEZE

        def decide(deal: DealRead, latest: EnforcementEvent | None) -> DealMutation:
            current, current_reason = effective_state(latest)
            self._warn_on_divergence(tenant_id, deal, current, current_reason)
            if current == target:
                # Nothing to append; rewrite drifted deal fields from the log
                corrections = self._reconcile_updates(deal, current, current_reason)
                if corrections:
                    logger.info(
                        "enforcement.state_reconciled",
                        tenant_id=tenant_id,
                        deal_id=deal.id,
                        state=current.value,
                    )
                return DealMutation(deal_updates=corrections)
            return DealMutation(
                event=PendingEvent(
                    event_type=event_type,
                    reason_code=reason,
                    resulting_state=target,
                    actor_id=actor_id,
                ),
                deal_updates={
                    "enforcement_state": target,
                    "frozen_reason_code": reason if target == EnforcementState.FROZEN else None,
                },
            )

        deal, event = await self._repository.mutate_deal(tenant_id, deal_id, decide)

        if event is None:
            logger.info(
                "enforcement.noop",
                tenant_id=tenant_id,
                deal_id=deal_id,
                state=target.value,
            )
        else:
            enforcement_transitions_total.labels(
                resulting_state=event.resulting_state.value,
                reason_code=event.reason_code.value,
            ).inc()
            logger.info(
                "enforcement.transitioned",
                tenant_id=tenant_id,
                deal_id=deal_id,
                state=event.resulting_state.value,
                reason_code=event.reason_code.value,
                sequence=event.sequence,
                actor_id=actor_id,
            )
        return deal, event

    async def apply_risk_policy(
        self,
        tenant_id: str,
        deal_id: str,
        risk_state: Any,
        actor_id: str | None = None,
    ) -> EnforcementEvent | None:
        """Policy trigger: freeze an ACTIVE deal whose risk state is RED.

        Returns the appended FREEZE event, or None when nothing changed.
        """
        parsed = parse_enum(RiskState, risk_state, "risk_state")
        if parsed != RiskState.RED:
            return None
        _, event = await self.set_enforcement_state(
            tenant_id,
            deal_id,
            EnforcementState.FROZEN,
            EnforcementReasonCode.DRI_RED_REQUIRES_ESCALATION,
            actor_id=actor_id,
        )
        return event

    # ── Gated Mutations ─────────────────────────────────────────────────────

    async def apply_deal_changes(
        self,
        tenant_id: str,
        deal_id: str,
        changes: Sequence[Any],
        actor_id: str | None = None,
    ) -> DealRead:
        """Apply gated deal mutations, or block all of them if the deal is FROZEN.

        A blocked request is recorded as a single MUTATION_BLOCKED event
        (resulting state stays FROZEN) before EnforcementError is raised.

        Raises:
            ValidationError: If a change is malformed or the list is empty.
            NotFoundError: If the deal does not exist.
            EnforcementError: If the deal's effective state is FROZEN.
        """
        parsed = parse_changes(changes)
        if not parsed:
            raise ValidationError("At least one deal change is required")

        now = self._clock()

        def decide(deal: DealRead, latest: EnforcementEvent | None) -> DealMutation:
            state, reason = effective_state(latest)
            self._warn_on_divergence(tenant_id, deal, state, reason)
            if state == EnforcementState.FROZEN:
                # Blocked attempts are logged; the deal itself is untouched
                return DealMutation(
                    event=PendingEvent(
                        event_type=EnforcementEventType.MUTATION_BLOCKED,
                        capability=parsed[0].capability,
                        reason_code=reason,
                        resulting_state=EnforcementState.FROZEN,
                        actor_id=actor_id,
                    )
                )
            updates = self._reconcile_updates(deal, state, reason)
            for change in parsed:
                updates.update(change.field_updates(now))
            return DealMutation(deal_updates=updates)

        deal, event = await self._repository.mutate_deal(tenant_id, deal_id, decide)

        if event is not None and event.event_type == EnforcementEventType.MUTATION_BLOCKED:
            enforcement_blocks_total.labels(
                capability=event.capability.value,
                reason_code=event.reason_code.value,
            ).inc()
            logger.warning(
                "enforcement.mutation_blocked",
                tenant_id=tenant_id,
                deal_id=deal_id,
                capability=event.capability.value,
                reason_code=event.reason_code.value,
                sequence=event.sequence,
                actor_id=actor_id,
            )
            raise EnforcementError(deal_id, event.reason_code, event.capability)

        logger.info(
            "deal.changes_applied",
            tenant_id=tenant_id,
            deal_id=deal_id,
            capabilities=[c.capability.value for c in parsed],
            version=deal.version,
        )
        return deal

    # ── Reads ───────────────────────────────────────────────────────────────

    async def list_enforcement_events(
        self, tenant_id: str, deal_id: str
    ) -> list[EnforcementEvent]:
        """Enforcement log, newest first."""
        deal = await self._repository.get_deal(tenant_id, deal_id)
        if deal is None:
            raise NotFoundError("Deal", deal_id)
        return await self._repository.list_enforcement_events(tenant_id, deal_id)

    async def check_integrity(self, tenant_id: str, deal_id: str) -> IntegrityReport:
        """Compare the deal's recorded enforcement fields against the log.

        Raises:
            NotFoundError: If the deal does not exist.
        """
        deal = await self._repository.get_deal(tenant_id, deal_id)
        if deal is None:
            raise NotFoundError("Deal", deal_id)
        events = await self._repository.list_enforcement_events(tenant_id, deal_id)
        state, reason = effective_state(events[0] if events else None)
        self._warn_on_divergence(tenant_id, deal, state, reason)
        return IntegrityReport(
            deal_id=deal_id,
            recorded_state=deal.enforcement_state,
            recorded_reason_code=deal.frozen_reason_code,
            effective_state=state,
            effective_reason_code=reason,
            event_count=len(events),
            consistent=(
                deal.enforcement_state == state and deal.frozen_reason_code == reason
            ),
        )
