"""Error taxonomy for the deal governance engine.

Every failure raised by the governance services carries a stable,
machine-readable ``kind`` plus a human-readable message. The API layer maps
each kind to an HTTP status and renders ``{"kind": ..., "message": ...}``.

- ValidationError: unknown enum value or missing required field (raised
  before any write)
- NotFoundError: deal, plan, or plan item absent
- EnforcementError: mutation blocked by a frozen deal (carries reason code)
- ConflictError: concurrent regeneration detected; resubmit the full request
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class GovernanceError(Exception):
    """Base class for all governance failures."""

    kind: str = "governance_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(GovernanceError):
    """Input outside a closed domain, or a required field is missing."""

    kind = "validation_error"


class NotFoundError(GovernanceError):
    """Referenced deal, close plan, or plan item does not exist."""

    kind = "not_found"

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class EnforcementError(GovernanceError):
    """Deal mutation blocked because the deal is FROZEN.

    Carries the active reason code so callers can render remediation guidance.
    """

    kind = "enforcement_blocked"

    def __init__(self, deal_id: str, reason_code: Enum | None, capability: Enum) -> None:
        self.deal_id = deal_id
        self.reason_code = reason_code
        self.capability = capability
        reason = reason_code.value if reason_code is not None else "UNKNOWN"
        super().__init__(
            f"Deal {deal_id} is frozen ({reason}); "
            f"{capability.value} is blocked until the deal is returned to ACTIVE"
        )

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["reason_code"] = (
            self.reason_code.value if self.reason_code is not None else None
        )
        payload["capability"] = self.capability.value
        return payload


class ConflictError(GovernanceError):
    """Concurrent write detected; the caller must resubmit the whole request."""

    kind = "conflict"


def parse_enum(enum_cls: type[Enum], value: Any, field: str) -> Any:
    """Parse a raw value into a closed enum, rejecting anything unrecognized.

    Args:
        enum_cls: Target enum class.
        value: Raw value (enum member or string).
        field: Field name used in the error message.

    Returns:
        The matching enum member.

    Raises:
        ValidationError: If value is missing or not a member of enum_cls.
    """
    if isinstance(value, enum_cls):
        return value
    if value is None or value == "":
        raise ValidationError(f"{field} is required")
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"Invalid {field}: {value!r}. Allowed values: {allowed}"
        ) from None
