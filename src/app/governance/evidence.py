"""Evidence Ledger -- per-category qualification evidence for a deal.

The ledger is always logically complete: read_evidence returns one entry per
EvidenceCategory, synthesizing MISSING entries for categories that have no
stored row. Upserts are keyed on (deal, category) and safe to retry.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.app.governance.errors import NotFoundError, parse_enum
from src.app.governance.repository import GovernanceRepository
from src.app.governance.schemas import (
    EvidenceCategory,
    EvidenceRecord,
    EvidenceStatus,
)

logger = structlog.get_logger(__name__)


def complete_ledger(
    deal_id: str, stored: list[EvidenceRecord]
) -> list[EvidenceRecord]:
    """Fill in MISSING defaults so every category appears once, in enum order."""
    by_category = {record.category: record for record in stored}
    return [
        by_category.get(category)
        or EvidenceRecord(deal_id=deal_id, category=category)
        for category in EvidenceCategory
    ]


class EvidenceLedger:
    """Reads and writes MEDDPICC evidence through the governance repository.

    Args:
        repository: GovernanceRepository (or a test double with the same contract).
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        repository: GovernanceRepository,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def read_evidence(
        self, tenant_id: str, deal_id: str
    ) -> list[EvidenceRecord]:
        """Return exactly one entry per evidence category.

        Raises:
            NotFoundError: If the deal does not exist.
        """
        deal = await self._repository.get_deal(tenant_id, deal_id)
        if deal is None:
            raise NotFoundError("Deal", deal_id)
        stored = await self._repository.list_evidence(tenant_id, deal_id)
        return complete_ledger(deal_id, stored)

    async def upsert_evidence(
        self,
        tenant_id: str,
        deal_id: str,
        category: Any,
        status: Any,
        refs: list[str] | None = None,
        notes: str | None = None,
        editor_id: str | None = None,
    ) -> EvidenceRecord:
        """Create or replace the single record for one category.

        Category and status are validated against the closed enums before
        anything is written.

        Raises:
            ValidationError: If category or status is missing or unknown.
            NotFoundError: If the deal does not exist.
        """
        parsed_category = parse_enum(EvidenceCategory, category, "category")
        parsed_status = parse_enum(EvidenceStatus, status, "status")

        record = EvidenceRecord(
            deal_id=deal_id,
            category=parsed_category,
            status=parsed_status,
            evidence_refs=[str(ref) for ref in (refs or [])],
            notes=notes,
            last_updated_by_id=editor_id,
            updated_at=self._clock(),
        )
        saved = await self._repository.upsert_evidence(tenant_id, record)

        logger.info(
            "evidence.upserted",
            tenant_id=tenant_id,
            deal_id=deal_id,
            category=parsed_category.value,
            status=parsed_status.value,
            ref_count=len(saved.evidence_refs),
        )
        return saved
