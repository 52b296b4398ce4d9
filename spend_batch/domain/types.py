"""
spend_batch.domain.types -- Pure frozen dataclasses for retro batch approval.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.

Invariants enforced:
    - All DTOs are frozen dataclasses (immutable).
    - RetroBatchResult has the same shape for real and dry runs, and for a
      replayed (idempotent retry) batch; ``reused_batch`` tells them apart.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


# Skip reason for a candidate whose guarded update matched zero rows
STATE_CHANGED = "STATE_CHANGED"


# =============================================================================
# Status enums
# =============================================================================


class BatchState(str, Enum):
    """Lifecycle of a verification batch record."""

    IN_PROGRESS = "in_progress"  # Created, approvals being applied
    COMPLETED = "completed"  # Result stored; retries replay it


# =============================================================================
# Candidate DTOs
# =============================================================================


@dataclass(frozen=True)
class RetroCandidate:
    """A document that passed the SQL pre-filter for automatic approval."""

    document_id: UUID
    invoice_id: UUID
    supplier_id: UUID
    supplier_name: str
    invoice_number: str | None
    invoice_date: date
    total: Decimal
    confidence_score: Decimal | None


@dataclass(frozen=True)
class SupplierCandidateCount:
    supplier_id: UUID
    supplier_name: str
    candidate_count: int


# =============================================================================
# Result DTOs
# =============================================================================


@dataclass(frozen=True)
class RetroBatchResult:
    """Immutable result of one retro batch run.

    ``skip_reasons`` is a histogram keyed by gate reason code, plus
    ``STATE_CHANGED`` for approvals that lost a race.
    """

    batch_id: UUID
    idempotency_key: str
    state: BatchState
    dry_run: bool
    approved_count: int
    skipped_count: int
    approved_invoice_ids: tuple[UUID, ...] = ()
    skip_reasons: dict[str, int] = field(default_factory=dict)
    remaining_candidate_count: int = 0
    reused_batch: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": str(self.batch_id),
            "idempotency_key": self.idempotency_key,
            "state": self.state.value,
            "dry_run": self.dry_run,
            "approved_count": self.approved_count,
            "skipped_count": self.skipped_count,
            "approved_invoice_ids": [str(i) for i in self.approved_invoice_ids],
            "skip_reasons": dict(self.skip_reasons),
            "remaining_candidate_count": self.remaining_candidate_count,
            "reused_batch": self.reused_batch,
        }


@dataclass(frozen=True)
class RetroSummary:
    """Preview of what a retro batch would do.

    ``eligible_count_estimate`` is exact when every candidate fits in the
    sample, otherwise extrapolated from the sample's pass rate.
    """

    candidate_count: int
    is_truncated: bool
    eligible_count_estimate: int
    sample_size: int
    by_supplier: tuple[SupplierCandidateCount, ...]
    preview: tuple[RetroCandidate, ...]
    requirements: dict[str, Any]
    entitled: bool
    auto_approve_enabled: bool

    @property
    def can_run(self) -> bool:
        return self.entitled and self.auto_approve_enabled
