"""
ORM model for verification batch persistence.

Contract:
    VerificationBatchModel persists one retro batch run: its idempotency
    key, request fingerprint, state, counts, approved invoice ids, and
    skip-reason histogram.  ``to_dto()`` converts to RetroBatchResult.

Architecture: spend_batch/models.  Imports from spend_kernel.db.base only.

Invariants enforced:
    - (organisation_id, location_id, idempotency_key) is UNIQUE.  A
      concurrent duplicate submission fails the insert and is resolved by
      re-reading the winner and comparing fingerprints.
    - The record is independent of the documents it protects; it is the
      exactly-once marker for the batch's side effects.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, Boolean, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from spend_kernel.db.base import TrackedBase, UUIDString

from spend_batch.domain.types import BatchState, RetroBatchResult


class VerificationBatchModel(TrackedBase):
    """Persistent retro batch record."""

    __tablename__ = "verification_batches"

    __table_args__ = (
        UniqueConstraint(
            "organisation_id", "location_id", "idempotency_key",
            name="uq_verification_batch_key",
        ),
        Index("ix_verification_batches_state", "state"),
    )

    organisation_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False)
    request_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approved_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Invoice ids as strings, in approval order
    approved_invoice_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    skip_reasons: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    remaining_candidate_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_dto(self, reused_batch: bool = False) -> RetroBatchResult:
        return RetroBatchResult(
            batch_id=self.id,
            idempotency_key=self.idempotency_key,
            state=BatchState(self.state),
            dry_run=self.dry_run,
            approved_count=self.approved_count,
            skipped_count=self.skipped_count,
            approved_invoice_ids=tuple(UUID(i) for i in self.approved_invoice_ids or ()),
            skip_reasons=dict(self.skip_reasons or {}),
            remaining_candidate_count=self.remaining_candidate_count,
            reused_batch=reused_batch,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )

    def __repr__(self) -> str:
        return f"<VerificationBatch {self.idempotency_key} {self.state}>"
