"""Pure types for retro batch approval.  ZERO I/O."""

from spend_batch.domain.types import (
    BatchState,
    RetroBatchResult,
    RetroCandidate,
    RetroSummary,
    SupplierCandidateCount,
)

__all__ = [
    "BatchState",
    "RetroBatchResult",
    "RetroCandidate",
    "RetroSummary",
    "SupplierCandidateCount",
]
