"""Batch services: retro approval processor."""

from spend_batch.services.retro_approval import (
    MAX_APPROVE_PER_RUN,
    MAX_CANDIDATES,
    RetroApprovalProcessor,
    request_fingerprint,
)

__all__ = [
    "MAX_APPROVE_PER_RUN",
    "MAX_CANDIDATES",
    "RetroApprovalProcessor",
    "request_fingerprint",
]
