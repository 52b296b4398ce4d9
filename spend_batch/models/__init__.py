"""ORM models for retro batch persistence."""

from spend_batch.models.batch import VerificationBatchModel

__all__ = ["VerificationBatchModel"]
