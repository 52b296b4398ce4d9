"""
Review lifecycle -- the Document review-status state machine.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* ``REVIEW_TRANSITIONS`` defines the only valid review-status transitions.
  VERIFIED is terminal; nothing moves a document backwards out of it.
  Soft-delete/restore of the owning invoice does not touch review status.
* AWAITING_REVIEW -> NONE is the extraction-failure edge: the document
  goes back to re-extraction, not on to verification.
"""

from __future__ import annotations

from spend_kernel.domain.values import ReviewStatus
from spend_kernel.exceptions import InvalidReviewTransitionError


REVIEW_TRANSITIONS: dict[ReviewStatus, frozenset[ReviewStatus]] = {
    ReviewStatus.NONE: frozenset({ReviewStatus.AWAITING_REVIEW}),
    ReviewStatus.AWAITING_REVIEW: frozenset({
        ReviewStatus.VERIFIED,
        ReviewStatus.NONE,  # extraction failed, re-extract
    }),
    ReviewStatus.VERIFIED: frozenset(),
}

TERMINAL_REVIEW_STATUSES: frozenset[ReviewStatus] = frozenset({
    ReviewStatus.VERIFIED,
})


def can_transition(current: ReviewStatus, target: ReviewStatus) -> bool:
    """True if ``current -> target`` is an edge of the state machine."""
    return ReviewStatus(target) in REVIEW_TRANSITIONS[ReviewStatus(current)]


def ensure_review_transition(current: ReviewStatus, target: ReviewStatus) -> None:
    """
    Validate a review-status transition.

    Raises:
        InvalidReviewTransitionError: If the edge does not exist.
    """
    if not can_transition(current, target):
        raise InvalidReviewTransitionError(
            ReviewStatus(current).value, ReviewStatus(target).value,
        )
