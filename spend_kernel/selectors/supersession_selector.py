"""
Module: spend_kernel.selectors.supersession_selector
Responsibility: Supersession Resolver.  Determines which externally-synced
    invoices must be excluded from analytics because a manual counterpart
    exists.
Architecture position: Kernel > Selectors.  Read-only.

Invariants enforced:
    - superseded: external ids referenced by a manual invoice that is
      verified (Invoice.is_verified and Document VERIFIED) and not
      soft-deleted, document included.
    - attachment_gated: external ids that have any live attached Document
      (Document.source_external_id) or are referenced by a manual invoice
      that is not yet verified.  "Has an attachment" gates inclusion on its
      own, independently of supersession.
    - An excluded external invoice disappears from spend, quantity, and
      pricing together: ExternalLineSelector drops whole invoices before any
      line is projected.

Failure modes:
    - None beyond database errors, which propagate.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import and_, or_, select

from spend_kernel.domain.periods import DateWindow
from spend_kernel.domain.values import AnalyticsScope, ReviewStatus
from spend_kernel.logging_config import get_logger
from spend_kernel.models.document import Document
from spend_kernel.models.invoice import Invoice
from spend_kernel.selectors.base import BaseSelector

logger = get_logger("selectors.supersession")


@dataclass(frozen=True)
class ExclusionSet:
    """External invoice ids excluded from analytics, by cause."""

    superseded: frozenset[str] = frozenset()
    attachment_gated: frozenset[str] = frozenset()

    @property
    def excluded(self) -> frozenset[str]:
        return self.superseded | self.attachment_gated

    def is_excluded(self, external_id: str) -> bool:
        return external_id in self.superseded or external_id in self.attachment_gated


class SupersessionResolver(BaseSelector):
    """Resolve the external-origin exclusion set for a scope."""

    def resolve(
        self,
        scope: AnalyticsScope,
        window: DateWindow | None = None,
    ) -> ExclusionSet:
        """
        Compute the exclusion set.

        Args:
            scope: Organisation and optional location.
            window: Optional lookback over the manual invoice date.  Manual
                invoices without a date are always considered.
        """
        superseded = self._superseded_ids(scope, window)
        gated = (self._attached_ids(scope) | self._pending_reference_ids(scope)) - superseded

        logger.debug(
            "supersession_resolved",
            extra={
                "organisation_id": str(scope.organisation_id),
                "location_id": str(scope.location_id) if scope.location_id else None,
                "superseded_count": len(superseded),
                "attachment_gated_count": len(gated),
            },
        )
        return ExclusionSet(superseded=frozenset(superseded), attachment_gated=frozenset(gated))

    def superseded_ids(self, scope: AnalyticsScope) -> frozenset[str]:
        return frozenset(self._superseded_ids(scope, None))

    # -------------------------------------------------------------------------

    def _superseded_ids(
        self,
        scope: AnalyticsScope,
        window: DateWindow | None,
    ) -> set[str]:
        stmt = (
            select(Invoice.supersedes_external_id)
            .join(Document, Document.id == Invoice.document_id)
            .where(
                Invoice.organisation_id == scope.organisation_id,
                Invoice.supersedes_external_id.is_not(None),
                Invoice.is_verified.is_(True),
                Invoice.deleted_at.is_(None),
                Document.deleted_at.is_(None),
                Document.review_status == ReviewStatus.VERIFIED.value,
            )
            .distinct()
        )
        if scope.location_id is not None:
            stmt = stmt.where(Invoice.location_id == scope.location_id)
        if window is not None:
            stmt = stmt.where(
                or_(
                    Invoice.invoice_date.is_(None),
                    and_(
                        Invoice.invoice_date >= window.start,
                        Invoice.invoice_date <= window.end,
                    ),
                )
            )
        return set(self.session.execute(stmt).scalars())

    def _attached_ids(self, scope: AnalyticsScope) -> set[str]:
        stmt = (
            select(Document.source_external_id)
            .where(
                Document.organisation_id == scope.organisation_id,
                Document.source_external_id.is_not(None),
                Document.deleted_at.is_(None),
            )
            .distinct()
        )
        if scope.location_id is not None:
            stmt = stmt.where(Document.location_id == scope.location_id)
        return set(self.session.execute(stmt).scalars())

    def _pending_reference_ids(self, scope: AnalyticsScope) -> set[str]:
        stmt = (
            select(Invoice.supersedes_external_id)
            .join(Document, Document.id == Invoice.document_id)
            .where(
                Invoice.organisation_id == scope.organisation_id,
                Invoice.supersedes_external_id.is_not(None),
                Invoice.deleted_at.is_(None),
                Document.deleted_at.is_(None),
            )
            .distinct()
        )
        if scope.location_id is not None:
            stmt = stmt.where(Invoice.location_id == scope.location_id)
        return set(self.session.execute(stmt).scalars())
