"""
Module: spend_kernel.models.document
Responsibility: ORM persistence for ingested invoice documents (uploads,
    email attachments, attachments fetched from the accounting feed) and
    their extraction/review lifecycle.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value modules only.

Invariants enforced:
    - review_status only moves forward (domain/review_lifecycle.py).  The
      VERIFIED flip is a guarded conditional UPDATE issued by services, never
      a blind attribute assignment.
    - verification_source is NONE until review_status is VERIFIED.
    - Documents are soft-deleted via deleted_at; hard deletion only through
      VerificationService.purge_document().

Failure modes:
    - ReviewStateConflictError (raised by services) when a guarded update
      finds the document no longer in the expected state.

Audit relevance:
    verified_at and verification_source record who (HUMAN / AUTOMATIC) made a
    document count toward analytics and when.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from spend_kernel.db.base import TrackedBase, UUIDString
from spend_kernel.domain.values import (
    ProcessingStatus,
    ReviewStatus,
    VerificationSource,
)
from spend_kernel.domain.verification_gate import DocumentFacts


class Document(TrackedBase):
    """
    An ingested invoice document and its review state.

    Contract:
        One Document backs at most one manual Invoice.  ``source_external_id``
        is set when the document was fetched as an attachment of an
        externally-synced invoice; that external invoice is then gated out of
        analytics until a verified manual counterpart exists.
    """

    __tablename__ = "documents"

    __table_args__ = (
        Index("idx_document_org_location", "organisation_id", "location_id"),
        Index("idx_document_review", "review_status", "processing_status"),
        Index("idx_document_source_external", "source_external_id"),
    )

    organisation_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    processing_status: Mapped[ProcessingStatus] = mapped_column(
        String(30),
        nullable=False,
        default=ProcessingStatus.PENDING_EXTRACTION.value,
    )

    review_status: Mapped[ReviewStatus] = mapped_column(
        String(30),
        nullable=False,
        default=ReviewStatus.NONE.value,
    )

    verification_source: Mapped[VerificationSource] = mapped_column(
        String(20),
        nullable=False,
        default=VerificationSource.NONE.value,
    )

    verified_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Extraction confidence, 0-100
    confidence_score: Mapped[Decimal | None] = mapped_column(nullable=True)

    # List of validation messages from extraction; null or [] means none
    validation_errors: Mapped[list | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )

    # Set when a user edits extracted fields
    manually_edited_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # External invoice this document is an attachment of
    source_external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_facts(self) -> DocumentFacts:
        """Snapshot the fields the Verification Gate reads."""
        return DocumentFacts(
            review_status=ReviewStatus(self.review_status),
            processing_status=ProcessingStatus(self.processing_status),
            has_manual_edits=self.manually_edited_at is not None,
            confidence_score=self.confidence_score,
            validation_errors=self.validation_errors,
        )

    def __repr__(self) -> str:
        return f"<Document {self.id} {self.processing_status}/{self.review_status}>"
