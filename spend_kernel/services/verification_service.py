"""
VerificationService -- extraction and review lifecycle of Documents.

Responsibility:
    Drives a Document through the review state machine
    (domain/review_lifecycle.py) and performs the human verification flip.
    Also owns soft-delete/restore of manual invoices (mirrored onto the
    canonical record) and the explicit cascading purge.

Architecture position:
    Kernel > Services.  The pure decision lives in
    domain/verification_gate.py; this service only loads facts for it.

Invariants enforced:
    - Every review-status change is validated by ensure_review_transition().
    - The VERIFIED flip is a guarded conditional UPDATE on both the
      Document (still AWAITING_REVIEW, not deleted) and the Invoice (still
      unverified).  A guard that matches zero rows means another actor won
      the race: the savepoint is rolled back and ReviewStateConflictError is
      raised.  Nothing is silently overwritten.
    - Soft-delete and restore of an Invoice always carry the same
      deleted_at onto its CanonicalInvoice.
    - Hard deletion only through purge_document(), which removes every
      dependent row in one pass.

Failure modes:
    - DocumentNotFoundError / InvoiceNotFoundError for unknown ids.
    - InvalidReviewTransitionError for disallowed transitions.
    - ReviewStateConflictError when a guarded update loses a race.

Audit relevance:
    Manual verification records verification_source HUMAN and verified_at.
    No InvoiceAuditEvent is written for it; those are reserved for
    automatic approvals.
"""

from __future__ import annotations

from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import delete, select, update

from spend_kernel.domain.review_lifecycle import ensure_review_transition
from spend_kernel.domain.values import (
    ProcessingStatus,
    ReviewStatus,
    SupplierStatus,
    VerificationSource,
)
from spend_kernel.domain.verification_gate import (
    DocumentFacts,
    InvoiceFacts,
    QualityFacts,
    VerificationDecision,
    evaluate_verification,
)
from spend_kernel.exceptions import (
    DocumentNotFoundError,
    InvoiceNotFoundError,
    ReviewStateConflictError,
)
from spend_kernel.logging_config import get_logger
from spend_kernel.models.audit_event import InvoiceAuditEvent
from spend_kernel.models.canonical import CanonicalInvoice, CanonicalLine
from spend_kernel.models.document import Document
from spend_kernel.models.invoice import Invoice, InvoiceLineItem
from spend_kernel.models.supplier import Supplier
from spend_kernel.services.base import BaseService

logger = get_logger("services.verification")


class VerificationService(BaseService):
    """Review lifecycle operations on Documents and manual Invoices."""

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def _get_document(self, document_id: UUID) -> Document:
        document = self.session.get(Document, document_id)
        if document is None:
            raise DocumentNotFoundError(str(document_id))
        return document

    def _get_invoice(self, invoice_id: UUID) -> Invoice:
        invoice = self.session.get(Invoice, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return invoice

    def invoice_for_document(self, document_id: UUID) -> Invoice | None:
        return self.session.execute(
            select(Invoice).where(Invoice.document_id == document_id)
        ).scalar_one_or_none()

    def _canonical_for_invoice(self, invoice_id: UUID) -> CanonicalInvoice | None:
        return self.session.execute(
            select(CanonicalInvoice).where(CanonicalInvoice.invoice_id == invoice_id)
        ).scalar_one_or_none()

    def gate_facts(
        self,
        document: Document,
        invoice: Invoice | None,
    ) -> tuple[DocumentFacts, InvoiceFacts | None, QualityFacts | None]:
        """
        Load the literal facts the Verification Gate needs.

        A supplier id that points at a missing supplier yields
        ``supplier_status=None`` (reported as NO_SUPPLIER), never an error.
        A soft-deleted canonical record counts as missing.
        """
        invoice_facts = None
        quality_facts = None
        if invoice is not None:
            supplier_status = None
            if invoice.supplier_id is not None:
                supplier = self.session.get(Supplier, invoice.supplier_id)
                if supplier is not None:
                    supplier_status = SupplierStatus(supplier.status)
            invoice_facts = InvoiceFacts(
                supplier_id=invoice.supplier_id,
                supplier_status=supplier_status,
                invoice_date=invoice.invoice_date,
                total=invoice.total,
            )
            canonical = self._canonical_for_invoice(invoice.id)
            if canonical is not None and canonical.deleted_at is None:
                quality_facts = canonical.to_facts()
        return document.to_facts(), invoice_facts, quality_facts

    def evaluate_document(
        self,
        document_id: UUID,
        *,
        auto_approve_enabled: bool = True,
    ) -> VerificationDecision:
        """Run the Verification Gate against the stored state of a document."""
        document = self._get_document(document_id)
        invoice = self.invoice_for_document(document_id)
        document_facts, invoice_facts, quality_facts = self.gate_facts(document, invoice)
        return evaluate_verification(
            document_facts,
            invoice_facts,
            quality_facts,
            auto_approve_enabled=auto_approve_enabled,
        )

    # -------------------------------------------------------------------------
    # Extraction lifecycle
    # -------------------------------------------------------------------------

    def complete_extraction(
        self,
        document_id: UUID,
        actor_id: UUID,
        confidence_score: Any = None,
        validation_errors: Sequence[Any] | None = None,
    ) -> Document:
        """Record a finished extraction and queue the document for review."""
        document = self._get_document(document_id)
        ensure_review_transition(document.review_status, ReviewStatus.AWAITING_REVIEW)

        document.processing_status = ProcessingStatus.EXTRACTION_COMPLETE.value
        document.review_status = ReviewStatus.AWAITING_REVIEW.value
        document.confidence_score = confidence_score
        document.validation_errors = list(validation_errors) if validation_errors else None
        document.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "extraction_completed",
            extra={
                "document_id": str(document.id),
                "confidence_score": str(confidence_score) if confidence_score is not None else None,
                "validation_error_count": len(validation_errors or ()),
            },
        )
        return document

    def fail_extraction(self, document_id: UUID, actor_id: UUID) -> Document:
        """Record a failed extraction; an awaiting document returns to NONE."""
        document = self._get_document(document_id)
        current = ReviewStatus(document.review_status)
        if current != ReviewStatus.NONE:
            ensure_review_transition(current, ReviewStatus.NONE)

        document.processing_status = ProcessingStatus.EXTRACTION_FAILED.value
        document.review_status = ReviewStatus.NONE.value
        document.updated_by_id = actor_id
        self.session.flush()

        logger.warning(
            "extraction_failed",
            extra={"document_id": str(document.id), "previous_review_status": current.value},
        )
        return document

    def record_manual_edit(self, document_id: UUID, actor_id: UUID) -> Document:
        """Mark the document as edited by a user; blocks automatic approval."""
        document = self._get_document(document_id)
        document.manually_edited_at = self.clock.now()
        document.updated_by_id = actor_id
        self.session.flush()
        logger.info("document_manually_edited", extra={"document_id": str(document.id)})
        return document

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def verify_manually(self, document_id: UUID, actor_id: UUID) -> Document:
        """
        Verify a document on behalf of a human reviewer.

        Raises:
            DocumentNotFoundError: Unknown document.
            InvoiceNotFoundError: The document has no manual invoice.
            InvalidReviewTransitionError: Not AWAITING_REVIEW.
            ReviewStateConflictError: Lost a race to another verifier.
        """
        document = self._get_document(document_id)
        ensure_review_transition(document.review_status, ReviewStatus.VERIFIED)
        invoice = self.invoice_for_document(document_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"document:{document_id}")

        now = self.clock.now()
        savepoint = self.session.begin_nested()
        document_rows = self.session.execute(
            update(Document)
            .where(
                Document.id == document_id,
                Document.review_status == ReviewStatus.AWAITING_REVIEW.value,
                Document.deleted_at.is_(None),
            )
            .values(
                review_status=ReviewStatus.VERIFIED.value,
                verification_source=VerificationSource.HUMAN.value,
                verified_at=now,
                updated_by_id=actor_id,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        invoice_rows = self.session.execute(
            update(Invoice)
            .where(Invoice.id == invoice.id, Invoice.is_verified.is_(False))
            .values(is_verified=True, updated_by_id=actor_id)
            .execution_options(synchronize_session=False)
        ).rowcount

        if document_rows != 1 or invoice_rows != 1:
            savepoint.rollback()
            logger.warning(
                "manual_verification_conflict",
                extra={"document_id": str(document_id), "invoice_id": str(invoice.id)},
            )
            raise ReviewStateConflictError(str(document_id), ReviewStatus.AWAITING_REVIEW.value)

        savepoint.commit()
        self.session.expire(document)
        self.session.expire(invoice)
        logger.info(
            "document_verified",
            extra={
                "document_id": str(document_id),
                "invoice_id": str(invoice.id),
                "verification_source": VerificationSource.HUMAN.value,
            },
        )
        return document

    # -------------------------------------------------------------------------
    # Soft delete / restore / purge
    # -------------------------------------------------------------------------

    def soft_delete_invoice(self, invoice_id: UUID, actor_id: UUID) -> Invoice:
        invoice = self._get_invoice(invoice_id)
        if invoice.deleted_at is not None:
            return invoice
        now = self.clock.now()
        invoice.deleted_at = now
        invoice.updated_by_id = actor_id
        canonical = self._canonical_for_invoice(invoice.id)
        if canonical is not None:
            canonical.deleted_at = now
            canonical.updated_by_id = actor_id
        self.session.flush()
        logger.info(
            "invoice_soft_deleted",
            extra={"invoice_id": str(invoice.id), "canonical_mirrored": canonical is not None},
        )
        return invoice

    def restore_invoice(self, invoice_id: UUID, actor_id: UUID) -> Invoice:
        invoice = self._get_invoice(invoice_id)
        if invoice.deleted_at is None:
            return invoice
        invoice.deleted_at = None
        invoice.updated_by_id = actor_id
        canonical = self._canonical_for_invoice(invoice.id)
        if canonical is not None:
            canonical.deleted_at = None
            canonical.updated_by_id = actor_id
        self.session.flush()
        logger.info(
            "invoice_restored",
            extra={"invoice_id": str(invoice.id), "canonical_mirrored": canonical is not None},
        )
        return invoice

    def purge_document(self, document_id: UUID) -> dict[str, int]:
        """
        Hard-delete a document and everything derived from it.

        Removes canonical lines, the canonical invoice, audit events, line
        items, the invoice, and the document.  Returns deleted row counts by
        table.
        """
        document = self._get_document(document_id)
        invoice = self.invoice_for_document(document_id)
        counts: dict[str, int] = {}

        if invoice is not None:
            canonical = self._canonical_for_invoice(invoice.id)
            if canonical is not None:
                counts["canonical_lines"] = self.session.execute(
                    delete(CanonicalLine)
                    .where(CanonicalLine.canonical_invoice_id == canonical.id)
                ).rowcount
                counts["canonical_invoices"] = self.session.execute(
                    delete(CanonicalInvoice)
                    .where(CanonicalInvoice.id == canonical.id)
                ).rowcount
            counts["invoice_line_items"] = self.session.execute(
                delete(InvoiceLineItem)
                .where(InvoiceLineItem.invoice_id == invoice.id)
            ).rowcount

        counts["audit_events"] = self.session.execute(
            delete(InvoiceAuditEvent)
            .where(InvoiceAuditEvent.document_id == document_id)
        ).rowcount

        if invoice is not None:
            counts["invoices"] = self.session.execute(
                delete(Invoice)
                .where(Invoice.id == invoice.id)
            ).rowcount

        counts["documents"] = self.session.execute(
            delete(Document)
            .where(Document.id == document.id)
        ).rowcount

        logger.warning(
            "document_purged",
            extra={"document_id": str(document_id), "deleted": counts},
        )
        return counts
