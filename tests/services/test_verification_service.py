"""
Tests for VerificationService.

Invariants tested:
- Review-status changes follow the state machine.
- Manual verification flips Document and Invoice together, HUMAN source.
- A guarded update that loses a race raises ReviewStateConflictError and
  leaves nothing half-applied.
- Soft delete / restore mirror onto the canonical record.
- purge_document removes every dependent row.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update

from spend_kernel.domain.values import ProcessingStatus, ReviewStatus, VerificationSource
from spend_kernel.domain.verification_gate import RejectReason
from spend_kernel.exceptions import (
    DocumentNotFoundError,
    InvalidReviewTransitionError,
    InvoiceNotFoundError,
    ReviewStateConflictError,
)
from spend_kernel.models.audit_event import InvoiceAuditEvent
from spend_kernel.models.canonical import CanonicalInvoice, CanonicalLine
from spend_kernel.models.document import Document
from spend_kernel.models.invoice import Invoice, InvoiceLineItem
from spend_kernel.services.verification_service import VerificationService


@pytest.fixture
def service(session, clock):
    return VerificationService(session, clock)


@pytest.fixture
def supplier(make_supplier):
    return make_supplier()


@pytest.fixture
def pending_invoice(supplier, make_manual_invoice):
    return make_manual_invoice(
        supplier, date(2025, 5, 1),
        [{"description": "Milk", "quantity": 2, "unit_price": 3, "line_total": 6}],
        verified=False,
    )


def _count(session, model, *criteria) -> int:
    return session.execute(select(func.count()).select_from(model).where(*criteria)).scalar_one()


# =============================================================================
# Gate evaluation
# =============================================================================


class TestEvaluateDocument:
    def test_clean_document_approved(self, service, pending_invoice):
        decision = service.evaluate_document(pending_invoice.document_id)
        assert decision.approved is True

    def test_feature_disabled(self, service, pending_invoice):
        decision = service.evaluate_document(pending_invoice.document_id, auto_approve_enabled=False)
        assert decision.reason == RejectReason.FEATURE_DISABLED

    def test_warning_lines(self, service, supplier, make_manual_invoice):
        invoice = make_manual_invoice(
            supplier, date(2025, 5, 1), [{"description": "Milk", "line_total": 6}],
            verified=False, warning_lines=1,
        )
        assert service.evaluate_document(invoice.document_id).reason == RejectReason.HAS_WARNING_LINES

    def test_no_canonical_record(self, service, supplier, make_manual_invoice):
        invoice = make_manual_invoice(
            supplier, date(2025, 5, 1), [{"description": "Milk", "line_total": 6}],
            verified=False, with_canonical=False,
        )
        assert service.evaluate_document(invoice.document_id).reason == RejectReason.NO_QUALITY_DATA

    def test_no_supplier(self, service, make_manual_invoice):
        invoice = make_manual_invoice(
            None, date(2025, 5, 1), [{"description": "Milk", "line_total": 6}], verified=False,
        )
        assert service.evaluate_document(invoice.document_id).reason == RejectReason.NO_SUPPLIER

    def test_document_without_invoice(self, service, make_document):
        document = make_document()
        assert service.evaluate_document(document.id).reason == RejectReason.NO_SUPPLIER

    def test_unknown_document(self, service):
        with pytest.raises(DocumentNotFoundError):
            service.evaluate_document(uuid4())

    def test_manual_edit_blocks(self, service, pending_invoice, actor_id):
        service.record_manual_edit(pending_invoice.document_id, actor_id)
        decision = service.evaluate_document(pending_invoice.document_id)
        assert decision.reason == RejectReason.HAS_MANUAL_EDITS


# =============================================================================
# Extraction lifecycle
# =============================================================================


class TestExtraction:
    def test_complete_extraction_queues_for_review(self, service, make_document, actor_id):
        document = make_document(
            review_status=ReviewStatus.NONE,
            processing_status=ProcessingStatus.PENDING_EXTRACTION,
            confidence_score=None,
        )

        service.complete_extraction(document.id, actor_id, Decimal("93.5"), ["missing tax"])

        assert document.review_status == ReviewStatus.AWAITING_REVIEW.value
        assert document.processing_status == ProcessingStatus.EXTRACTION_COMPLETE.value
        assert document.confidence_score == Decimal("93.5")
        assert document.validation_errors == ["missing tax"]

    def test_empty_validation_errors_stored_as_null(self, service, make_document, actor_id):
        document = make_document(review_status=ReviewStatus.NONE)
        service.complete_extraction(document.id, actor_id, 95, [])
        assert document.validation_errors is None

    def test_fail_extraction_returns_to_none(self, service, make_document, actor_id):
        document = make_document()

        service.fail_extraction(document.id, actor_id)

        assert document.review_status == ReviewStatus.NONE.value
        assert document.processing_status == ProcessingStatus.EXTRACTION_FAILED.value

    def test_verified_document_cannot_be_reextracted(self, service, make_document, actor_id):
        document = make_document(review_status=ReviewStatus.VERIFIED)

        with pytest.raises(InvalidReviewTransitionError):
            service.complete_extraction(document.id, actor_id)
        with pytest.raises(InvalidReviewTransitionError):
            service.fail_extraction(document.id, actor_id)


# =============================================================================
# Manual verification
# =============================================================================


class TestVerifyManually:
    def test_flips_document_and_invoice(self, session, service, pending_invoice, actor_id):
        document = service.verify_manually(pending_invoice.document_id, actor_id)

        assert document.review_status == ReviewStatus.VERIFIED.value
        assert document.verification_source == VerificationSource.HUMAN.value
        assert document.verified_at is not None
        assert pending_invoice.is_verified is True
        assert _count(session, InvoiceAuditEvent) == 0

    def test_already_verified(self, service, supplier, make_manual_invoice, actor_id):
        invoice = make_manual_invoice(supplier, date(2025, 5, 1), [{"description": "Milk", "line_total": 6}])

        with pytest.raises(InvalidReviewTransitionError):
            service.verify_manually(invoice.document_id, actor_id)

    def test_document_without_invoice(self, service, make_document, actor_id):
        with pytest.raises(InvoiceNotFoundError):
            service.verify_manually(make_document().id, actor_id)

    def test_lost_race_raises_and_changes_nothing(self, session, service, pending_invoice, actor_id):
        # Another actor verifies behind the session's back
        session.execute(
            update(Document)
            .where(Document.id == pending_invoice.document_id)
            .values(review_status=ReviewStatus.VERIFIED.value)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(ReviewStateConflictError) as exc_info:
            service.verify_manually(pending_invoice.document_id, actor_id)

        assert exc_info.value.code == "STATE_CHANGED"
        assert _count(session, Invoice, Invoice.id == pending_invoice.id, Invoice.is_verified.is_(True)) == 0


# =============================================================================
# Soft delete, restore, purge
# =============================================================================


class TestSoftDelete:
    def test_mirrors_canonical(self, session, service, pending_invoice, actor_id, clock):
        service.soft_delete_invoice(pending_invoice.id, actor_id)
        canonical = session.execute(
            select(CanonicalInvoice).where(CanonicalInvoice.invoice_id == pending_invoice.id)
        ).scalar_one()

        assert pending_invoice.deleted_at == clock.now()
        assert canonical.deleted_at == pending_invoice.deleted_at
        assert service.evaluate_document(pending_invoice.document_id).reason == (
            RejectReason.NO_QUALITY_DATA
        )

        service.restore_invoice(pending_invoice.id, actor_id)

        assert pending_invoice.deleted_at is None
        assert canonical.deleted_at is None

    def test_idempotent(self, service, pending_invoice, actor_id):
        first = service.soft_delete_invoice(pending_invoice.id, actor_id).deleted_at
        second = service.soft_delete_invoice(pending_invoice.id, actor_id).deleted_at
        assert first == second
        service.restore_invoice(pending_invoice.id, actor_id)
        assert service.restore_invoice(pending_invoice.id, actor_id).deleted_at is None

    def test_unknown_invoice(self, service, actor_id):
        with pytest.raises(InvoiceNotFoundError):
            service.soft_delete_invoice(uuid4(), actor_id)


class TestPurge:
    def test_removes_every_dependent_row(self, session, service, pending_invoice):
        document_id = pending_invoice.document_id
        invoice_id = pending_invoice.id

        counts = service.purge_document(document_id)

        assert counts["documents"] == 1
        assert counts["invoices"] == 1
        assert counts["invoice_line_items"] == 1
        assert counts["canonical_invoices"] == 1
        assert counts["canonical_lines"] == 1
        assert counts["audit_events"] == 0
        assert _count(session, Document, Document.id == document_id) == 0
        assert _count(session, InvoiceLineItem, InvoiceLineItem.invoice_id == invoice_id) == 0
        assert _count(session, CanonicalLine) == 0

    def test_document_only(self, service, make_document):
        counts = service.purge_document(make_document().id)
        assert counts == {"audit_events": 0, "documents": 1}
