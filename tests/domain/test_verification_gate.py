"""
Tests for the Verification Gate (``spend_kernel.domain.verification_gate``).

Invariants tested:
- Pure: same facts always give the same decision.
- Fixed check order: the first failing check is the reported reason.
- Manual edits block approval regardless of confidence.
- Only ACTIVE suppliers pass; a dangling supplier reference is NO_SUPPLIER.
- Negative totals and missing totals never auto-approve.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from spend_kernel.domain.values import ProcessingStatus, ReviewStatus, SupplierStatus
from spend_kernel.domain.verification_gate import (
    GATE_CHECKS,
    HIGH_CONFIDENCE_THRESHOLD,
    DocumentFacts,
    InvoiceFacts,
    QualityFacts,
    RejectReason,
    auto_approval_requirements,
    evaluate_verification,
)


def _document(**overrides) -> DocumentFacts:
    values = dict(
        review_status=ReviewStatus.AWAITING_REVIEW,
        processing_status=ProcessingStatus.EXTRACTION_COMPLETE,
        has_manual_edits=False,
        confidence_score=Decimal("95"),
        validation_errors=None,
    )
    values.update(overrides)
    return DocumentFacts(**values)


def _invoice(**overrides) -> InvoiceFacts:
    values = dict(
        supplier_id=uuid4(),
        supplier_status=SupplierStatus.ACTIVE,
        invoice_date=date(2025, 5, 10),
        total=Decimal("50.00"),
    )
    values.update(overrides)
    return InvoiceFacts(**values)


def _decide(document=None, invoice=..., quality=..., **kwargs):
    return evaluate_verification(
        document or _document(),
        _invoice() if invoice is ... else invoice,
        QualityFacts() if quality is ... else quality,
        **kwargs,
    )


class TestApproval:
    def test_clean_document_is_approved(self):
        decision = _decide()
        assert decision.approved is True
        assert decision.reason is None

    def test_confidence_exactly_at_threshold_passes(self):
        decision = _decide(_document(confidence_score=HIGH_CONFIDENCE_THRESHOLD))
        assert decision.approved is True

    def test_empty_validation_list_counts_as_none(self):
        assert _decide(_document(validation_errors=[])).approved is True

    def test_zero_total_is_allowed(self):
        assert _decide(invoice=_invoice(total=Decimal("0"))).approved is True

    def test_float_confidence_is_accepted(self):
        assert _decide(_document(confidence_score=97.5)).approved is True


class TestRejections:
    @pytest.mark.parametrize(
        "document, expected",
        [
            (_document(review_status=ReviewStatus.VERIFIED), RejectReason.ALREADY_VERIFIED),
            (_document(review_status=ReviewStatus.NONE), RejectReason.NOT_REVIEWABLE),
            (_document(has_manual_edits=True), RejectReason.HAS_MANUAL_EDITS),
            (
                _document(processing_status=ProcessingStatus.PENDING_EXTRACTION),
                RejectReason.NOT_OCR_COMPLETE,
            ),
            (_document(validation_errors=["total mismatch"]), RejectReason.HAS_VALIDATION_ERRORS),
            (_document(confidence_score=Decimal("89.99")), RejectReason.LOW_CONFIDENCE),
            (_document(confidence_score=None), RejectReason.LOW_CONFIDENCE),
        ],
    )
    def test_document_rejections(self, document, expected):
        decision = _decide(document)
        assert decision.approved is False
        assert decision.reason == expected

    @pytest.mark.parametrize(
        "invoice, expected",
        [
            (None, RejectReason.NO_SUPPLIER),
            (_invoice(supplier_id=None, supplier_status=None), RejectReason.NO_SUPPLIER),
            (_invoice(supplier_status=None), RejectReason.NO_SUPPLIER),
            (_invoice(supplier_status=SupplierStatus.PENDING_REVIEW), RejectReason.SUPPLIER_NOT_ACTIVE),
            (_invoice(supplier_status=SupplierStatus.ARCHIVED), RejectReason.SUPPLIER_NOT_ACTIVE),
            (_invoice(invoice_date=None), RejectReason.MISSING_INVOICE_DATE),
            (_invoice(total=None), RejectReason.MISSING_TOTAL),
            (_invoice(total=Decimal("-12.50")), RejectReason.NEGATIVE_TOTAL),
        ],
    )
    def test_invoice_rejections(self, invoice, expected):
        assert _decide(invoice=invoice).reason == expected

    def test_missing_quality_record(self):
        assert _decide(quality=None).reason == RejectReason.NO_QUALITY_DATA

    def test_warning_lines(self):
        assert _decide(quality=QualityFacts(warning_line_count=1)).reason == (
            RejectReason.HAS_WARNING_LINES
        )

    def test_feature_disabled_is_checked_first(self):
        decision = _decide(
            _document(review_status=ReviewStatus.VERIFIED),
            auto_approve_enabled=False,
        )
        assert decision.reason == RejectReason.FEATURE_DISABLED


class TestCheckOrder:
    def test_manual_edits_beat_low_confidence(self):
        decision = _decide(_document(has_manual_edits=True, confidence_score=Decimal("10")))
        assert decision.reason == RejectReason.HAS_MANUAL_EDITS

    def test_supplier_checked_before_quality(self):
        decision = _decide(
            invoice=_invoice(supplier_status=SupplierStatus.PENDING_REVIEW),
            quality=QualityFacts(warning_line_count=3),
        )
        assert decision.reason == RejectReason.SUPPLIER_NOT_ACTIVE

    def test_every_reason_has_exactly_one_check(self):
        reasons = [check.reason for check in GATE_CHECKS]
        assert len(reasons) == len(set(reasons))
        assert set(reasons) == set(RejectReason)

    def test_deterministic(self):
        document = _document(confidence_score=Decimal("50"))
        assert _decide(document) == _decide(document)


class TestRequirements:
    def test_requirements_mirror_gate(self):
        requirements = auto_approval_requirements().to_dict()
        assert requirements["min_confidence"] == "90"
        assert requirements["supplier_status"] == SupplierStatus.ACTIVE.value
        assert requirements["allows_manual_edits"] is False
        assert requirements["check_order"][0] == RejectReason.FEATURE_DISABLED.value
        assert requirements["check_order"] == [c.reason.value for c in GATE_CHECKS]
