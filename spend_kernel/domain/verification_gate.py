"""
Verification Gate -- may a document be verified automatically?

Responsibility
--------------
Pure decision function over literal facts about a Document, its manual
Invoice (with the supplier's current status), and the canonical quality
record produced by the ingestion pipeline.  Returns an approval or a typed
rejection reason.  Rejections are expected outcomes, not errors.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  Callers (VerificationService,
RetroApprovalProcessor) load ORM rows and convert them to the facts
dataclasses below.  Feature flags are passed in, never looked up.

Invariants enforced
-------------------
* Checks run in the fixed order of ``GATE_CHECKS`` and the first failing
  check wins, so reason codes are stable: a document with manual edits and
  low confidence always reports HAS_MANUAL_EDITS.
* Manual edits block automatic approval regardless of confidence.
* Only ACTIVE suppliers pass; pending or archived suppliers cannot carry
  spend into analytics through automatic approval.
* Negative totals (credit notes) never auto-approve.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Sequence
from uuid import UUID

from spend_kernel.domain.values import (
    ProcessingStatus,
    ReviewStatus,
    SupplierStatus,
)

# Minimum extraction confidence (0-100 scale) for automatic approval
HIGH_CONFIDENCE_THRESHOLD = Decimal("90")


class RejectReason(str, Enum):
    """Why the gate rejected a document, in check order."""

    FEATURE_DISABLED = "FEATURE_DISABLED"
    ALREADY_VERIFIED = "ALREADY_VERIFIED"
    NOT_REVIEWABLE = "NOT_REVIEWABLE"
    HAS_MANUAL_EDITS = "HAS_MANUAL_EDITS"
    NOT_OCR_COMPLETE = "NOT_OCR_COMPLETE"
    HAS_VALIDATION_ERRORS = "HAS_VALIDATION_ERRORS"
    NO_SUPPLIER = "NO_SUPPLIER"
    SUPPLIER_NOT_ACTIVE = "SUPPLIER_NOT_ACTIVE"
    NO_QUALITY_DATA = "NO_QUALITY_DATA"
    HAS_WARNING_LINES = "HAS_WARNING_LINES"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    MISSING_INVOICE_DATE = "MISSING_INVOICE_DATE"
    MISSING_TOTAL = "MISSING_TOTAL"
    NEGATIVE_TOTAL = "NEGATIVE_TOTAL"


# =========================================================================
# Facts
# =========================================================================


@dataclass(frozen=True)
class DocumentFacts:
    """What the gate needs to know about a Document."""

    review_status: ReviewStatus
    processing_status: ProcessingStatus
    has_manual_edits: bool = False
    confidence_score: Decimal | float | int | None = None
    validation_errors: Sequence[Any] | None = None


@dataclass(frozen=True)
class InvoiceFacts:
    """
    What the gate needs to know about the manual Invoice.

    ``supplier_status`` is None when the supplier reference is unset or
    points at a supplier that no longer exists.
    """

    supplier_id: UUID | None
    supplier_status: SupplierStatus | None
    invoice_date: date | None
    total: Decimal | float | int | None


@dataclass(frozen=True)
class QualityFacts:
    """Summary of the canonical representation: how many lines are WARN."""

    warning_line_count: int = 0


@dataclass(frozen=True)
class VerificationDecision:
    """Approved, or rejected with exactly one reason."""

    approved: bool
    reason: RejectReason | None = None

    @classmethod
    def approve(cls) -> VerificationDecision:
        return cls(approved=True)

    @classmethod
    def reject(cls, reason: RejectReason) -> VerificationDecision:
        return cls(approved=False, reason=reason)


# =========================================================================
# Checks
# =========================================================================


@dataclass(frozen=True)
class _GateInput:
    document: DocumentFacts
    invoice: InvoiceFacts | None
    quality: QualityFacts | None
    auto_approve_enabled: bool


def _to_decimal(value: Decimal | float | int | None) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _has_supplier(g: _GateInput) -> bool:
    return (
        g.invoice is not None
        and g.invoice.supplier_id is not None
        and g.invoice.supplier_status is not None
    )


def _total(g: _GateInput) -> Decimal | None:
    return _to_decimal(g.invoice.total) if g.invoice is not None else None


def _confidence(g: _GateInput) -> Decimal:
    value = _to_decimal(g.document.confidence_score)
    if value is None or not value.is_finite():
        return Decimal("0")
    return value


@dataclass(frozen=True)
class GateCheck:
    """One ordered gate check: ``fails(input)`` True means reject with ``reason``."""

    reason: RejectReason
    fails: Callable[[_GateInput], bool]


GATE_CHECKS: tuple[GateCheck, ...] = (
    GateCheck(RejectReason.FEATURE_DISABLED, lambda g: not g.auto_approve_enabled),
    GateCheck(
        RejectReason.ALREADY_VERIFIED,
        lambda g: g.document.review_status == ReviewStatus.VERIFIED,
    ),
    GateCheck(
        RejectReason.NOT_REVIEWABLE,
        lambda g: g.document.review_status != ReviewStatus.AWAITING_REVIEW,
    ),
    GateCheck(RejectReason.HAS_MANUAL_EDITS, lambda g: g.document.has_manual_edits),
    GateCheck(
        RejectReason.NOT_OCR_COMPLETE,
        lambda g: g.document.processing_status != ProcessingStatus.EXTRACTION_COMPLETE,
    ),
    GateCheck(
        RejectReason.HAS_VALIDATION_ERRORS,
        lambda g: bool(g.document.validation_errors),
    ),
    GateCheck(RejectReason.NO_SUPPLIER, lambda g: not _has_supplier(g)),
    GateCheck(
        RejectReason.SUPPLIER_NOT_ACTIVE,
        lambda g: g.invoice.supplier_status != SupplierStatus.ACTIVE,
    ),
    GateCheck(RejectReason.NO_QUALITY_DATA, lambda g: g.quality is None),
    GateCheck(
        RejectReason.HAS_WARNING_LINES,
        lambda g: g.quality.warning_line_count > 0,
    ),
    GateCheck(
        RejectReason.LOW_CONFIDENCE,
        lambda g: _confidence(g) < HIGH_CONFIDENCE_THRESHOLD,
    ),
    GateCheck(
        RejectReason.MISSING_INVOICE_DATE,
        lambda g: g.invoice.invoice_date is None,
    ),
    GateCheck(
        RejectReason.MISSING_TOTAL,
        lambda g: _total(g) is None or not _total(g).is_finite(),
    ),
    GateCheck(RejectReason.NEGATIVE_TOTAL, lambda g: _total(g) < 0),
)


def evaluate_verification(
    document: DocumentFacts,
    invoice: InvoiceFacts | None,
    quality: QualityFacts | None,
    *,
    auto_approve_enabled: bool = True,
) -> VerificationDecision:
    """
    Decide whether a document may be verified automatically.

    Pure: same inputs always give the same decision.  Later checks may
    assume earlier ones passed (e.g. the supplier-status check runs only
    once a supplier is known).
    """
    gate_input = _GateInput(
        document=document,
        invoice=invoice,
        quality=quality,
        auto_approve_enabled=auto_approve_enabled,
    )
    for check in GATE_CHECKS:
        if check.fails(gate_input):
            return VerificationDecision.reject(check.reason)
    return VerificationDecision.approve()


@dataclass(frozen=True)
class AutoApprovalRequirements:
    """Human-readable summary of what the gate demands, for previews."""

    min_confidence: Decimal
    supplier_status: SupplierStatus
    processing_status: ProcessingStatus
    review_status: ReviewStatus
    allows_manual_edits: bool
    allows_warning_lines: bool
    allows_negative_total: bool
    check_order: tuple[RejectReason, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "min_confidence": str(self.min_confidence),
            "supplier_status": self.supplier_status.value,
            "processing_status": self.processing_status.value,
            "review_status": self.review_status.value,
            "allows_manual_edits": self.allows_manual_edits,
            "allows_warning_lines": self.allows_warning_lines,
            "allows_negative_total": self.allows_negative_total,
            "check_order": [reason.value for reason in self.check_order],
        }


def auto_approval_requirements() -> AutoApprovalRequirements:
    """Requirements a document must meet to pass the gate."""
    return AutoApprovalRequirements(
        min_confidence=HIGH_CONFIDENCE_THRESHOLD,
        supplier_status=SupplierStatus.ACTIVE,
        processing_status=ProcessingStatus.EXTRACTION_COMPLETE,
        review_status=ReviewStatus.AWAITING_REVIEW,
        allows_manual_edits=False,
        allows_warning_lines=False,
        allows_negative_total=False,
        check_order=tuple(check.reason for check in GATE_CHECKS),
    )
