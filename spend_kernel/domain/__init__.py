"""
Pure domain layer.

This package contains value objects and decision logic with NO
dependencies on:
- ORM (SQLAlchemy)
- Database
- Wall-clock time (Clock is injected)
- I/O

All domain objects are immutable and deterministic.
"""

from spend_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from spend_kernel.domain.product_identity import (
    UNKNOWN_PRODUCT_KEY,
    ProductIdentity,
    canonical_product_key,
)
from spend_kernel.domain.spend_lines import NormalizedLine
from spend_kernel.domain.values import (
    AnalyticsScope,
    ExternalInvoiceStatus,
    InvoiceOrigin,
    ProcessingStatus,
    QualityStatus,
    ReviewStatus,
    SupplierStatus,
    VerificationSource,
)
from spend_kernel.domain.verification_gate import (
    DocumentFacts,
    InvoiceFacts,
    QualityFacts,
    RejectReason,
    VerificationDecision,
    evaluate_verification,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "UNKNOWN_PRODUCT_KEY",
    "ProductIdentity",
    "canonical_product_key",
    "NormalizedLine",
    "AnalyticsScope",
    "ExternalInvoiceStatus",
    "InvoiceOrigin",
    "ProcessingStatus",
    "QualityStatus",
    "ReviewStatus",
    "SupplierStatus",
    "VerificationSource",
    "DocumentFacts",
    "InvoiceFacts",
    "QualityFacts",
    "RejectReason",
    "VerificationDecision",
    "evaluate_verification",
]
