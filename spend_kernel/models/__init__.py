"""ORM models for the spend kernel."""

from spend_kernel.models.audit_event import AuditAction, AuditReason, InvoiceAuditEvent
from spend_kernel.models.canonical import CanonicalInvoice, CanonicalLine, CanonicalProduct
from spend_kernel.models.document import Document
from spend_kernel.models.external_invoice import ExternalInvoice, ExternalInvoiceLineItem
from spend_kernel.models.invoice import Invoice, InvoiceLineItem
from spend_kernel.models.snapshot import ProductSnapshotRow, ProductSnapshotRun
from spend_kernel.models.supplier import Supplier

__all__ = [
    "AuditAction",
    "AuditReason",
    "InvoiceAuditEvent",
    "CanonicalInvoice",
    "CanonicalLine",
    "CanonicalProduct",
    "Document",
    "ExternalInvoice",
    "ExternalInvoiceLineItem",
    "Invoice",
    "InvoiceLineItem",
    "ProductSnapshotRow",
    "ProductSnapshotRun",
    "Supplier",
]
