"""
Module: spend_kernel.selectors.line_item_selector
Responsibility: Per-origin projection of line items into NormalizedLine.
    Each origin applies its own exclusion rules here, independently, so the
    aggregation engine can sum two origin-specific aggregates instead of
    querying a unioned raw table.
Architecture position: Kernel > Selectors.  Read-only.

Invariants enforced (external origin, ExternalLineSelector):
    - Only AUTHORISED / PAID invoices; VOIDED never counts.
    - Soft-deleted invoices never count.
    - Invoices in the ExclusionSet (superseded or attachment-gated) are
      dropped whole, before any line is projected, so spend, quantity, and
      price history lose them together.

Invariants enforced (manual origin, ManualLineSelector):
    - Only verified invoices (Invoice.is_verified and Document VERIFIED),
      neither soft-deleted.
    - Lines with included_in_analytics = False are dropped.

Both:
    - Only invoices dated inside the requested window.
    - Account filters apply per line (domain/values.account_code_matches).
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable
from uuid import UUID

from sqlalchemy import or_, select

from spend_kernel.db.types import ZERO, to_decimal
from spend_kernel.domain.periods import DateWindow
from spend_kernel.domain.product_identity import ProductIdentity
from spend_kernel.domain.spend_lines import NormalizedLine
from spend_kernel.domain.values import (
    COUNTED_EXTERNAL_STATUSES,
    AnalyticsScope,
    InvoiceOrigin,
    ReviewStatus,
    account_code_matches,
)
from spend_kernel.models.document import Document
from spend_kernel.models.external_invoice import ExternalInvoice, ExternalInvoiceLineItem
from spend_kernel.models.invoice import Invoice, InvoiceLineItem
from spend_kernel.models.supplier import Supplier
from spend_kernel.selectors.base import BaseSelector
from spend_kernel.selectors.supersession_selector import ExclusionSet


def _line_total(
    line_total: Decimal | None,
    quantity: Decimal | None,
    unit_price: Decimal | None,
) -> Decimal:
    if line_total is not None:
        return line_total
    if quantity is not None and unit_price is not None:
        return quantity * unit_price
    return ZERO


class ExternalLineSelector(BaseSelector):
    """Project externally-synced line items."""

    def lines(
        self,
        scope: AnalyticsScope,
        window: DateWindow,
        exclusions: ExclusionSet,
        account_filters: frozenset[str] | None = None,
        supplier_ids: Iterable[UUID] | None = None,
    ) -> list[NormalizedLine]:
        stmt = (
            select(ExternalInvoiceLineItem, ExternalInvoice, Supplier.name)
            .join(ExternalInvoice, ExternalInvoice.id == ExternalInvoiceLineItem.external_invoice_id)
            .outerjoin(Supplier, Supplier.id == ExternalInvoice.supplier_id)
            .where(
                ExternalInvoice.organisation_id == scope.organisation_id,
                ExternalInvoice.status.in_([s.value for s in COUNTED_EXTERNAL_STATUSES]),
                ExternalInvoice.deleted_at.is_(None),
                ExternalInvoice.invoice_date >= window.start,
                ExternalInvoice.invoice_date <= window.end,
            )
            .order_by(ExternalInvoice.invoice_date, ExternalInvoiceLineItem.id)
        )
        if scope.location_id is not None:
            stmt = stmt.where(ExternalInvoice.location_id == scope.location_id)
        if supplier_ids is not None:
            stmt = stmt.where(ExternalInvoice.supplier_id.in_(list(supplier_ids)))
        excluded = exclusions.excluded
        if excluded:
            stmt = stmt.where(ExternalInvoice.external_id.not_in(sorted(excluded)))

        result: list[NormalizedLine] = []
        for item, invoice, supplier_name in self.session.execute(stmt):
            if not account_code_matches(item.account_code, account_filters, InvoiceOrigin.EXTERNAL):
                continue
            quantity = to_decimal(item.quantity)
            unit_price = to_decimal(item.unit_amount)
            result.append(
                NormalizedLine(
                    origin=InvoiceOrigin.EXTERNAL,
                    line_id=item.id,
                    invoice_id=invoice.id,
                    location_id=invoice.location_id,
                    supplier_id=invoice.supplier_id,
                    supplier_name=supplier_name,
                    identity=ProductIdentity.for_line(
                        invoice.supplier_id, item.item_code, item.description,
                    ),
                    product_id=item.product_id,
                    description=item.description,
                    invoice_date=invoice.invoice_date,
                    quantity=quantity,
                    unit_price=unit_price,
                    line_total=_line_total(to_decimal(item.line_amount), quantity, unit_price),
                    account_code=item.account_code,
                )
            )
        return result


class ManualLineSelector(BaseSelector):
    """Project line items of verified manual invoices."""

    def lines(
        self,
        scope: AnalyticsScope,
        window: DateWindow,
        account_filters: frozenset[str] | None = None,
        supplier_ids: Iterable[UUID] | None = None,
    ) -> list[NormalizedLine]:
        stmt = (
            select(InvoiceLineItem, Invoice, Supplier.name)
            .join(Invoice, Invoice.id == InvoiceLineItem.invoice_id)
            .join(Document, Document.id == Invoice.document_id)
            .outerjoin(Supplier, Supplier.id == Invoice.supplier_id)
            .where(
                Invoice.organisation_id == scope.organisation_id,
                Invoice.is_verified.is_(True),
                Invoice.deleted_at.is_(None),
                Document.deleted_at.is_(None),
                Document.review_status == ReviewStatus.VERIFIED.value,
                Invoice.invoice_date >= window.start,
                Invoice.invoice_date <= window.end,
                or_(
                    InvoiceLineItem.included_in_analytics.is_(None),
                    InvoiceLineItem.included_in_analytics.is_(True),
                ),
            )
            .order_by(Invoice.invoice_date, InvoiceLineItem.id)
        )
        if scope.location_id is not None:
            stmt = stmt.where(Invoice.location_id == scope.location_id)
        if supplier_ids is not None:
            stmt = stmt.where(Invoice.supplier_id.in_(list(supplier_ids)))

        result: list[NormalizedLine] = []
        for item, invoice, supplier_name in self.session.execute(stmt):
            if not account_code_matches(item.account_code, account_filters, InvoiceOrigin.MANUAL):
                continue
            quantity = to_decimal(item.quantity)
            unit_price = to_decimal(item.unit_price)
            result.append(
                NormalizedLine(
                    origin=InvoiceOrigin.MANUAL,
                    line_id=item.id,
                    invoice_id=invoice.id,
                    location_id=invoice.location_id,
                    supplier_id=invoice.supplier_id,
                    supplier_name=supplier_name,
                    identity=ProductIdentity.for_line(
                        invoice.supplier_id, item.product_code, item.description,
                    ),
                    product_id=item.product_id,
                    description=item.description,
                    invoice_date=invoice.invoice_date,
                    quantity=quantity,
                    unit_price=unit_price,
                    line_total=_line_total(to_decimal(item.line_total), quantity, unit_price),
                    account_code=item.account_code,
                )
            )
        return result
