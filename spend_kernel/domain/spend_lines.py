"""
Spend lines -- the normalized projection shared by both invoice origins.

Responsibility:
    ``NormalizedLine`` is the single shape the aggregation math consumes.
    Manual (upload/OCR) line items and externally-synced line items are
    projected into it by their own selectors, each after applying its own
    exclusion rules, and tagged with their ``InvoiceOrigin``.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Invariants enforced:
    - Unit price comes from the line's per-unit field.  When that is
      missing the line-level ``line_total / quantity`` is used; the invoice
      total is never consulted (it may carry tax and unrelated lines).
    - Lines with null or non-positive quantity, or a non-positive unit
      price, are not price observations.  They still count toward spend.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from spend_kernel.domain.product_identity import ProductIdentity
from spend_kernel.domain.values import InvoiceOrigin


@dataclass(frozen=True)
class NormalizedLine:
    """One spend-contributing line item, origin-tagged."""

    origin: InvoiceOrigin
    line_id: UUID
    invoice_id: UUID
    location_id: UUID | None
    supplier_id: UUID | None
    supplier_name: str | None
    identity: ProductIdentity
    product_id: UUID | None
    description: str | None
    invoice_date: date
    quantity: Decimal | None
    unit_price: Decimal | None
    line_total: Decimal
    account_code: str | None

    @property
    def effective_unit_price(self) -> Decimal | None:
        if self.unit_price is not None:
            return self.unit_price
        if self.quantity is not None and self.quantity > 0:
            return self.line_total / self.quantity
        return None

    @property
    def is_price_observation(self) -> bool:
        """Usable for weighted-average pricing."""
        price = self.effective_unit_price
        return (
            self.quantity is not None
            and self.quantity > 0
            and price is not None
            and price > 0
        )
