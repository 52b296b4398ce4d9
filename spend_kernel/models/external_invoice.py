"""
Module: spend_kernel.models.external_invoice
Responsibility: ORM persistence for invoices and line items delivered by the
    external accounting sync.  The kernel only reads these rows.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - external_id is unique per organisation (uq_external_invoice_org_id).
    - External invoices are never "verified" themselves.  They count toward
      analytics only when AUTHORISED or PAID, not soft-deleted, not
      superseded by a verified manual invoice, and not carrying an attached
      Document (see services/supersession_service.py).
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from spend_kernel.db.base import TrackedBase, UUIDString
from spend_kernel.domain.values import ExternalInvoiceStatus

if TYPE_CHECKING:
    from spend_kernel.models.supplier import Supplier


class ExternalInvoice(TrackedBase):
    """Invoice synced from the accounting system."""

    __tablename__ = "external_invoices"

    __table_args__ = (
        UniqueConstraint("organisation_id", "external_id", name="uq_external_invoice_org_id"),
        Index("idx_external_invoice_org_location_date", "organisation_id", "location_id", "invoice_date"),
        Index("idx_external_invoice_supplier", "supplier_id"),
    )

    organisation_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # Identifier assigned by the accounting system
    external_id: Mapped[str] = mapped_column(String(100), nullable=False)

    supplier_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("suppliers.id"),
        nullable=True,
    )

    invoice_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    total: Mapped[Decimal | None] = mapped_column(nullable=True)

    invoice_date: Mapped[date | None] = mapped_column(nullable=True)

    status: Mapped[ExternalInvoiceStatus] = mapped_column(
        String(20),
        nullable=False,
        default=ExternalInvoiceStatus.AUTHORISED.value,
    )

    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    supplier: Mapped[Supplier | None] = relationship("Supplier")

    line_items: Mapped[list[ExternalInvoiceLineItem]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<ExternalInvoice {self.external_id} {self.status}>"


class ExternalInvoiceLineItem(TrackedBase):
    """A line item on a synced invoice."""

    __tablename__ = "external_invoice_line_items"

    __table_args__ = (
        Index("idx_external_line_invoice", "external_invoice_id"),
        Index("idx_external_line_product", "product_id"),
    )

    external_invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("external_invoices.id"),
        nullable=False,
    )

    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    item_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    quantity: Mapped[Decimal | None] = mapped_column(nullable=True)

    unit_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    line_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    account_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    product_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("canonical_products.id"),
        nullable=True,
    )

    invoice: Mapped[ExternalInvoice] = relationship(back_populates="line_items")
