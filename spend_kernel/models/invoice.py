"""
Module: spend_kernel.models.invoice
Responsibility: ORM persistence for manual-origin invoices (produced by the
    upload/OCR pipeline from a Document) and their line items.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One Invoice per Document (uq_invoice_document).
    - ``supersedes_external_id`` names the externally-synced invoice this
      manual copy replaces.  Once the invoice is verified, the external copy
      is excluded from spend, quantity, and pricing simultaneously.
    - ``is_verified`` flips together with Document.review_status through
      guarded updates; a manual invoice counts toward analytics only when
      both say verified and neither is soft-deleted.
    - A line item with ``included_in_analytics = False`` never contributes
      to any aggregate; ``None`` means included.

Audit relevance:
    Soft-delete/restore (deleted_at) is mirrored onto the CanonicalInvoice by
    VerificationService so the normalized representation never outlives the
    invoice it was derived from.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from spend_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from spend_kernel.models.document import Document
    from spend_kernel.models.supplier import Supplier


class Invoice(TrackedBase):
    """Manual-origin invoice extracted from a Document."""

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("document_id", name="uq_invoice_document"),
        Index("idx_invoice_org_location_date", "organisation_id", "location_id", "invoice_date"),
        Index("idx_invoice_supersedes", "supersedes_external_id"),
        Index("idx_invoice_supplier", "supplier_id"),
    )

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("documents.id"),
        nullable=False,
    )

    organisation_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # Null until the supplier is resolved
    supplier_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("suppliers.id"),
        nullable=True,
    )

    invoice_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Gross total as extracted (may include tax); never used for pricing
    total: Mapped[Decimal | None] = mapped_column(nullable=True)

    invoice_date: Mapped[date | None] = mapped_column(nullable=True)

    # External id of the synced invoice this manual copy replaces
    supersedes_external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    document: Mapped[Document] = relationship("Document")

    supplier: Mapped[Supplier | None] = relationship("Supplier")

    line_items: Mapped[list[InvoiceLineItem]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.line_number",
    )

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_number or self.id} total={self.total}>"


class InvoiceLineItem(TrackedBase):
    """A line item on a manual-origin invoice."""

    __tablename__ = "invoice_line_items"

    __table_args__ = (
        Index("idx_invoice_line_invoice", "invoice_id"),
        Index("idx_invoice_line_product", "product_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("invoices.id"),
        nullable=False,
    )

    line_number: Mapped[int] = mapped_column(nullable=False, default=0)

    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    product_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    quantity: Mapped[Decimal | None] = mapped_column(nullable=True)

    # Per-unit price as printed on the line (tax-exclusive)
    unit_price: Mapped[Decimal | None] = mapped_column(nullable=True)

    line_total: Mapped[Decimal | None] = mapped_column(nullable=True)

    account_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # False excludes the line from every aggregate; None means included
    included_in_analytics: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    product_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("canonical_products.id"),
        nullable=True,
    )

    invoice: Mapped[Invoice] = relationship(back_populates="line_items")

    @property
    def is_included(self) -> bool:
        return self.included_in_analytics is not False
