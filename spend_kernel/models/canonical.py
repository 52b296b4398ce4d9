"""
Module: spend_kernel.models.canonical
Responsibility: ORM persistence for the normalized ("canonical") representation
    of a manual invoice delivered by the ingestion pipeline, and for canonical
    products shared by line items of both origins.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One CanonicalInvoice per manual Invoice (uq_canonical_invoice).
    - CanonicalInvoice.deleted_at mirrors Invoice.deleted_at.
    - CanonicalProduct is unique per (organisation, location, supplier,
      product_key) and is created lazily by ProductIdentityService.

Audit relevance:
    The Verification Gate treats the canonical record as a black box it only
    asks "does it exist, and are any lines flagged WARN?".
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from spend_kernel.db.base import TrackedBase, UUIDString
from spend_kernel.domain.values import QualityStatus
from spend_kernel.domain.verification_gate import QualityFacts


class CanonicalInvoice(TrackedBase):
    """Normalized representation of one manual invoice."""

    __tablename__ = "canonical_invoices"

    __table_args__ = (
        UniqueConstraint("invoice_id", name="uq_canonical_invoice"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("invoices.id"),
        nullable=False,
    )

    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    lines: Mapped[list[CanonicalLine]] = relationship(
        back_populates="canonical_invoice",
        cascade="all, delete-orphan",
    )

    @property
    def warning_line_count(self) -> int:
        return sum(1 for line in self.lines if line.quality_status == QualityStatus.WARN)

    def to_facts(self) -> QualityFacts:
        return QualityFacts(warning_line_count=self.warning_line_count)


class CanonicalLine(TrackedBase):
    """One normalized line with its OK/WARN quality flag."""

    __tablename__ = "canonical_lines"

    __table_args__ = (
        Index("idx_canonical_line_invoice", "canonical_invoice_id"),
        Index("idx_canonical_line_quality", "quality_status"),
    )

    canonical_invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("canonical_invoices.id"),
        nullable=False,
    )

    # Source line item, when the pipeline could match one
    line_item_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("invoice_line_items.id"),
        nullable=True,
    )

    quality_status: Mapped[QualityStatus] = mapped_column(
        String(10),
        nullable=False,
        default=QualityStatus.OK.value,
    )

    canonical_invoice: Mapped[CanonicalInvoice] = relationship(back_populates="lines")


class CanonicalProduct(TrackedBase):
    """Stable product identity shared by line items of both origins."""

    __tablename__ = "canonical_products"

    __table_args__ = (
        UniqueConstraint(
            "organisation_id", "location_id", "supplier_id", "product_key",
            name="uq_canonical_product_identity",
        ),
        Index("idx_canonical_product_scope", "organisation_id", "location_id"),
    )

    organisation_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    supplier_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("suppliers.id"),
        nullable=True,
    )

    # Normalized key from domain/product_identity.py
    product_key: Mapped[str] = mapped_column(String(1000), nullable=False)

    # Display name (first description seen)
    name: Mapped[str] = mapped_column(String(1000), nullable=False)

    def __repr__(self) -> str:
        return f"<CanonicalProduct {self.product_key!r}>"
