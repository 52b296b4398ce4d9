"""
Module: spend_kernel.models.supplier
Responsibility: ORM persistence for suppliers invoices are attributed to.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/values.py only.

Invariants enforced:
    - Only ACTIVE suppliers contribute to automatic verification or appear
      in supplier listings with purchase history.  Status transitions are
      owned by the supplier lifecycle collaborator; the kernel only reads.

Audit relevance:
    A supplier moving PENDING_REVIEW -> ACTIVE is the typical trigger for a
    retro approval batch over documents that were blocked by
    SUPPLIER_NOT_ACTIVE.
"""

from uuid import UUID

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from spend_kernel.db.base import TrackedBase, UUIDString
from spend_kernel.domain.values import SupplierStatus


class Supplier(TrackedBase):
    """A supplier within an organisation (optionally pinned to a location)."""

    __tablename__ = "suppliers"

    __table_args__ = (
        Index("idx_supplier_org_location", "organisation_id", "location_id"),
        Index("idx_supplier_status", "status"),
    )

    organisation_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    location_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Lifecycle status, owned by the supplier collaborator
    status: Mapped[SupplierStatus] = mapped_column(
        String(20),
        nullable=False,
        default=SupplierStatus.PENDING_REVIEW.value,
    )

    @property
    def is_active(self) -> bool:
        return self.status == SupplierStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<Supplier {self.name} ({self.status})>"
