"""
Module: spend_kernel.models.audit_event
Responsibility: ORM persistence for invoice audit events written by automatic
    verification.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only.  Services only INSERT; nothing updates or deletes an audit
      event except VerificationService.purge_document() (explicit cascading
      purge of the owning document).
    - Exactly one event per automatic approval, written in the same
      transaction as the guarded status flip.  Dry runs write none.

Audit relevance:
    Links the batch, the document, the invoice, and the acting principal
    (the user who triggered the batch, or the system actor).
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from spend_kernel.db.base import Base, UUIDString


class AuditAction(str, Enum):
    """Types of auditable verification actions."""

    AUTO_APPROVED_BATCH = "auto_approved_batch"


class AuditReason(str, Enum):
    """Why an action was taken."""

    RETRO_SUPPLIER_VERIFIED = "retro_supplier_verified"


class InvoiceAuditEvent(Base):
    """
    Immutable record of an automatic verification action.

    Non-goals:
        - No hash chain; tamper evidence is out of scope for this table.
    """

    __tablename__ = "invoice_audit_events"

    __table_args__ = (
        Index("idx_invoice_audit_document", "document_id"),
        Index("idx_invoice_audit_batch", "batch_id"),
        Index("idx_invoice_audit_occurred", "occurred_at"),
    )

    organisation_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("documents.id"),
        nullable=False,
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("invoices.id"),
        nullable=False,
    )

    # Verification batch that produced this event
    batch_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    action: Mapped[AuditAction] = mapped_column(String(50), nullable=False)

    reason: Mapped[AuditReason] = mapped_column(String(50), nullable=False)

    # User who triggered the batch, or the system actor
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    # Additional context (JSON)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<InvoiceAuditEvent {self.action} document={self.document_id}>"
