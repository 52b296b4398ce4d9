"""
Values -- Status enums and scope value objects shared by every layer.

Responsibility:
    Defines the closed vocabularies of the reconciliation engine (document
    processing/review status, verification source, supplier status, external
    invoice status, canonical line quality, invoice origin) and the explicit
    tenant scope every operation requires.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Imported by models,
    selectors, services, and spend_batch.

Invariants enforced:
    - Every operation carries an explicit organisation scope; location is
      optional except where a caller requires it (retro batches, snapshots).
    - Account-code filters are normalized once: ``None`` and empty both mean
      "all accounts"; blank or non-string entries are rejected.

Failure modes:
    - InvalidScopeError when organisation_id is missing, or location is
      required and missing.
    - InvalidAccountFilterError on blank / non-string filter entries.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable
from uuid import UUID

from spend_kernel.exceptions import InvalidAccountFilterError, InvalidScopeError


# Manual lines with no account code are filtered under this code
MANUAL_ACCOUNT_CODE = "MANUAL"


class ProcessingStatus(str, Enum):
    """Extraction lifecycle of a Document."""

    PENDING_EXTRACTION = "pending_extraction"
    EXTRACTION_COMPLETE = "extraction_complete"
    EXTRACTION_FAILED = "extraction_failed"


class ReviewStatus(str, Enum):
    """Review lifecycle of a Document.  VERIFIED is terminal."""

    NONE = "none"
    AWAITING_REVIEW = "awaiting_review"
    VERIFIED = "verified"


class VerificationSource(str, Enum):
    """Who moved a Document to VERIFIED."""

    NONE = "none"
    HUMAN = "human"
    AUTOMATIC = "automatic"


class SupplierStatus(str, Enum):
    """Supplier lifecycle, owned by the supplier collaborator."""

    PENDING_REVIEW = "pending_review"
    ACTIVE = "active"
    ARCHIVED = "archived"


class ExternalInvoiceStatus(str, Enum):
    """Status of an externally-synced accounting invoice."""

    AUTHORISED = "authorised"
    PAID = "paid"
    VOIDED = "voided"


# External invoices in these statuses represent real spend
COUNTED_EXTERNAL_STATUSES: tuple[ExternalInvoiceStatus, ...] = (
    ExternalInvoiceStatus.AUTHORISED,
    ExternalInvoiceStatus.PAID,
)


class QualityStatus(str, Enum):
    """Per-line quality flag on the canonical representation."""

    OK = "ok"
    WARN = "warn"


class InvoiceOrigin(str, Enum):
    """Which of the two independent sources a line item came from."""

    EXTERNAL = "external"  # Accounting feed sync
    MANUAL = "manual"  # Upload / OCR pipeline, human or auto verified


@dataclass(frozen=True)
class AnalyticsScope:
    """
    Explicit tenant scope for every read and write in the kernel.

    ``location_id=None`` means every location of the organisation.
    """

    organisation_id: UUID
    location_id: UUID | None = None

    def __post_init__(self) -> None:
        if self.organisation_id is None:
            raise InvalidScopeError("organisation_id is required")

    def require_location(self) -> UUID:
        """Return the location id or raise if the scope is organisation-wide."""
        if self.location_id is None:
            raise InvalidScopeError(
                "location_id is required for this operation",
                organisation_id=str(self.organisation_id),
            )
        return self.location_id

    def to_log_context(self) -> dict[str, str | None]:
        return {
            "organisation_id": str(self.organisation_id),
            "location_id": str(self.location_id) if self.location_id else None,
        }


def normalize_account_filters(
    account_codes: Iterable[str] | None,
) -> frozenset[str] | None:
    """
    Normalize an account-code filter.

    Returns:
        ``None`` when no filtering applies, otherwise a frozenset of
        stripped codes.

    Raises:
        InvalidAccountFilterError: On blank or non-string entries.
    """
    if account_codes is None:
        return None
    if isinstance(account_codes, str):
        account_codes = [account_codes]
    codes: set[str] = set()
    for code in account_codes:
        if not isinstance(code, str) or not code.strip():
            raise InvalidAccountFilterError(code)
        codes.add(code.strip())
    return frozenset(codes) or None


def account_code_matches(
    account_code: str | None,
    account_filters: frozenset[str] | None,
    origin: InvoiceOrigin,
) -> bool:
    """
    Check whether a line's account code passes the filter.

    Manual lines without an account code match ``MANUAL_ACCOUNT_CODE``;
    external lines without one never match an explicit filter.
    """
    if account_filters is None:
        return True
    if account_code:
        return account_code in account_filters
    return origin == InvoiceOrigin.MANUAL and MANUAL_ACCOUNT_CODE in account_filters
