"""
Typed Exception Hierarchy for the Spend Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (API handlers, schedulers, the retro batch job) must be able to tell
apart a malformed request, a lost race, and a disabled feature without parsing
message text.  Every exception therefore:
  1. Has a TYPED class (catch by type, not message)
  2. Has a CODE attribute (machine-readable, API-safe)
  3. Carries structured DATA (not just a message string)

Verification Gate rejections are NOT exceptions.  They are expected negative
outcomes returned as ``VerificationDecision`` values with a ``RejectReason``.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    SpendKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidScopeError
    |   +-- InvalidAccountFilterError
    |   +-- InvalidPaginationError
    |
    +-- NotFoundError
    |   +-- DocumentNotFoundError
    |   +-- InvoiceNotFoundError
    |   +-- ProductNotFoundError
    |
    +-- ConflictError
    |   +-- IdempotencyKeyConflictError
    |   +-- ReviewStateConflictError
    |
    +-- LifecycleError
    |   +-- InvalidReviewTransitionError
    |
    +-- FeatureError
        +-- AutoApprovalDisabledError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category    | Code                                           | When Raised
------------|------------------------------------------------|-----------------------------
Validation  | INVALID_SCOPE                                  | Missing organisation/location
            | INVALID_ACCOUNT_FILTER                         | Blank or non-string code
            | INVALID_PAGINATION                             | page/page_size/sort invalid
------------|------------------------------------------------|-----------------------------
Not found   | DOCUMENT_NOT_FOUND                             | Unknown or out-of-scope id
            | INVOICE_NOT_FOUND                              |
            | PRODUCT_NOT_FOUND                              |
------------|------------------------------------------------|-----------------------------
Conflict    | IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_REQUEST  | Same key, other fingerprint
            | STATE_CHANGED                                  | Guarded update hit 0 rows
------------|------------------------------------------------|-----------------------------
Lifecycle   | INVALID_REVIEW_TRANSITION                      | e.g. VERIFIED -> NONE
------------|------------------------------------------------|-----------------------------
Feature     | FEATURE_DISABLED                               | Location flag or plan off

===============================================================================
HANDLING GUIDANCE
===============================================================================

   - ValidationError   -> reject the request, never retry
   - NotFoundError     -> 404
   - ConflictError     -> 409, caller decides (new key, re-read document)
   - LifecycleError    -> programming error in the caller
   - FeatureError      -> 403 (``upgrade_required`` tells plan from flag)
   - SQLAlchemy errors -> propagated unchanged for caller retry

===============================================================================
"""


class SpendKernelError(Exception):
    """
    Base exception for all spend kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "SPEND_KERNEL_ERROR"


# Validation exceptions


class ValidationError(SpendKernelError):
    """Base exception for malformed caller input."""

    code: str = "VALIDATION_ERROR"


class InvalidScopeError(ValidationError):
    """Organisation/location scope is missing or incomplete."""

    code: str = "INVALID_SCOPE"

    def __init__(self, reason: str, organisation_id: str | None = None):
        self.reason = reason
        self.organisation_id = organisation_id
        super().__init__(f"Invalid scope: {reason}")


class InvalidAccountFilterError(ValidationError):
    """Account-code filter contains an unusable entry."""

    code: str = "INVALID_ACCOUNT_FILTER"

    def __init__(self, value: object):
        self.value = value
        super().__init__(f"Invalid account code filter entry: {value!r}")


class InvalidPaginationError(ValidationError):
    """Page, page size, or sort arguments are out of range."""

    code: str = "INVALID_PAGINATION"

    def __init__(self, field: str, value: object):
        self.field = field
        self.value = value
        super().__init__(f"Invalid pagination argument {field}={value!r}")


# Not-found exceptions


class NotFoundError(SpendKernelError):
    """Base exception for missing or out-of-scope entities."""

    code: str = "NOT_FOUND"


class DocumentNotFoundError(NotFoundError):
    """Document with given ID was not found in scope."""

    code: str = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document not found: {document_id}")


class InvoiceNotFoundError(NotFoundError):
    """Manual invoice with given ID was not found in scope."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class ProductNotFoundError(NotFoundError):
    """Canonical product with given ID was not found in scope."""

    code: str = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


# Conflict exceptions


class ConflictError(SpendKernelError):
    """Base exception for explicit, named conflicts."""

    code: str = "CONFLICT"


class IdempotencyKeyConflictError(ConflictError):
    """
    Idempotency key already used for a request with a different fingerprint.

    The stored batch is never overwritten.
    """

    code: str = "IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_REQUEST"

    def __init__(
        self,
        idempotency_key: str,
        batch_id: str,
        stored_fingerprint: str,
        request_fingerprint: str,
    ):
        self.idempotency_key = idempotency_key
        self.batch_id = batch_id
        self.stored_fingerprint = stored_fingerprint
        self.request_fingerprint = request_fingerprint
        super().__init__(
            f"Idempotency key {idempotency_key!r} was already used by batch "
            f"{batch_id} for a different request"
        )


class ReviewStateConflictError(ConflictError):
    """
    A guarded review-status update matched zero rows.

    Another actor (a retro batch or a reviewer) changed the document first.
    """

    code: str = "STATE_CHANGED"

    def __init__(self, document_id: str, expected_status: str):
        self.document_id = document_id
        self.expected_status = expected_status
        super().__init__(
            f"Document {document_id} is no longer in review status {expected_status}"
        )


# Lifecycle exceptions


class LifecycleError(SpendKernelError):
    """Base exception for state machine violations."""

    code: str = "LIFECYCLE_ERROR"


class InvalidReviewTransitionError(LifecycleError):
    """Review status transition not allowed by the state machine."""

    code: str = "INVALID_REVIEW_TRANSITION"

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Cannot transition review status from {from_status} to {to_status}"
        )


# Feature exceptions


class FeatureError(SpendKernelError):
    """Base exception for disabled features and missing entitlements."""

    code: str = "FEATURE_ERROR"


class AutoApprovalDisabledError(FeatureError):
    """Automatic approval is switched off for the location or not in the plan."""

    code: str = "FEATURE_DISABLED"

    def __init__(self, location_id: str | None, upgrade_required: bool):
        self.location_id = location_id
        self.upgrade_required = upgrade_required
        reason = "plan does not include auto-approval" if upgrade_required else (
            "auto-approval is disabled for this location"
        )
        super().__init__(f"Auto-approval unavailable: {reason}")
