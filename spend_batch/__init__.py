"""
spend_batch -- Retro batch approval of documents newly eligible for
automatic verification.

Scans for documents that pass the Verification Gate now (typically because
their supplier just became ACTIVE) and verifies them in a bounded,
idempotent batch with one audit event per approval.

Architecture:
    spend_batch/ is a top-level package.  It imports from spend_kernel;
    nothing in spend_kernel imports from spend_batch.

Invariants:
    - One batch record per (organisation, location, idempotency key);
      a retry with the same request fingerprint returns the stored result,
      a different fingerprint is a conflict.
    - Each approval is a guarded conditional UPDATE in its own SAVEPOINT.
    - Exactly one InvoiceAuditEvent per approval, same transaction.
    - Dry runs write no approvals and no audit events.
    - Bounded: at most 200 approvals per run, at most 2000 candidates
      scanned for previews.
    - Clock injection; no datetime.now() calls.
"""
