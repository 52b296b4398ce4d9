"""
RetroApprovalProcessor -- bounded, idempotent batch auto-approval.

Contract:
    ``select_candidates()`` returns documents that pass the SQL pre-filter,
    newest invoice first.  ``run()`` verifies the ones that pass the
    Verification Gate, once per idempotency key.  ``preview()`` summarizes
    what a run would do without writing anything.

Architecture: spend_batch/services.  Imports from spend_batch.domain,
    spend_batch.models, and spend_kernel.

Invariants enforced:
    - Feature and entitlement flags are call parameters.  Either one off
      raises AutoApprovalDisabledError before any batch record is touched.
    - Idempotency: the batch record is unique per (organisation, location,
      key).  Same fingerprint replays the stored result; a different
      fingerprint raises IdempotencyKeyConflictError.  The insert runs in a
      SAVEPOINT so a concurrent duplicate is re-read, never duplicated.
    - Each approval is a guarded conditional UPDATE of the Document
      (still AWAITING_REVIEW, unedited, undeleted) and the Invoice (still
      unverified) inside its own SAVEPOINT.  Zero rows matched means a
      concurrent actor won: the row is skipped as STATE_CHANGED.
    - One InvoiceAuditEvent per approval, inside the row's SAVEPOINT.
    - At most ``max_approve_per_run`` candidates per run and
      ``max_candidates`` scanned for counts and previews.
    - Clock injection: every timestamp comes from the injected Clock.

Failure modes:
    - InvalidScopeError: scope without a location.
    - AutoApprovalDisabledError: flag or entitlement off.
    - IdempotencyKeyConflictError: key reused for a different request.
    - Database errors propagate; the batch SAVEPOINT is rolled back so no
      approval of the failed run survives.
"""

from __future__ import annotations

from collections import Counter
from typing import Any
from uuid import UUID

from sqlalchemy import String, cast, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from spend_kernel.domain.clock import Clock, SystemClock
from spend_kernel.domain.values import (
    AnalyticsScope,
    ProcessingStatus,
    QualityStatus,
    ReviewStatus,
    SupplierStatus,
    VerificationSource,
)
from spend_kernel.domain.verification_gate import (
    HIGH_CONFIDENCE_THRESHOLD,
    auto_approval_requirements,
    evaluate_verification,
)
from spend_kernel.exceptions import AutoApprovalDisabledError, IdempotencyKeyConflictError
from spend_kernel.logging_config import LogContext, get_logger
from spend_kernel.models.audit_event import AuditAction, AuditReason, InvoiceAuditEvent
from spend_kernel.models.canonical import CanonicalInvoice, CanonicalLine
from spend_kernel.models.document import Document
from spend_kernel.models.invoice import Invoice
from spend_kernel.models.supplier import Supplier
from spend_kernel.selectors.supersession_selector import SupersessionResolver
from spend_kernel.services.snapshot_service import SnapshotService
from spend_kernel.services.verification_service import VerificationService
from spend_kernel.utils.hashing import hash_payload
from spend_kernel.utils.idempotency import generate_idempotency_key, normalize_idempotency_key

from spend_batch.domain.types import (
    STATE_CHANGED,
    BatchState,
    RetroBatchResult,
    RetroCandidate,
    RetroSummary,
    SupplierCandidateCount,
)
from spend_batch.models.batch import VerificationBatchModel

logger = get_logger("batch.retro_approval")

MAX_APPROVE_PER_RUN = 200
MAX_CANDIDATES = 2000
SUMMARY_SAMPLE_SIZE = 200
PREVIEW_SIZE = 20

IDEMPOTENCY_KEY_PREFIX = "retro"

_Row = tuple[Document, Invoice, Supplier]


def request_fingerprint(scope: AnalyticsScope, dry_run: bool) -> str:
    """SHA-256 of the semantically relevant request parameters."""
    return hash_payload({
        "organisation_id": str(scope.organisation_id),
        "location_id": str(scope.location_id),
        "dry_run": bool(dry_run),
    })


class RetroApprovalProcessor:
    """Retro batch approval with SAVEPOINT-per-row isolation.

    Contract:
        - ``run()`` is idempotent per (organisation, location, key).
        - ``preview()`` and ``select_candidates()`` never write.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT look up feature flags or plan entitlements.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        snapshot_service: SnapshotService | None = None,
        max_approve_per_run: int = MAX_APPROVE_PER_RUN,
        max_candidates: int = MAX_CANDIDATES,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._snapshots = snapshot_service
        self._max_approve = max_approve_per_run
        self._max_candidates = max_candidates
        self._verification = VerificationService(session, self._clock)
        self._resolver = SupersessionResolver(session)

    # -------------------------------------------------------------------------
    # Candidates
    # -------------------------------------------------------------------------

    def _candidate_stmt(self, scope: AnalyticsScope, *columns: Any):
        location_id = scope.require_location()
        has_warning = (
            select(CanonicalLine.id)
            .where(
                CanonicalLine.canonical_invoice_id == CanonicalInvoice.id,
                CanonicalLine.quality_status == QualityStatus.WARN.value,
            )
            .exists()
        )
        stmt = (
            select(*columns)
            .select_from(Document)
            .join(Invoice, Invoice.document_id == Document.id)
            .join(Supplier, Supplier.id == Invoice.supplier_id)
            .join(CanonicalInvoice, CanonicalInvoice.invoice_id == Invoice.id)
            .where(
                Document.organisation_id == scope.organisation_id,
                Document.location_id == location_id,
                Document.deleted_at.is_(None),
                Document.processing_status == ProcessingStatus.EXTRACTION_COMPLETE.value,
                Document.review_status == ReviewStatus.AWAITING_REVIEW.value,
                Document.verification_source == VerificationSource.NONE.value,
                Document.manually_edited_at.is_(None),
                Document.confidence_score >= HIGH_CONFIDENCE_THRESHOLD,
                or_(
                    Document.validation_errors.is_(None),
                    cast(Document.validation_errors, String) == "[]",
                ),
                Invoice.is_verified.is_(False),
                Invoice.deleted_at.is_(None),
                Invoice.total.is_not(None),
                Invoice.invoice_date.is_not(None),
                Supplier.status == SupplierStatus.ACTIVE.value,
                CanonicalInvoice.deleted_at.is_(None),
                ~has_warning,
            )
        )
        superseded = self._resolver.superseded_ids(scope)
        if superseded:
            stmt = stmt.where(
                or_(
                    Invoice.supersedes_external_id.is_(None),
                    Invoice.supersedes_external_id.not_in(sorted(superseded)),
                )
            )
        return stmt

    def _candidate_rows(self, scope: AnalyticsScope, limit: int) -> list[_Row]:
        stmt = (
            self._candidate_stmt(scope, Document, Invoice, Supplier)
            .order_by(Invoice.invoice_date.desc(), Invoice.id.desc())
            .limit(limit)
        )
        return [tuple(row) for row in self._session.execute(stmt).all()]

    def _count_candidates(self, scope: AnalyticsScope, cap: int) -> int:
        stmt = self._candidate_stmt(scope, Invoice.id).limit(cap)
        return len(self._session.execute(stmt).all())

    @staticmethod
    def _to_candidate(row: _Row) -> RetroCandidate:
        document, invoice, supplier = row
        return RetroCandidate(
            document_id=document.id,
            invoice_id=invoice.id,
            supplier_id=supplier.id,
            supplier_name=supplier.name,
            invoice_number=invoice.invoice_number,
            invoice_date=invoice.invoice_date,
            total=invoice.total,
            confidence_score=document.confidence_score,
        )

    def select_candidates(self, scope: AnalyticsScope, limit: int) -> list[RetroCandidate]:
        """Candidates ordered by invoice date desc, then id desc, capped at ``limit``."""
        return [self._to_candidate(row) for row in self._candidate_rows(scope, limit)]

    def _passes_gate(self, row: _Row) -> tuple[bool, str | None]:
        document, invoice, _ = row
        decision = evaluate_verification(*self._verification.gate_facts(document, invoice))
        return decision.approved, decision.reason.value if decision.reason else None

    # -------------------------------------------------------------------------
    # Preview
    # -------------------------------------------------------------------------

    def preview(
        self,
        scope: AnalyticsScope,
        *,
        entitled: bool = True,
        auto_approve_enabled: bool = True,
    ) -> RetroSummary:
        """Summarize candidates without writing anything."""
        rows = self._candidate_rows(scope, self._max_candidates + 1)
        is_truncated = len(rows) > self._max_candidates
        rows = rows[: self._max_candidates]

        sample = rows[:SUMMARY_SAMPLE_SIZE]
        eligible = [row for row in sample if self._passes_gate(row)[0]]
        if len(rows) <= len(sample):
            estimate = len(eligible)
        else:
            estimate = round(len(eligible) * len(rows) / len(sample))

        counts: Counter[tuple[UUID, str]] = Counter(
            (supplier.id, supplier.name) for _, _, supplier in rows
        )
        by_supplier = sorted(
            (
                SupplierCandidateCount(supplier_id, name, count)
                for (supplier_id, name), count in counts.items()
            ),
            key=lambda c: (-c.candidate_count, c.supplier_name, str(c.supplier_id)),
        )

        summary = RetroSummary(
            candidate_count=len(rows),
            is_truncated=is_truncated,
            eligible_count_estimate=estimate,
            sample_size=len(sample),
            by_supplier=tuple(by_supplier),
            preview=tuple(self._to_candidate(row) for row in eligible[:PREVIEW_SIZE]),
            requirements=auto_approval_requirements().to_dict(),
            entitled=entitled,
            auto_approve_enabled=auto_approve_enabled,
        )
        logger.info(
            "retro_preview_computed",
            extra={
                **scope.to_log_context(),
                "candidate_count": summary.candidate_count,
                "eligible_count_estimate": summary.eligible_count_estimate,
                "is_truncated": is_truncated,
            },
        )
        return summary

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def _find_batch(self, scope: AnalyticsScope, key: str) -> VerificationBatchModel | None:
        return self._session.execute(
            select(VerificationBatchModel).where(
                VerificationBatchModel.organisation_id == scope.organisation_id,
                VerificationBatchModel.location_id == scope.location_id,
                VerificationBatchModel.idempotency_key == key,
            )
        ).scalar_one_or_none()

    def _replay(self, batch: VerificationBatchModel, fingerprint: str) -> RetroBatchResult:
        if batch.request_fingerprint != fingerprint:
            logger.warning(
                "retro_batch_idempotency_conflict",
                extra={"idempotency_key": batch.idempotency_key, "batch_id": str(batch.id)},
            )
            raise IdempotencyKeyConflictError(
                batch.idempotency_key,
                str(batch.id),
                batch.request_fingerprint,
                fingerprint,
            )
        logger.info(
            "retro_batch_replayed",
            extra={"idempotency_key": batch.idempotency_key, "batch_id": str(batch.id)},
        )
        return batch.to_dto(reused_batch=True)

    def run(
        self,
        scope: AnalyticsScope,
        idempotency_key: str | None = None,
        dry_run: bool = False,
        *,
        actor_id: UUID,
        entitled: bool = True,
        auto_approve_enabled: bool = True,
    ) -> RetroBatchResult:
        """
        Approve every candidate that passes the gate, once per key.

        Args:
            scope: Organisation and location (location required).
            idempotency_key: Client key; generated server-side when missing.
            dry_run: Evaluate only; store the would-approve ids.
            actor_id: Principal recorded on the batch and audit events.
            entitled: Plan includes auto-approval.
            auto_approve_enabled: Location-level feature flag.

        Raises:
            AutoApprovalDisabledError: ``entitled`` or
                ``auto_approve_enabled`` is False.
            IdempotencyKeyConflictError: Key reused with a different
                request fingerprint.
        """
        location_id = scope.require_location()
        if not entitled or not auto_approve_enabled:
            logger.warning(
                "retro_batch_feature_disabled",
                extra={
                    **scope.to_log_context(),
                    "entitled": entitled,
                    "auto_approve_enabled": auto_approve_enabled,
                },
            )
            raise AutoApprovalDisabledError(str(location_id), upgrade_required=not entitled)

        key = normalize_idempotency_key(idempotency_key)
        if key is None:
            key = generate_idempotency_key(IDEMPOTENCY_KEY_PREFIX)
            logger.warning(
                "idempotency_key_generated",
                extra={**scope.to_log_context(), "idempotency_key": key},
            )
        fingerprint = request_fingerprint(scope, dry_run)

        existing = self._find_batch(scope, key)
        if existing is not None:
            return self._replay(existing, fingerprint)

        now = self._clock.now()
        savepoint = self._session.begin_nested()
        try:
            batch = VerificationBatchModel(
                organisation_id=scope.organisation_id,
                location_id=location_id,
                idempotency_key=key,
                request_fingerprint=fingerprint,
                state=BatchState.IN_PROGRESS.value,
                dry_run=dry_run,
                started_at=now,
                created_by_id=actor_id,
            )
            self._session.add(batch)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("retro_batch_insert_race", extra={"idempotency_key": key})
            winner = self._find_batch(scope, key)
            if winner is None:
                raise
            return self._replay(winner, fingerprint)

        with LogContext.bind(
            organisation_id=scope.organisation_id,
            location_id=location_id,
            batch_id=batch.id,
            actor_id=actor_id,
        ):
            logger.info(
                "retro_batch_started",
                extra={"idempotency_key": key, "dry_run": dry_run},
            )
            return self._execute(scope, batch, dry_run, actor_id)

    def _execute(
        self,
        scope: AnalyticsScope,
        batch: VerificationBatchModel,
        dry_run: bool,
        actor_id: UUID,
    ) -> RetroBatchResult:
        rows = self._candidate_rows(scope, self._max_approve)
        skip_reasons: Counter[str] = Counter()
        to_approve: list[_Row] = []
        for row in rows:
            approved, reason = self._passes_gate(row)
            if approved:
                to_approve.append(row)
            else:
                skip_reasons[reason] += 1

        if dry_run:
            approved_ids = [invoice.id for _, invoice, _ in to_approve]
        else:
            approved_ids = self._apply(batch, to_approve, actor_id, skip_reasons)

        batch_id = batch.id
        batch = self._session.get(VerificationBatchModel, batch_id)
        batch.state = BatchState.COMPLETED.value
        batch.approved_count = len(approved_ids)
        batch.skipped_count = sum(skip_reasons.values())
        batch.approved_invoice_ids = [str(i) for i in approved_ids]
        batch.skip_reasons = dict(skip_reasons)
        batch.remaining_candidate_count = self._count_candidates(scope, self._max_candidates)
        batch.completed_at = self._clock.now()
        batch.updated_by_id = actor_id
        self._session.flush()

        logger.info(
            "retro_batch_completed",
            extra={
                "approved_count": batch.approved_count,
                "skipped_count": batch.skipped_count,
                "skip_reasons": dict(skip_reasons),
                "remaining_candidate_count": batch.remaining_candidate_count,
                "dry_run": dry_run,
            },
        )

        if not dry_run and approved_ids and self._snapshots is not None:
            self._snapshots.refresh_all_signatures(scope)

        return batch.to_dto()

    def _apply(
        self,
        batch: VerificationBatchModel,
        rows: list[_Row],
        actor_id: UUID,
        skip_reasons: Counter[str],
    ) -> list[UUID]:
        """Guarded approvals inside one batch SAVEPOINT, one SAVEPOINT per row."""
        approved_ids: list[UUID] = []
        targets = [
            (document.id, invoice.id, supplier.id, document.confidence_score, invoice.total)
            for document, invoice, supplier in rows
        ]
        batch_id = batch.id
        key = batch.idempotency_key

        batch_savepoint = self._session.begin_nested()
        try:
            for document_id, invoice_id, supplier_id, confidence, total in targets:
                now = self._clock.now()
                row_savepoint = self._session.begin_nested()
                document_rows = self._session.execute(
                    update(Document)
                    .where(
                        Document.id == document_id,
                        Document.review_status == ReviewStatus.AWAITING_REVIEW.value,
                        Document.verification_source == VerificationSource.NONE.value,
                        Document.manually_edited_at.is_(None),
                        Document.deleted_at.is_(None),
                    )
                    .values(
                        review_status=ReviewStatus.VERIFIED.value,
                        verification_source=VerificationSource.AUTOMATIC.value,
                        verified_at=now,
                        updated_by_id=actor_id,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                invoice_rows = self._session.execute(
                    update(Invoice)
                    .where(
                        Invoice.id == invoice_id,
                        Invoice.is_verified.is_(False),
                        Invoice.deleted_at.is_(None),
                    )
                    .values(is_verified=True, updated_by_id=actor_id)
                    .execution_options(synchronize_session=False)
                ).rowcount

                if document_rows != 1 or invoice_rows != 1:
                    row_savepoint.rollback()
                    skip_reasons[STATE_CHANGED] += 1
                    logger.warning(
                        "retro_approval_state_changed",
                        extra={"document_id": str(document_id), "invoice_id": str(invoice_id)},
                    )
                    continue

                self._session.add(
                    InvoiceAuditEvent(
                        organisation_id=batch.organisation_id,
                        location_id=batch.location_id,
                        document_id=document_id,
                        invoice_id=invoice_id,
                        batch_id=batch_id,
                        action=AuditAction.AUTO_APPROVED_BATCH.value,
                        reason=AuditReason.RETRO_SUPPLIER_VERIFIED.value,
                        actor_id=actor_id,
                        occurred_at=now,
                        payload={
                            "idempotency_key": key,
                            "supplier_id": str(supplier_id),
                            "confidence_score": str(confidence) if confidence is not None else None,
                            "total": str(total) if total is not None else None,
                        },
                    )
                )
                self._session.flush()
                row_savepoint.commit()
                approved_ids.append(invoice_id)
            batch_savepoint.commit()
        except Exception:
            batch_savepoint.rollback()
            logger.error("retro_batch_apply_failed", extra={"batch_id": str(batch_id)})
            raise

        self._session.expire_all()
        return approved_ids
