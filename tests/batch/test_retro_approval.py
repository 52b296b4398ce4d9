"""
Tests for RetroApprovalProcessor.

Invariants tested:
- SQL pre-filter: only clean, high-confidence, ACTIVE-supplier documents
  with a warning-free canonical record are candidates.
- Feature/entitlement off raises before any batch record is written.
- Idempotency: same key + same request replays; same key + different
  request conflicts; nothing is applied twice.
- Dry run reports without writing approvals.
- Each approval writes exactly one audit event; a lost race is skipped
  as STATE_CHANGED.
- Per-run cap and newest-first ordering.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from spend_batch.domain.types import STATE_CHANGED, BatchState
from spend_batch.models.batch import VerificationBatchModel
from spend_batch.services.retro_approval import RetroApprovalProcessor, request_fingerprint
from spend_kernel.domain.values import ReviewStatus, SupplierStatus, VerificationSource
from spend_kernel.exceptions import (
    AutoApprovalDisabledError,
    IdempotencyKeyConflictError,
    InvalidScopeError,
)
from spend_kernel.models.audit_event import AuditAction, AuditReason, InvoiceAuditEvent
from spend_kernel.models.document import Document
from spend_kernel.models.invoice import Invoice
from spend_kernel.models.snapshot import ProductSnapshotRun
from spend_kernel.services.snapshot_service import SnapshotService


@pytest.fixture
def processor(session, clock):
    return RetroApprovalProcessor(session, clock)


@pytest.fixture
def supplier(make_supplier):
    return make_supplier()


@pytest.fixture
def make_candidate(supplier, make_manual_invoice):
    """An unverified manual invoice that passes every pre-filter by default."""

    def _make(invoice_date=date(2025, 5, 1), total=None, line_total="50.00", **kwargs):
        kwargs.setdefault("supplier", supplier)
        return make_manual_invoice(
            invoice_date=invoice_date,
            lines=[{"description": "Flour", "quantity": 10, "unit_price": "5.00", "line_total": line_total}],
            total=total,
            verified=False,
            **kwargs,
        )

    return _make


def _count(session, model, *criteria) -> int:
    return session.execute(select(func.count()).select_from(model).where(*criteria)).scalar_one()


# =============================================================================
# Candidates
# =============================================================================


class TestSelectCandidates:
    def test_filters(
        self, processor, scope, make_supplier, make_candidate, make_manual_invoice, other_location_id,
    ):
        good = make_candidate()
        empty_errors = make_candidate(validation_errors=[])
        make_candidate(manually_edited=True)
        make_candidate(confidence_score=Decimal("89.9"))
        make_candidate(confidence_score=None)
        make_candidate(validation_errors=["total mismatch"])
        make_candidate(warning_lines=1)
        make_candidate(with_canonical=False)
        make_candidate(supplier=make_supplier("Pending", status=SupplierStatus.PENDING_REVIEW))
        make_candidate(location_id=other_location_id)
        make_manual_invoice(make_supplier("Done"), date(2025, 5, 1), [{"description": "x", "line_total": 1}])

        candidates = processor.select_candidates(scope, limit=100)

        assert {c.invoice_id for c in candidates} == {good.id, empty_errors.id}

    def test_superseded_reference_excluded(self, processor, scope, make_candidate, make_manual_invoice, supplier):
        make_manual_invoice(supplier, date(2025, 4, 1), [{"description": "x", "line_total": 1}],
                            supersedes_external_id="X-1")
        make_candidate(supersedes_external_id="X-1")
        fresh = make_candidate(supersedes_external_id="X-2")

        assert [c.invoice_id for c in processor.select_candidates(scope, 10)] == [fresh.id]

    def test_newest_first_and_limit(self, processor, scope, make_candidate):
        older = make_candidate(invoice_date=date(2025, 3, 1))
        newer = make_candidate(invoice_date=date(2025, 5, 1))

        assert [c.invoice_id for c in processor.select_candidates(scope, limit=1)] == [newer.id]
        assert [c.invoice_id for c in processor.select_candidates(scope, limit=5)] == [
            newer.id, older.id,
        ]

    def test_candidate_fields(self, processor, scope, make_candidate, supplier):
        invoice = make_candidate(invoice_number="INV-42")

        (candidate,) = processor.select_candidates(scope, 5)

        assert candidate.document_id == invoice.document_id
        assert candidate.supplier_name == supplier.name
        assert candidate.invoice_number == "INV-42"
        assert candidate.total == Decimal("50.00")

    def test_requires_location(self, processor, org_scope):
        with pytest.raises(InvalidScopeError):
            processor.select_candidates(org_scope, 5)


# =============================================================================
# Preview
# =============================================================================


class TestPreview:
    def test_counts_and_estimate(self, session, processor, scope, make_candidate, make_supplier):
        make_candidate()
        make_candidate(total="-10.00", line_total="-10.00")
        make_candidate(supplier=make_supplier("Other Foods"))

        summary = processor.preview(scope)

        assert summary.candidate_count == 3
        assert summary.is_truncated is False
        assert summary.sample_size == 3
        assert summary.eligible_count_estimate == 2
        assert len(summary.preview) == 2
        assert [c.supplier_name for c in summary.by_supplier] == ["Fresh Foods Ltd", "Other Foods"]
        assert summary.by_supplier[0].candidate_count == 2
        assert summary.requirements["min_confidence"] == "90"
        assert summary.can_run is True
        assert _count(session, VerificationBatchModel) == 0

    def test_truncated(self, session, clock, scope, make_candidate):
        make_candidate(invoice_date=date(2025, 4, 1))
        make_candidate(invoice_date=date(2025, 5, 1))
        processor = RetroApprovalProcessor(session, clock, max_approve_per_run=1, max_candidates=1)

        summary = processor.preview(scope)

        assert summary.is_truncated is True
        assert summary.candidate_count == 1

    def test_reports_flags_without_raising(self, processor, scope, make_candidate):
        make_candidate()

        summary = processor.preview(scope, entitled=False)

        assert summary.can_run is False
        assert summary.candidate_count == 1


# =============================================================================
# Run
# =============================================================================


class TestRunFeatureFlags:
    @pytest.mark.parametrize(
        "entitled, enabled, upgrade_required",
        [(False, True, True), (True, False, False), (False, False, True)],
    )
    def test_disabled_raises_before_writing(
        self, session, processor, scope, actor_id, make_candidate, entitled, enabled, upgrade_required,
    ):
        make_candidate()

        with pytest.raises(AutoApprovalDisabledError) as exc_info:
            processor.run(
                scope, "key-1", actor_id=actor_id, entitled=entitled, auto_approve_enabled=enabled,
            )

        assert exc_info.value.upgrade_required is upgrade_required
        assert exc_info.value.code == "FEATURE_DISABLED"
        assert _count(session, VerificationBatchModel) == 0


class TestRun:
    def test_approves_and_audits(self, session, processor, scope, actor_id, make_candidate, supplier):
        invoice = make_candidate()
        credit = make_candidate(total="-10.00", line_total="-10.00")

        result = processor.run(scope, "key-1", actor_id=actor_id)

        assert result.state == BatchState.COMPLETED
        assert result.approved_count == 1
        assert result.approved_invoice_ids == (invoice.id,)
        assert result.skip_reasons == {"NEGATIVE_TOTAL": 1}
        assert result.skipped_count == 1
        assert result.remaining_candidate_count == 1
        assert result.reused_batch is False

        document = session.get(Document, invoice.document_id)
        assert document.review_status == ReviewStatus.VERIFIED.value
        assert document.verification_source == VerificationSource.AUTOMATIC.value
        assert document.verified_at is not None
        assert session.get(Invoice, invoice.id).is_verified is True
        assert session.get(Invoice, credit.id).is_verified is False

        (event,) = session.execute(select(InvoiceAuditEvent)).scalars().all()
        assert event.invoice_id == invoice.id
        assert event.batch_id == result.batch_id
        assert event.action == AuditAction.AUTO_APPROVED_BATCH.value
        assert event.reason == AuditReason.RETRO_SUPPLIER_VERIFIED.value
        assert event.actor_id == actor_id
        assert event.payload["idempotency_key"] == "key-1"
        assert event.payload["supplier_id"] == str(supplier.id)

    def test_dry_run_writes_no_approvals(self, session, processor, scope, actor_id, make_candidate):
        invoice = make_candidate()

        result = processor.run(scope, "dry-1", dry_run=True, actor_id=actor_id)

        assert result.dry_run is True
        assert result.approved_count == 1
        assert result.approved_invoice_ids == (invoice.id,)
        assert result.remaining_candidate_count == 1
        assert session.get(Invoice, invoice.id).is_verified is False
        assert _count(session, InvoiceAuditEvent) == 0
        assert _count(session, VerificationBatchModel) == 1

    def test_cap_per_run(self, session, clock, scope, actor_id, make_candidate):
        older = make_candidate(invoice_date=date(2025, 3, 1))
        newer = make_candidate(invoice_date=date(2025, 5, 1))
        processor = RetroApprovalProcessor(session, clock, max_approve_per_run=1)

        result = processor.run(scope, "cap-1", actor_id=actor_id)

        assert result.approved_invoice_ids == (newer.id,)
        assert result.remaining_candidate_count == 1
        assert session.get(Invoice, older.id).is_verified is False

    def test_nothing_to_do(self, processor, scope, actor_id):
        result = processor.run(scope, "empty", actor_id=actor_id)

        assert result.approved_count == 0
        assert result.skip_reasons == {}
        assert result.state == BatchState.COMPLETED

    def test_logs_completion(self, processor, scope, actor_id, make_candidate, captured_logs):
        make_candidate()

        result = processor.run(scope, "log-1", actor_id=actor_id)

        (record,) = [r for r in captured_logs() if r["message"] == "retro_batch_completed"]
        assert record["approved_count"] == 1
        assert record["batch_id"] == str(result.batch_id)
        assert record["location_id"] == str(scope.location_id)


class TestIdempotency:
    def test_replay_returns_stored_result(self, session, processor, scope, actor_id, make_candidate):
        make_candidate()
        first = processor.run(scope, "same-key", actor_id=actor_id)
        make_candidate(invoice_date=date(2025, 6, 1))

        second = processor.run(scope, "  same-key  ", actor_id=actor_id)

        assert second.reused_batch is True
        assert second.batch_id == first.batch_id
        assert second.approved_invoice_ids == first.approved_invoice_ids
        assert _count(session, InvoiceAuditEvent) == 1
        assert _count(session, VerificationBatchModel) == 1

    def test_key_reused_for_different_request(self, session, processor, scope, actor_id, make_candidate):
        make_candidate()
        processor.run(scope, "k", dry_run=True, actor_id=actor_id)

        with pytest.raises(IdempotencyKeyConflictError) as exc_info:
            processor.run(scope, "k", dry_run=False, actor_id=actor_id)

        assert exc_info.value.stored_fingerprint == request_fingerprint(scope, True)
        assert exc_info.value.request_fingerprint == request_fingerprint(scope, False)
        assert _count(session, InvoiceAuditEvent) == 0

    def test_generated_key(self, processor, scope, actor_id, captured_logs):
        result = processor.run(scope, None, actor_id=actor_id)

        assert result.idempotency_key.startswith("retro:")
        assert any(r["message"] == "idempotency_key_generated" for r in captured_logs())

    def test_blank_key_is_generated(self, processor, scope, actor_id):
        first = processor.run(scope, "   ", actor_id=actor_id)
        second = processor.run(scope, "", actor_id=actor_id)
        assert first.batch_id != second.batch_id

    def test_fingerprint_ignores_key(self, scope):
        assert request_fingerprint(scope, False) == request_fingerprint(scope, False)
        assert request_fingerprint(scope, False) != request_fingerprint(scope, True)


def _hide_batch_on_first_lookup(processor, monkeypatch) -> list[str]:
    """Simulate a concurrent writer: the pre-insert lookup sees no batch."""
    find = processor._find_batch
    lookups: list[str] = []

    def find_after_concurrent_insert(scope, key):
        lookups.append(key)
        return None if len(lookups) == 1 else find(scope, key)

    monkeypatch.setattr(processor, "_find_batch", find_after_concurrent_insert)
    return lookups


class TestIdempotencyInsertRace:
    def test_unique_violation_replays_stored_batch(
        self, session, processor, scope, actor_id, make_candidate, monkeypatch, captured_logs,
    ):
        make_candidate()
        first = processor.run(scope, "race-key", actor_id=actor_id)
        lookups = _hide_batch_on_first_lookup(processor, monkeypatch)

        second = processor.run(scope, "race-key", actor_id=actor_id)

        assert lookups == ["race-key", "race-key"]
        assert second.reused_batch is True
        assert second.batch_id == first.batch_id
        assert second.approved_invoice_ids == first.approved_invoice_ids
        assert _count(session, VerificationBatchModel) == 1
        assert _count(session, InvoiceAuditEvent) == 1
        assert any(r["message"] == "retro_batch_insert_race" for r in captured_logs())

    def test_unique_violation_with_different_request_conflicts(
        self, session, processor, scope, actor_id, make_candidate, monkeypatch,
    ):
        make_candidate()
        processor.run(scope, "race-key", dry_run=True, actor_id=actor_id)
        _hide_batch_on_first_lookup(processor, monkeypatch)

        with pytest.raises(IdempotencyKeyConflictError) as exc_info:
            processor.run(scope, "race-key", dry_run=False, actor_id=actor_id)

        assert exc_info.value.stored_fingerprint == request_fingerprint(scope, True)
        assert exc_info.value.request_fingerprint == request_fingerprint(scope, False)
        assert _count(session, VerificationBatchModel) == 1
        assert _count(session, InvoiceAuditEvent) == 0


class TestConcurrentReviewer:
    def test_lost_race_is_skipped(
        self, session, processor, scope, actor_id, make_candidate, monkeypatch,
    ):
        raced = make_candidate(invoice_date=date(2025, 5, 2))
        kept = make_candidate(invoice_date=date(2025, 5, 1))
        gate = processor._passes_gate

        def gate_then_reviewer_verifies(row):
            outcome = gate(row)
            document, _, _ = row
            if document.id == raced.document_id:
                session.execute(
                    update(Document)
                    .where(Document.id == document.id)
                    .values(
                        review_status=ReviewStatus.VERIFIED.value,
                        verification_source=VerificationSource.HUMAN.value,
                    )
                    .execution_options(synchronize_session=False)
                )
            return outcome

        monkeypatch.setattr(processor, "_passes_gate", gate_then_reviewer_verifies)

        result = processor.run(scope, "race-1", actor_id=actor_id)

        assert result.approved_invoice_ids == (kept.id,)
        assert result.skip_reasons == {STATE_CHANGED: 1}
        assert session.get(Invoice, raced.id).is_verified is False
        assert session.get(Document, raced.document_id).verification_source == (
            VerificationSource.HUMAN.value
        )
        assert _count(session, InvoiceAuditEvent, InvoiceAuditEvent.invoice_id == raced.id) == 0


class TestSnapshotRefresh:
    def test_refreshes_after_approvals(self, session, clock, scope, actor_id, make_candidate):
        make_candidate()
        snapshots = SnapshotService(session, clock)
        processor = RetroApprovalProcessor(session, clock, snapshot_service=snapshots)

        processor.run(scope, "snap-1", actor_id=actor_id)

        page = snapshots.list_products(scope)
        assert [item.product_name for item in page.items] == ["Flour"]
        assert page.items[0].spend_12m == Decimal("50.00")

    def test_dry_run_does_not_refresh(self, session, clock, scope, actor_id, make_candidate):
        make_candidate()
        snapshots = SnapshotService(session, clock)
        processor = RetroApprovalProcessor(session, clock, snapshot_service=snapshots)

        processor.run(scope, "snap-dry", dry_run=True, actor_id=actor_id)

        assert _count(session, ProductSnapshotRun) == 0
