"""Unit tests for corrections, approval and reopening."""

from decimal import Decimal

import pytest
from fakes import OTHER_NIP, RecordingAuditSink, approved_invoice

from services.domain.models import Direction, Invoice, InvoiceStatus
from services.queue.events import INVOICE_APPROVED, InMemoryEventQueue
from services.review.corrections import CorrectionReconciler
from services.shared.errors import (
    ApprovalError,
    CorrectionValidationError,
    InvalidTransitionError,
    InvoiceNotEditableError,
    NotFoundError,
)
from services.store.memory import InMemoryRecordStore


async def _reviewing(store: InMemoryRecordStore, **overrides) -> Invoice:
    invoice = approved_invoice(status=InvoiceStatus.REVIEWING, approved_by=None, **overrides)
    return await store.create_invoice(invoice)


class TestApplyCorrections:
    @pytest.mark.asyncio
    async def test_applies_and_records_history(
        self,
        reconciler: CorrectionReconciler,
        store: InMemoryRecordStore,
        audit: RecordingAuditSink,
    ) -> None:
        invoice = await _reviewing(store)

        outcome = await reconciler.apply_corrections(
            invoice.id, {"invoice_number": "FV/2025/002", "net_amount": "1 000,00"}, "anna"
        )

        # net_amount normalises to the stored value, so only one correction is appended
        assert outcome.applied_count == 1
        assert outcome.values == {"invoice_number": "FV/2025/002", "net_amount": "1000.00"}
        stored = await store.get_invoice(invoice.id)
        assert stored is not None
        assert stored.invoice_number == "FV/2025/002"
        assert len(stored.corrections) == 1
        correction = stored.corrections[0]
        assert correction.original_value == "FV/2025/001"
        assert correction.corrected_value == "FV/2025/002"
        assert correction.actor == "anna"
        assert audit.events() == ["invoice.corrected"]

    @pytest.mark.asyncio
    async def test_replaying_a_batch_appends_nothing(
        self, reconciler: CorrectionReconciler, store: InMemoryRecordStore
    ) -> None:
        invoice = await _reviewing(store)
        batch = {"buyer.name": "Nowy Kontrahent", "line_items.0.quantity": "2"}

        first = await reconciler.apply_corrections(invoice.id, batch, "anna")
        second = await reconciler.apply_corrections(invoice.id, batch, "anna")

        assert first.applied_count == 2
        assert second.applied_count == 0
        stored = await store.get_invoice(invoice.id)
        assert stored is not None
        assert len(stored.corrections) == 2
        assert stored.line_items[0].quantity == Decimal("2")

    @pytest.mark.asyncio
    async def test_one_invalid_field_rejects_the_batch(
        self, reconciler: CorrectionReconciler, store: InMemoryRecordStore
    ) -> None:
        invoice = await _reviewing(store)

        with pytest.raises(CorrectionValidationError) as exc_info:
            await reconciler.apply_corrections(
                invoice.id,
                {
                    "invoice_number": "FV/2025/009",
                    "seller.tax_id": "1234567890",
                    "issue_date": "20.02.2025",
                    "color": "red",
                },
                "anna",
            )

        assert set(exc_info.value.errors) == {"seller.tax_id", "issue_date", "color"}
        stored = await store.get_invoice(invoice.id)
        assert stored is not None
        assert stored.invoice_number == "FV/2025/001"
        assert stored.corrections == []

    @pytest.mark.asyncio
    async def test_amount_with_fractions_of_a_cent_is_rejected(
        self, reconciler: CorrectionReconciler, store: InMemoryRecordStore
    ) -> None:
        invoice = await _reviewing(store)

        with pytest.raises(CorrectionValidationError) as exc_info:
            await reconciler.apply_corrections(invoice.id, {"net_amount": "1000,005"}, "anna")

        assert set(exc_info.value.errors) == {"net_amount"}
        stored = await store.get_invoice(invoice.id)
        assert stored is not None
        assert stored.net_amount == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_required_field_cannot_be_cleared(
        self, reconciler: CorrectionReconciler, store: InMemoryRecordStore
    ) -> None:
        invoice = await _reviewing(store)
        with pytest.raises(CorrectionValidationError) as exc_info:
            await reconciler.apply_corrections(invoice.id, {"currency": "  "}, "anna")
        assert exc_info.value.errors == {"currency": "Field is required"}

    @pytest.mark.asyncio
    async def test_optional_field_can_be_cleared(
        self, reconciler: CorrectionReconciler, store: InMemoryRecordStore
    ) -> None:
        invoice = await _reviewing(store)
        outcome = await reconciler.apply_corrections(invoice.id, {"due_date": None}, "anna")
        assert outcome.applied_count == 1
        assert outcome.values == {"due_date": None}

    @pytest.mark.asyncio
    async def test_line_item_index_out_of_range(
        self, reconciler: CorrectionReconciler, store: InMemoryRecordStore
    ) -> None:
        invoice = await _reviewing(store)
        with pytest.raises(CorrectionValidationError) as exc_info:
            await reconciler.apply_corrections(invoice.id, {"line_items.5.unit": "h"}, "anna")
        assert "line_items.5.unit" in exc_info.value.errors

    @pytest.mark.asyncio
    async def test_tax_id_correction_reclassifies_direction(
        self, reconciler: CorrectionReconciler, store: InMemoryRecordStore
    ) -> None:
        invoice = await _reviewing(store, direction=Direction.OUTGOING)

        await reconciler.apply_corrections(invoice.id, {"seller.tax_id": OTHER_NIP}, "anna")

        stored = await store.get_invoice(invoice.id)
        assert stored is not None
        assert stored.seller.tax_id == OTHER_NIP
        assert stored.direction == Direction.UNKNOWN

    @pytest.mark.asyncio
    async def test_approved_invoice_is_not_editable(
        self, reconciler: CorrectionReconciler, store: InMemoryRecordStore
    ) -> None:
        invoice = await store.create_invoice(approved_invoice())
        with pytest.raises(InvoiceNotEditableError):
            await reconciler.apply_corrections(invoice.id, {"invoice_number": "X"}, "anna")

    @pytest.mark.asyncio
    async def test_unknown_invoice(self, reconciler: CorrectionReconciler) -> None:
        with pytest.raises(NotFoundError):
            await reconciler.apply_corrections("missing", {"invoice_number": "X"}, "anna")


class TestApprove:
    @pytest.mark.asyncio
    async def test_approve_publishes_event(
        self,
        reconciler: CorrectionReconciler,
        store: InMemoryRecordStore,
        events: InMemoryEventQueue,
        audit: RecordingAuditSink,
    ) -> None:
        invoice = await _reviewing(store)

        approved = await reconciler.approve(invoice.id, "anna")

        assert approved.status == InvoiceStatus.APPROVED
        assert approved.approved_by == "anna"
        assert approved.approved_at is not None
        assert events.names() == [INVOICE_APPROVED]
        assert audit.events() == ["invoice.approved"]

    @pytest.mark.asyncio
    async def test_validation_errors_block_approval(
        self, reconciler: CorrectionReconciler, store: InMemoryRecordStore
    ) -> None:
        invoice = await _reviewing(store, gross_amount=Decimal("1500.00"))

        with pytest.raises(ApprovalError) as exc_info:
            await reconciler.approve(invoice.id, "anna")

        assert any(error.startswith("Amount mismatch") for error in exc_info.value.errors)
        stored = await store.get_invoice(invoice.id)
        assert stored is not None and stored.status == InvoiceStatus.REVIEWING

    @pytest.mark.asyncio
    async def test_correcting_then_approving(
        self, reconciler: CorrectionReconciler, store: InMemoryRecordStore
    ) -> None:
        invoice = await _reviewing(store, gross_amount=Decimal("1500.00"))

        await reconciler.apply_corrections(invoice.id, {"gross_amount": "1230,00"}, "anna")
        approved = await reconciler.approve(invoice.id, "anna")

        assert approved.status == InvoiceStatus.APPROVED

    @pytest.mark.asyncio
    async def test_cannot_approve_twice(
        self, reconciler: CorrectionReconciler, store: InMemoryRecordStore
    ) -> None:
        invoice = await _reviewing(store)
        await reconciler.approve(invoice.id, "anna")
        with pytest.raises(InvalidTransitionError):
            await reconciler.approve(invoice.id, "anna")


class TestReopen:
    @pytest.mark.asyncio
    async def test_errored_invoice_returns_to_review(
        self,
        reconciler: CorrectionReconciler,
        store: InMemoryRecordStore,
        audit: RecordingAuditSink,
    ) -> None:
        invoice = approved_invoice()
        invoice.mark_error("KSEF_450", "Schema validation failed")
        invoice = await store.create_invoice(invoice)

        reopened = await reconciler.reopen(invoice.id, "anna")

        assert reopened.status == InvoiceStatus.REVIEWING
        assert reopened.error_code is None
        assert reopened.approved_by is None
        _, fields = audit.entries[-1]
        assert fields["previous_error"] == {
            "code": "KSEF_450",
            "message": "Schema validation failed",
        }

    @pytest.mark.asyncio
    async def test_only_errored_invoices_reopen(
        self, reconciler: CorrectionReconciler, store: InMemoryRecordStore
    ) -> None:
        invoice = await _reviewing(store)
        with pytest.raises(InvalidTransitionError):
            await reconciler.reopen(invoice.id, "anna")

