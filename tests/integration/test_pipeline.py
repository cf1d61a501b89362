"""Integration tests for the invoice pipeline.

The in-process pipeline is wired from the shared fixtures: extraction,
review, submission and event routing run together against deterministic
fakes for OCR, the LLM and KSeF.

The live extraction test at the bottom requires:
- OPENAI_API_KEY environment variable set
- Internet connection to OpenAI API

Use pytest -v -m integration to run only integration tests.
"""

import asyncio
import os
from decimal import Decimal

import pytest
from fakes import (
    FakeBlobStore,
    FakeExtractionProvider,
    FakePlatform,
    MutableClock,
    RecordingNotifier,
    approved_invoice,
    extracted_invoice,
    make_image_bytes,
)

from services.domain.models import Direction, Invoice, InvoiceStatus, SubmissionStatus
from services.extraction.openai_provider import OpenAIExtractionProvider
from services.jobs.orchestrator import ExtractionOrchestrator
from services.ksef.client import PlatformTransientError
from services.ksef.fa3 import build_document, parse_document
from services.ksef.submission import SubmissionManager
from services.queue.dispatcher import EventDispatcher
from services.queue.events import Event, InMemoryEventQueue
from services.review.corrections import CorrectionReconciler
from services.shared.config import Settings
from services.store.memory import InMemoryRecordStore

pytestmark = pytest.mark.integration


async def _upload(
    store: InMemoryRecordStore, blob_store: FakeBlobStore, events: InMemoryEventQueue
) -> Invoice:
    invoice = Invoice(tenant_id="acme", file_path="")
    invoice.file_path = f"acme/{invoice.id}/original.png"
    blob_store.objects[invoice.file_path] = make_image_bytes()
    invoice = await store.create_invoice(invoice)
    await events.publish(Event.document_uploaded(invoice))
    return invoice


async def _status(store: InMemoryRecordStore, invoice_id: str) -> InvoiceStatus:
    invoice = await store.get_invoice(invoice_id)
    assert invoice is not None
    return invoice.status


@pytest.mark.asyncio
async def test_concurrent_starts_share_one_job(
    orchestrator: ExtractionOrchestrator, store: InMemoryRecordStore, blob_store: FakeBlobStore
) -> None:
    invoice = await store.create_invoice(Invoice(tenant_id="acme", file_path="acme/1/a.png"))
    blob_store.objects[invoice.file_path] = make_image_bytes()

    results = await asyncio.gather(*(orchestrator.start_extraction(invoice.id) for _ in range(5)))

    assert len({job.id for job, _ in results}) == 1
    assert sum(created for _, created in results) == 1


@pytest.mark.asyncio
async def test_upload_to_completed(
    dispatcher: EventDispatcher,
    reconciler: CorrectionReconciler,
    submissions: SubmissionManager,
    store: InMemoryRecordStore,
    blob_store: FakeBlobStore,
    events: InMemoryEventQueue,
    platform: FakePlatform,
    notifier: RecordingNotifier,
) -> None:
    """A confident outgoing invoice goes from upload to a stored receipt."""
    invoice = await _upload(store, blob_store, events)
    await events.drain(dispatcher.dispatch)

    extracted = await store.get_invoice(invoice.id)
    assert extracted is not None
    assert extracted.status == InvoiceStatus.EXTRACTED
    assert extracted.direction == Direction.OUTGOING
    assert notifier.completed == [("acme", invoice.id, False)]

    await reconciler.approve(invoice.id, "anna")
    await events.drain(dispatcher.dispatch)

    assert await _status(store, invoice.id) == InvoiceStatus.COMPLETED
    submission = await submissions.get_submission(invoice.id)
    assert submission.status == SubmissionStatus.ACCEPTED
    assert submission.receipt_ref is not None
    assert blob_store.objects[submission.receipt_ref].startswith(b"<UPO>")

    again = await submissions.submit(invoice.id)
    assert again.reference_number == submission.reference_number
    assert len(platform.submitted) == 1


@pytest.mark.asyncio
async def test_low_confidence_review_then_approval(
    dispatcher: EventDispatcher,
    reconciler: CorrectionReconciler,
    store: InMemoryRecordStore,
    blob_store: FakeBlobStore,
    events: InMemoryEventQueue,
    provider: FakeExtractionProvider,
) -> None:
    provider.invoice = extracted_invoice(confidence=0.55)
    invoice = await _upload(store, blob_store, events)
    await events.drain(dispatcher.dispatch)
    assert await _status(store, invoice.id) == InvoiceStatus.REVIEWING

    batch = {"gross_amount": "1230,00", "buyer.name": "Kontrahent Polska S.A."}
    first = await reconciler.apply_corrections(invoice.id, batch, "anna")
    replay = await reconciler.apply_corrections(invoice.id, batch, "anna")

    assert first.applied_count == 1
    assert replay.applied_count == 0
    corrected = await store.get_invoice(invoice.id)
    assert corrected is not None
    assert len(corrected.corrections) == 1
    assert corrected.gross_amount == Decimal("1230.00")

    await reconciler.approve(invoice.id, "anna")
    await events.drain(dispatcher.dispatch)
    assert await _status(store, invoice.id) == InvoiceStatus.COMPLETED


@pytest.mark.asyncio
async def test_platform_outage_fails_submission(
    dispatcher: EventDispatcher,
    submissions: SubmissionManager,
    store: InMemoryRecordStore,
    events: InMemoryEventQueue,
    platform: FakePlatform,
    clock: MutableClock,
) -> None:
    """Three unavailable responses exhaust the attempts without a reference."""
    platform.submit_outcomes.extend(
        PlatformTransientError("KSeF submit unavailable (HTTP 503)") for _ in range(3)
    )
    invoice = await store.create_invoice(approved_invoice())
    await events.publish(Event.invoice_approved(invoice))
    await events.drain(dispatcher.dispatch)

    for _ in range(2):
        clock.advance(60)
        await submissions.resume_due()
        await events.drain(dispatcher.dispatch)

    submission = await submissions.get_submission(invoice.id)
    assert submission.status == SubmissionStatus.FAILED
    assert submission.reference_number is None
    assert len(platform.submitted) == 3
    assert await _status(store, invoice.id) == InvoiceStatus.ERROR


def test_fa3_round_trip() -> None:
    invoice = approved_invoice()

    parsed = parse_document(build_document(invoice))

    assert parsed.invoice_number == invoice.invoice_number
    assert parsed.gross_amount == invoice.gross_amount
    assert parsed.seller.tax_id == invoice.seller.tax_id
    assert parsed.buyer.tax_id == invoice.buyer.tax_id
    assert len(parsed.line_items) == len(invoice.line_items)


@pytest.mark.skipif(
    not os.getenv("OPENAI_API_KEY"),
    reason="OPENAI_API_KEY not set - skipping live extraction test",
)
def test_live_extraction_from_realistic_text() -> None:
    """Extraction against the real API with OCR-like Polish invoice text."""
    invoice_text = """
    FAKTURA VAT nr FV/2025/02/117
    Data wystawienia: 2025-02-20    Termin płatności: 2025-03-06

    Sprzedawca: Acme Sp. z o.o., ul. Prosta 1, 00-001 Warszawa, NIP 526-025-02-74
    Nabywca: Kontrahent S.A., ul. Długa 5, 80-001 Gdańsk, NIP 774-000-14-54

    Lp. Nazwa                    Ilość  J.m.  Cena netto  Wartość netto  VAT
    1   Usługa wdrożeniowa       1      szt   1000,00     1000,00        23%

    Razem netto: 1000,00 PLN   VAT: 230,00 PLN   Brutto: 1230,00 PLN
    """
    provider = OpenAIExtractionProvider(Settings())

    result = provider.extract_invoice_fields(invoice_text, {"locale": "pl-PL"})

    assert result.success is True
    assert result.invoice is not None
    assert result.invoice.header.invoice_number == "FV/2025/02/117"
    assert result.invoice.totals.gross_amount == Decimal("1230.00")
