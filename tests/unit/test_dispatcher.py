"""Unit tests for event routing."""

import pytest
from fakes import FakeBlobStore, RecordingNotifier, make_image_bytes

from services.domain.models import Invoice, InvoiceStatus, SubmissionStatus
from services.queue.dispatcher import EventDispatcher
from services.queue.events import Event, InMemoryEventQueue
from services.store.memory import InMemoryRecordStore


async def _uploaded(store: InMemoryRecordStore, blob_store: FakeBlobStore) -> Invoice:
    invoice = await store.create_invoice(Invoice(tenant_id="acme", file_path="acme/1/original.png"))
    blob_store.objects[invoice.file_path] = make_image_bytes()
    return invoice


@pytest.mark.asyncio
async def test_unknown_event_is_ignored(dispatcher: EventDispatcher) -> None:
    event = Event(name="invoice.archived", payload={}, dedup_key="invoice.archived:1")
    assert await dispatcher.dispatch(event) is False


@pytest.mark.asyncio
async def test_pipeline_errors_are_contained(dispatcher: EventDispatcher) -> None:
    event = Event(
        name="submission.poll",
        payload={"invoiceId": "missing", "submissionId": "s"},
        dedup_key="submission.poll:s:v1",
    )
    assert await dispatcher.dispatch(event) is False


@pytest.mark.asyncio
async def test_upload_runs_through_to_notification(
    dispatcher: EventDispatcher,
    store: InMemoryRecordStore,
    blob_store: FakeBlobStore,
    events: InMemoryEventQueue,
    notifier: RecordingNotifier,
) -> None:
    invoice = await _uploaded(store, blob_store)
    await events.publish(Event.document_uploaded(invoice))

    delivered = await events.drain(dispatcher.dispatch)

    assert delivered == 3
    assert events.names() == ["document.uploaded", "extraction.run", "extraction.completed"]
    assert notifier.completed == [("acme", invoice.id, False)]
    stored = await store.get_invoice(invoice.id)
    assert stored is not None and stored.status == InvoiceStatus.EXTRACTED


@pytest.mark.asyncio
async def test_approval_runs_through_to_receipt(
    dispatcher: EventDispatcher,
    store: InMemoryRecordStore,
    blob_store: FakeBlobStore,
    events: InMemoryEventQueue,
) -> None:
    invoice = await _uploaded(store, blob_store)
    await events.publish(Event.document_uploaded(invoice))
    await events.drain(dispatcher.dispatch)

    stored = await store.get_invoice(invoice.id)
    assert stored is not None
    stored.transition_to(InvoiceStatus.APPROVED)
    stored = await store.save_invoice(stored)
    await events.publish(Event.invoice_approved(stored))
    await events.drain(dispatcher.dispatch)

    submission = await store.get_submission_for_invoice(invoice.id)
    assert submission is not None
    assert submission.status == SubmissionStatus.ACCEPTED
    assert submission.receipt_ref is not None
    completed = await store.get_invoice(invoice.id)
    assert completed is not None and completed.status == InvoiceStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_extraction_notifies(
    dispatcher: EventDispatcher,
    store: InMemoryRecordStore,
    events: InMemoryEventQueue,
    notifier: RecordingNotifier,
) -> None:
    invoice = await store.create_invoice(Invoice(tenant_id="acme", file_path="acme/missing.png"))
    await events.publish(Event.document_uploaded(invoice))

    await events.drain(dispatcher.dispatch)

    assert len(notifier.failed) == 1
    tenant_id, invoice_id, error = notifier.failed[0]
    assert (tenant_id, invoice_id) == ("acme", invoice.id)
    assert "missing" in error
