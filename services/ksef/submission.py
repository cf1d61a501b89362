"""Submission of approved invoices to the national platform.

Lifecycle of a submission (one per invoice):

    PENDING -> SUBMITTING -> SUBMITTED -> ACCEPTED
                   |             |
                   |             +-> REJECTED   (platform refused the document)
                   +-> FAILED -> RETRYING -> SUBMITTING (or SUBMITTED when a
                                                          reference is held)

A platform reference number is claimed in the record store before it is kept,
so one reference can never be attached to two invoices. Once a submission
holds a reference, retries only poll for its status and never send the
document again.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from services.audit.sink import AuditSink
from services.domain.models import Invoice, InvoiceStatus, Submission, SubmissionStatus, utcnow
from services.jobs.backoff import compute_backoff, next_attempt_at
from services.ksef.client import PlatformClient, SessionCache
from services.ksef.fa3 import build_document
from services.ksef.signer import CertificateStore, SignatureWrapper, SigningCertificate
from services.queue.events import Event, EventQueue
from services.review.validators import normalize_nip
from services.shared.config import Settings
from services.shared.errors import (
    DuplicateRecordError,
    InvalidTransitionError,
    NotFoundError,
    PermanentError,
    PipelineError,
    PlatformRejectedError,
    ReferenceCollisionError,
    TransientError,
    UnsignedSubmissionError,
)
from services.shared.metrics import submissions_total
from services.shared.tenants import TenantDirectory
from services.storage.factory import BlobStore
from services.store.base import RecordStore

logger = logging.getLogger(__name__)

IN_PROGRESS = {SubmissionStatus.SUBMITTING, SubmissionStatus.SUBMITTED, SubmissionStatus.RETRYING}
RESUBMITTABLE = {SubmissionStatus.REJECTED, SubmissionStatus.FAILED}


class SubmissionManager:
    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        client: PlatformClient,
        sessions: SessionCache,
        signer: SignatureWrapper,
        certificates: CertificateStore,
        tenants: TenantDirectory,
        blob_store: BlobStore,
        events: EventQueue,
        audit: AuditSink,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.client = client
        self.sessions = sessions
        self.signer = signer
        self.certificates = certificates
        self.tenants = tenants
        self.blob_store = blob_store
        self.events = events
        self.audit = audit
        self.clock = clock

    async def submit(self, invoice_id: str) -> Submission:
        """Submit an approved invoice, or return its existing submission.

        An invoice whose submission was already ACCEPTED is returned without
        contacting the platform. A submission already in progress is returned
        as is. A REJECTED or FAILED submission is sent again, which is how a
        re-approved invoice goes back out after correction.

        Raises:
            NotFoundError: If the invoice does not exist
            InvalidTransitionError: If the invoice is not APPROVED
        """
        invoice = await self._get_invoice(invoice_id)
        submission = await self.store.get_submission_for_invoice(invoice_id)
        if submission is not None and submission.status == SubmissionStatus.ACCEPTED:
            logger.info(f"Invoice {invoice_id} already accepted as {submission.reference_number}")
            return submission
        if invoice.status != InvoiceStatus.APPROVED:
            raise InvalidTransitionError(
                "Invoice", invoice.status.value, InvoiceStatus.SUBMITTED.value
            )

        if submission is None:
            try:
                submission = await self.store.create_submission(
                    Submission(invoice_id=invoice.id, tenant_id=invoice.tenant_id)
                )
            except DuplicateRecordError:
                existing = await self.store.get_submission_for_invoice(invoice_id)
                if existing is None:
                    raise
                return existing
        elif submission.status in IN_PROGRESS:
            return submission
        elif submission.status in RESUBMITTABLE:
            if submission.status == SubmissionStatus.FAILED:
                submission.transition_to(SubmissionStatus.RETRYING)
            submission.retry_count = 0
            submission.poll_count = 0
            submission.next_retry_at = None
            submission.reference_number = None

        return await self._send(submission, invoice)

    def _tenant_nip(self, invoice: Invoice) -> str:
        nip = self.tenants.get_tax_id(invoice.tenant_id) or normalize_nip(invoice.seller.tax_id)
        if not nip:
            raise PermanentError(
                f"No NIP configured for tenant {invoice.tenant_id}", code="TENANT_NIP_MISSING"
            )
        return nip

    async def _send(self, submission: Submission, invoice: Invoice) -> Submission:
        submission.transition_to(SubmissionStatus.SUBMITTING)
        submission.clear_error()
        submission = await self.store.save_submission(submission)

        try:
            certificate = self.certificates.get(invoice.tenant_id)
            signed = self.signer.sign(build_document(invoice, self.clock()), certificate)
            if not signed.signed and self.settings.ksef_environment == "production":
                raise UnsignedSubmissionError()
            submission.xml_payload = signed.xml
            submission.signed = signed.signed
            nip = self._tenant_nip(invoice)
            result = await self.sessions.call(
                nip,
                certificate,
                lambda session: self.client.submit_invoice(signed.xml, session),
            )
        except TransientError as e:
            return await self._transient_failure(submission, invoice, e)
        except PlatformRejectedError as e:
            return await self._rejected(submission, invoice, e)
        except PermanentError as e:
            return await self._permanent_failure(submission, invoice, e)

        owner = await self.store.claim_reference(result.reference_number, invoice.id)
        if owner != invoice.id:
            return await self._permanent_failure(
                submission, invoice, ReferenceCollisionError(result.reference_number, owner)
            )

        submission.reference_number = result.reference_number
        submission.transition_to(SubmissionStatus.SUBMITTED)
        submission = await self.store.save_submission(submission)
        logger.info(f"Invoice {invoice.id} sent to KSeF as {result.reference_number}")
        return await self._check_status(submission, invoice, certificate)

    async def _check_status(
        self,
        submission: Submission,
        invoice: Invoice,
        certificate: SigningCertificate | None = None,
    ) -> Submission:
        reference = submission.reference_number
        if reference is None:
            raise PermanentError("Submitted invoice has no reference", code="REFERENCE_MISSING")
        try:
            status = await self.sessions.call(
                self._tenant_nip(invoice),
                certificate or self.certificates.get(invoice.tenant_id),
                lambda session: self.client.get_status(reference, session),
            )
        except TransientError as e:
            logger.warning(f"Status check for {reference} failed: {e}")
            return await self._schedule_poll(submission, invoice)
        except PlatformRejectedError as e:
            return await self._rejected(submission, invoice, e)
        except PermanentError as e:
            return await self._permanent_failure(submission, invoice, e)

        if status.status == "ACCEPTED":
            return await self._accepted(submission, invoice, status.accepted_at)
        if status.status == "REJECTED":
            error = PlatformRejectedError(
                status.description or "Document rejected by KSeF",
                code=f"KSEF_{status.processing_code}",
                details={"reference_number": reference, "processing_code": status.processing_code},
            )
            return await self._rejected(submission, invoice, error)
        return await self._schedule_poll(submission, invoice)

    async def _schedule_poll(self, submission: Submission, invoice: Invoice) -> Submission:
        submission.poll_count += 1
        if submission.poll_count >= self.settings.submission_max_polls:
            submission.poll_count = 0
            error = TransientError(
                f"KSeF did not confirm {submission.reference_number} in time",
                code="STATUS_TIMEOUT",
            )
            return await self._transient_failure(submission, invoice, error)
        submission.updated_at = self.clock()
        submission = await self.store.save_submission(submission)
        await self.events.publish(
            Event.submission_poll(submission), delay=self.settings.submission_poll_interval_seconds
        )
        submissions_total.labels(outcome="pending").inc()
        return submission

    async def _accepted(
        self, submission: Submission, invoice: Invoice, accepted_at: datetime | None
    ) -> Submission:
        submission.transition_to(SubmissionStatus.ACCEPTED)
        submission.accepted_at = accepted_at or self.clock()
        submission.next_retry_at = None
        submission = await self.store.save_submission(submission)

        invoice.ksef_reference = submission.reference_number
        invoice.transition_to(InvoiceStatus.SUBMITTED)
        await self.store.save_invoice(invoice)

        await self.audit.record(
            "submission.accepted",
            invoice_id=invoice.id,
            tenant_id=invoice.tenant_id,
            reference_number=submission.reference_number,
        )
        await self.events.publish(Event.submission_accepted(submission))
        submissions_total.labels(outcome="accepted").inc()
        logger.info(f"Invoice {invoice.id} accepted by KSeF: {submission.reference_number}")
        return submission

    async def _rejected(
        self, submission: Submission, invoice: Invoice, error: PlatformRejectedError
    ) -> Submission:
        submission.transition_to(SubmissionStatus.REJECTED)
        submission.record_error(error.code, error.message, error.details)
        submission.next_retry_at = None
        submission = await self.store.save_submission(submission)

        invoice.mark_error(error.code, error.message)
        await self.store.save_invoice(invoice)
        await self.audit.record(
            "submission.rejected",
            invoice_id=invoice.id,
            tenant_id=invoice.tenant_id,
            code=error.code,
            message=error.message,
        )
        submissions_total.labels(outcome="rejected").inc()
        logger.error(f"KSeF rejected invoice {invoice.id}: {error}")
        return submission

    async def _transient_failure(
        self, submission: Submission, invoice: Invoice, error: TransientError
    ) -> Submission:
        submission.transition_to(SubmissionStatus.FAILED)
        submission.retry_count += 1
        submission.record_error(error.code, error.message, error.details)

        if submission.retry_count < self.settings.submission_max_attempts:
            delay = compute_backoff(
                submission.retry_count - 1,
                self.settings.retry_backoff_base_seconds,
                self.settings.retry_backoff_max_seconds,
            )
            submission.transition_to(SubmissionStatus.RETRYING)
            submission.next_retry_at = next_attempt_at(self.clock(), delay)
            submission = await self.store.save_submission(submission)
            await self.events.publish(Event.submission_retry(submission), delay=delay)
            submissions_total.labels(outcome="retrying").inc()
            logger.warning(
                f"Submission of {invoice.id} failed ({error.code}), attempt "
                f"{submission.retry_count}/{self.settings.submission_max_attempts}, "
                f"retrying in {delay}s"
            )
            return submission

        return await self._give_up(submission, invoice, error)

    async def _permanent_failure(
        self, submission: Submission, invoice: Invoice, error: PipelineError
    ) -> Submission:
        submission.transition_to(SubmissionStatus.FAILED)
        submission.record_error(error.code, error.message, error.details)
        return await self._give_up(submission, invoice, error)

    async def _give_up(
        self, submission: Submission, invoice: Invoice, error: PipelineError
    ) -> Submission:
        submission.next_retry_at = None
        submission = await self.store.save_submission(submission)
        invoice.mark_error(error.code, error.message)
        await self.store.save_invoice(invoice)
        submissions_total.labels(outcome="failed").inc()
        logger.error(f"Submission of invoice {invoice.id} failed: {error}")
        return submission

    async def retry(self, invoice_id: str) -> Submission:
        """Run a due RETRYING submission; anything else is returned untouched."""
        submission = await self.get_submission(invoice_id)
        if submission.status != SubmissionStatus.RETRYING:
            return submission
        if submission.next_retry_at is not None and submission.next_retry_at > self.clock():
            return submission

        invoice = await self._get_invoice(invoice_id)
        if submission.reference_number:
            submission.transition_to(SubmissionStatus.SUBMITTED)
            submission = await self.store.save_submission(submission)
            return await self._check_status(submission, invoice)
        return await self._send(submission, invoice)

    async def poll(self, invoice_id: str) -> Submission:
        """Check the platform status of a SUBMITTED submission."""
        submission = await self.get_submission(invoice_id)
        if submission.status != SubmissionStatus.SUBMITTED:
            return submission
        invoice = await self._get_invoice(invoice_id)
        return await self._check_status(submission, invoice)

    async def download_receipt(self, invoice_id: str) -> Submission:
        """Fetch the official receipt (UPO) of an accepted invoice and complete it.

        Raises:
            InvalidTransitionError: If the submission is not ACCEPTED
            TransientError: If the platform or blob store is unavailable
        """
        submission = await self.get_submission(invoice_id)
        if submission.status != SubmissionStatus.ACCEPTED or submission.reference_number is None:
            raise InvalidTransitionError(
                "Submission", submission.status.value, SubmissionStatus.ACCEPTED.value
            )
        invoice = await self._get_invoice(invoice_id)
        if submission.receipt_ref is not None:
            return submission

        reference = submission.reference_number
        receipt = await self.sessions.call(
            self._tenant_nip(invoice),
            self.certificates.get(invoice.tenant_id),
            lambda session: self.client.download_receipt(reference, session),
        )
        extension = "pdf" if "pdf" in receipt.content_type else "xml"
        object_name = f"{invoice.tenant_id}/{invoice.id}/upo-{reference}.{extension}"
        stored = await asyncio.to_thread(
            self.blob_store.upload_bytes, receipt.content, object_name, receipt.content_type
        )
        if not stored.success:
            raise TransientError(
                f"Could not store receipt: {stored.error}", code="STORAGE_UNAVAILABLE"
            )

        submission.receipt_ref = object_name
        submission.receipt_content_type = receipt.content_type
        submission.updated_at = self.clock()
        submission = await self.store.save_submission(submission)

        if invoice.status == InvoiceStatus.SUBMITTED:
            invoice.transition_to(InvoiceStatus.COMPLETED)
            await self.store.save_invoice(invoice)
        logger.info(f"Stored receipt for invoice {invoice.id} at {object_name}")
        return submission

    async def get_submission(self, invoice_id: str) -> Submission:
        submission = await self.store.get_submission_for_invoice(invoice_id)
        if submission is None:
            raise NotFoundError("Submission", invoice_id)
        return submission

    async def retry_failed(self, invoice_id: str, actor: str = "system") -> Submission:
        """Manually resubmit an invoice whose submission failed for good.

        Raises:
            InvalidTransitionError: If the submission is not FAILED or the
                invoice is not in ERROR
        """
        submission = await self.get_submission(invoice_id)
        invoice = await self._get_invoice(invoice_id)
        if submission.status != SubmissionStatus.FAILED:
            raise InvalidTransitionError(
                "Submission", submission.status.value, SubmissionStatus.RETRYING.value
            )

        invoice.transition_to(InvoiceStatus.APPROVED)
        invoice.error_code = None
        invoice.error_message = None
        await self.store.save_invoice(invoice)

        submission.transition_to(SubmissionStatus.RETRYING)
        submission.retry_count = 0
        submission.poll_count = 0
        submission.next_retry_at = None
        submission.clear_error()
        submission = await self.store.save_submission(submission)

        await self.audit.record(
            "submission.retried", invoice_id=invoice.id, tenant_id=invoice.tenant_id, actor=actor
        )
        await self.events.publish(Event.submission_retry(submission))
        logger.info(f"Manual resubmission of invoice {invoice_id} by {actor}")
        return submission

    async def resume_due(self, now: datetime | None = None) -> int:
        """Pick up submissions whose scheduled event was lost.

        Covers due retries, polls that stopped, sends abandoned by a crashed
        worker and accepted invoices still missing their receipt.

        Returns:
            Number of submissions acted on
        """
        now = now or self.clock()
        poll_cutoff = now - timedelta(seconds=self.settings.submission_poll_interval_seconds * 3)
        stale_cutoff = now - timedelta(seconds=self.settings.stale_job_seconds)
        statuses = [
            SubmissionStatus.RETRYING,
            SubmissionStatus.SUBMITTED,
            SubmissionStatus.SUBMITTING,
            SubmissionStatus.ACCEPTED,
        ]
        acted = 0
        for submission in await self.store.list_submissions(statuses):
            invoice_id = submission.invoice_id
            try:
                if submission.status == SubmissionStatus.RETRYING:
                    if submission.next_retry_at is not None and submission.next_retry_at > now:
                        continue
                    await self.retry(invoice_id)
                elif submission.status == SubmissionStatus.SUBMITTED:
                    if submission.updated_at > poll_cutoff:
                        continue
                    await self.poll(invoice_id)
                elif submission.status == SubmissionStatus.SUBMITTING:
                    if submission.updated_at > stale_cutoff:
                        continue
                    invoice = await self._get_invoice(invoice_id)
                    await self._transient_failure(
                        submission,
                        invoice,
                        TransientError("Worker stopped while sending", code="SUBMISSION_ABANDONED"),
                    )
                else:
                    if submission.receipt_ref is not None:
                        continue
                    await self.download_receipt(invoice_id)
                acted += 1
            except PipelineError as e:
                logger.warning(f"Could not resume submission for invoice {invoice_id}: {e}")
        return acted

    async def _get_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self.store.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return invoice
