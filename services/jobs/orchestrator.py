"""Extraction job orchestrator.

Drives one invoice image through preprocessing, recognition, field
extraction, scoring and persistence. Every step is checkpointed on the job
record, so a retry (or a worker restart) resumes at the step after the last
completed checkpoint instead of starting over.

Concurrency: ``create_job`` is unique per invoice and every save is
versioned, so two workers racing on the same job cannot both advance it; the
loser sees ConcurrentUpdateError and backs off.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel

from services.domain.models import (
    JOB_STEPS,
    ExtractionJob,
    Invoice,
    InvoiceStatus,
    JobStatus,
    LineItem,
    Party,
    utcnow,
)
from services.extraction.base import ExtractionProvider
from services.extraction.schema import ExtractedInvoice, ExtractedParty
from services.jobs.backoff import compute_backoff, next_attempt_at
from services.ocr.factory import RecognitionEngine
from services.ocr.preprocess import preprocess_image
from services.queue.events import Event, EventQueue
from services.review.validators import validate_for_approval
from services.scoring.confidence import classify_direction, evaluate
from services.shared.config import Settings
from services.shared.errors import (
    ConcurrentUpdateError,
    DuplicateRecordError,
    InvalidTransitionError,
    NotFoundError,
    PermanentError,
    PipelineError,
    TransientError,
)
from services.shared.metrics import (
    extraction_jobs_total,
    extraction_step_duration_seconds,
    review_decisions_total,
)
from services.shared.tenants import TenantDirectory
from services.storage.factory import BlobStore
from services.store.base import RecordStore

logger = logging.getLogger(__name__)

EXTRACTION_HINTS = {"locale": "pl-PL", "document_type": "faktura VAT"}


class JobStatusView(BaseModel):
    """Client-facing job status. Extracted data is only exposed once COMPLETED."""

    job_id: str
    invoice_id: str
    status: JobStatus
    current_step: JobStatus | None = None
    progress: int
    elapsed_seconds: float | None = None
    retry_count: int = 0
    retry_scheduled: bool = False
    next_retry_at: datetime | None = None
    extracted_fields: dict[str, Any] | None = None
    field_confidence: dict[str, float | None] | None = None
    overall_confidence: float | None = None
    requires_review: bool | None = None
    low_confidence: bool = False
    validation_errors: list[str] | None = None
    error: dict[str, Any] | None = None


def _party(extracted: ExtractedParty) -> Party:
    return Party(
        name=extracted.name,
        tax_id=extracted.tax_id,
        address=extracted.address,
        country_code=extracted.country_code.upper() if extracted.country_code else None,
        confidence=extracted.confidence,
    )


def apply_extraction(invoice: Invoice, extracted: ExtractedInvoice) -> None:
    """Copy extracted values onto the invoice, unknown values stay None."""
    invoice.invoice_number = extracted.header.invoice_number
    invoice.issue_date = extracted.header.issue_date
    invoice.due_date = extracted.header.due_date
    invoice.currency = extracted.header.currency.upper() if extracted.header.currency else None
    invoice.net_amount = extracted.totals.net_amount
    invoice.vat_amount = extracted.totals.vat_amount
    invoice.gross_amount = extracted.totals.gross_amount
    invoice.seller = _party(extracted.seller)
    invoice.buyer = _party(extracted.buyer)
    invoice.line_items = [
        LineItem(
            line_number=index + 1,
            description=item.description,
            quantity=item.quantity,
            unit=item.unit,
            unit_price=item.unit_price,
            net_amount=item.net_amount,
            vat_rate=item.vat_rate,
            vat_amount=item.vat_amount,
            gross_amount=item.gross_amount,
        )
        for index, item in enumerate(extracted.line_items)
    ]


class ExtractionOrchestrator:
    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        blob_store: BlobStore,
        recognition_engine: RecognitionEngine,
        extraction_provider: ExtractionProvider,
        tenants: TenantDirectory,
        events: EventQueue,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.blob_store = blob_store
        self.recognition_engine = recognition_engine
        self.extraction_provider = extraction_provider
        self.tenants = tenants
        self.events = events
        self.clock = clock

    async def start_extraction(self, invoice_id: str) -> tuple[ExtractionJob, bool]:
        """Create the invoice's extraction job, or return the one that already exists.

        Returns:
            (job, created); ``created`` is False for every caller but the first

        Raises:
            NotFoundError: If the invoice does not exist
            InvalidTransitionError: If the invoice has no job and is not UPLOADED
        """
        invoice = await self._get_invoice(invoice_id)
        existing = await self.store.get_job_for_invoice(invoice_id)
        if existing is not None:
            return existing, False
        if invoice.status != InvoiceStatus.UPLOADED:
            raise InvalidTransitionError(
                "Invoice", invoice.status.value, InvoiceStatus.PROCESSING.value
            )

        job = ExtractionJob(
            invoice_id=invoice.id, tenant_id=invoice.tenant_id, file_path=invoice.file_path
        )
        try:
            job = await self.store.create_job(job)
        except DuplicateRecordError:
            winner = await self.store.get_job_for_invoice(invoice_id)
            if winner is None:
                raise
            logger.info(f"Extraction for invoice {invoice_id} already started as {winner.id}")
            return winner, False

        invoice.transition_to(InvoiceStatus.PROCESSING)
        await self.store.save_invoice(invoice)
        await self.events.publish(Event.extraction_run(job))
        logger.info(f"Queued extraction job {job.id} for invoice {invoice_id}")
        return job, True

    async def get_status(self, job_id: str) -> JobStatusView:
        job = await self.store.get_job(job_id)
        if job is None:
            raise NotFoundError("ExtractionJob", job_id)

        view = JobStatusView(
            job_id=job.id,
            invoice_id=job.invoice_id,
            status=job.status,
            current_step=job.status if job.in_flight else None,
            progress=job.progress,
            elapsed_seconds=job.elapsed_seconds,
            retry_count=job.retry_count,
            retry_scheduled=job.status == JobStatus.RETRYING,
            next_retry_at=job.next_retry_at if job.status == JobStatus.RETRYING else None,
            low_confidence=job.low_confidence,
        )
        if job.status == JobStatus.COMPLETED:
            view.extracted_fields = job.extracted_fields
            view.field_confidence = job.field_confidence
            view.overall_confidence = job.overall_confidence
            view.requires_review = job.requires_review
            view.validation_errors = job.validation_errors
        if job.error_code:
            view.error = {
                "code": job.error_code,
                "message": job.error_message,
                "details": job.error_details,
            }
        return view

    def _is_runnable(self, job: ExtractionJob, now: datetime) -> bool:
        if job.status == JobStatus.QUEUED:
            return True
        if job.status == JobStatus.RETRYING:
            return job.next_retry_at is None or job.next_retry_at <= now
        return False

    def _is_stale(self, job: ExtractionJob, now: datetime) -> bool:
        return job.in_flight and job.updated_at <= now - timedelta(
            seconds=self.settings.stale_job_seconds
        )

    async def run_job(self, job_id: str) -> ExtractionJob:
        """Run a QUEUED or due RETRYING job from its checkpoint to completion.

        Jobs in any other state are returned untouched, which makes duplicate
        deliveries of the run event harmless.
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise NotFoundError("ExtractionJob", job_id)
        if not self._is_runnable(job, self.clock()):
            logger.debug(f"Job {job_id} not runnable in status {job.status.value}")
            return job

        try:
            return await self._run_steps(job)
        except ConcurrentUpdateError:
            logger.info(f"Job {job_id} advanced by another worker, backing off")
            return await self.store.get_job(job_id) or job
        except TransientError as e:
            return await self._handle_failure(job_id, e, retryable=True)
        except PipelineError as e:
            return await self._handle_failure(job_id, e, retryable=False)
        except Exception as e:
            logger.exception(f"Unexpected error in extraction job {job_id}")
            error = PermanentError(f"Unexpected error: {e}", code="INTERNAL_ERROR")
            return await self._handle_failure(job_id, error, retryable=False)

    async def _enter(self, job: ExtractionJob, step: JobStatus) -> ExtractionJob:
        job.transition_to(step)
        return await self.store.save_job(job)

    async def _run_steps(self, job: ExtractionJob) -> ExtractionJob:
        logger.info(
            f"Running job {job.id} from {job.resume_point.value} (attempt {job.retry_count + 1})"
        )
        steps = JOB_STEPS[JOB_STEPS.index(job.resume_point) :]

        image: bytes | None = None
        for step in steps:
            job = await self._enter(job, step)
            started = time.perf_counter()
            if step == JobStatus.PREPROCESSING:
                image = await self._preprocess(job)
            elif step == JobStatus.RECOGNIZING:
                if image is None:
                    image = await self._preprocess(job)
                await self._recognize(job, image)
            elif step == JobStatus.EXTRACTING:
                await self._extract(job)
            elif step == JobStatus.VALIDATING:
                await self._validate(job)
            elif step == JobStatus.PERSISTING:
                job = await self._persist(job)
            extraction_step_duration_seconds.labels(step=step.value.lower()).observe(
                time.perf_counter() - started
            )

        extraction_jobs_total.labels(outcome="completed").inc()
        review_decisions_total.labels(route="review" if job.requires_review else "auto").inc()
        await self.events.publish(Event.extraction_completed(job))
        logger.info(
            f"Job {job.id} completed: confidence={job.overall_confidence} "
            f"review={job.requires_review}"
        )
        return job

    async def _preprocess(self, job: ExtractionJob) -> bytes:
        try:
            data = await asyncio.to_thread(self.blob_store.download_bytes, job.file_path)
        except NotFoundError as e:
            raise PermanentError(
                f"Uploaded document is missing: {job.file_path}", code="DOCUMENT_MISSING"
            ) from e
        return await asyncio.to_thread(preprocess_image, data)

    async def _recognize(self, job: ExtractionJob, image: bytes) -> None:
        result = await asyncio.to_thread(self.recognition_engine.recognize, image)
        if not result.success:
            message = f"Recognition failed: {result.error}"
            if result.retryable:
                raise TransientError(message, code="RECOGNITION_UNAVAILABLE")
            raise PermanentError(message, code="RECOGNITION_FAILED")

        job.raw_text = result.text
        job.ocr_confidence = result.confidence
        job.ocr_language = result.language
        # Low recognition confidence is a hint for the reviewer, not a failure
        job.low_confidence = result.confidence < self.settings.ocr_min_confidence
        if job.low_confidence:
            logger.warning(f"Job {job.id}: low recognition confidence {result.confidence}")
        job.resume_point = JobStatus.EXTRACTING

    async def _extract(self, job: ExtractionJob) -> None:
        hints = dict(EXTRACTION_HINTS)
        if job.ocr_language:
            hints["ocr_language"] = job.ocr_language
        result = await asyncio.to_thread(
            self.extraction_provider.extract_invoice_fields, job.raw_text or "", hints
        )
        if not result.success or result.invoice is None:
            message = f"Extraction failed ({result.provider}): {result.error}"
            if result.retryable:
                raise TransientError(message, code="EXTRACTION_UNAVAILABLE")
            raise PermanentError(message, code="EXTRACTION_FAILED")

        extracted = result.invoice
        classification = classify_direction(
            extracted.seller.tax_id,
            extracted.buyer.tax_id,
            self.tenants.get_tax_id(job.tenant_id),
        )
        job.extracted_fields = extracted.model_dump(mode="json")
        job.field_confidence = extracted.field_confidence_map()
        job.direction = classification.direction
        job.direction_confidence = classification.confidence
        logger.info(f"Job {job.id}: {classification.rationale}")
        job.resume_point = JobStatus.VALIDATING

    async def _validate(self, job: ExtractionJob) -> None:
        if job.direction is None:
            raise PermanentError(
                "Job reached validation without a direction", code="CHECKPOINT_MISSING"
            )
        decision = evaluate(
            job.field_confidence,
            job.direction,
            job.direction_confidence,
            self.settings.review_confidence_threshold,
        )
        job.overall_confidence = decision.overall_confidence
        job.requires_review = decision.requires_review

        candidate = Invoice(tenant_id=job.tenant_id, file_path=job.file_path)
        apply_extraction(candidate, self._checkpointed_invoice(job))
        job.validation_errors = validate_for_approval(candidate, self.settings.amount_tolerance)
        job.resume_point = JobStatus.PERSISTING

    async def _persist(self, job: ExtractionJob) -> ExtractionJob:
        invoice = await self._get_invoice(job.invoice_id)
        apply_extraction(invoice, self._checkpointed_invoice(job))
        invoice.field_confidence = dict(job.field_confidence)
        invoice.overall_confidence = job.overall_confidence
        invoice.requires_review = job.requires_review
        invoice.direction = job.direction
        invoice.direction_confidence = job.direction_confidence
        invoice.error_code = None
        invoice.error_message = None
        invoice.transition_to(
            InvoiceStatus.REVIEWING if job.requires_review else InvoiceStatus.EXTRACTED
        )

        job.transition_to(JobStatus.COMPLETED)
        job.next_retry_at = None
        _, job = await self.store.save_extraction_result(invoice, job)
        return job

    def _checkpointed_invoice(self, job: ExtractionJob) -> ExtractedInvoice:
        if job.extracted_fields is None:
            raise PermanentError("Extraction checkpoint is missing", code="CHECKPOINT_MISSING")
        return ExtractedInvoice.model_validate(job.extracted_fields)

    async def _handle_failure(
        self, job_id: str, error: PipelineError, retryable: bool
    ) -> ExtractionJob:
        job = await self.store.get_job(job_id)
        if job is None:
            raise NotFoundError("ExtractionJob", job_id)
        if not job.in_flight:
            return job

        now = self.clock()
        job.transition_to(JobStatus.FAILED)
        job.error_code = error.code
        job.error_message = error.message
        job.error_details = error.details or None

        if retryable and job.retry_count < self.settings.extraction_max_retries:
            delay = compute_backoff(
                job.retry_count,
                self.settings.retry_backoff_base_seconds,
                self.settings.retry_backoff_max_seconds,
            )
            job.transition_to(JobStatus.RETRYING)
            job.retry_count += 1
            job.next_retry_at = next_attempt_at(now, delay)
            job = await self.store.save_job(job)
            await self.events.publish(Event.extraction_retry(job), delay=delay)
            extraction_jobs_total.labels(outcome="retrying").inc()
            logger.warning(
                f"Job {job.id} failed transiently ({error.code}), "
                f"retry {job.retry_count}/{self.settings.extraction_max_retries} in {delay}s"
            )
            return job

        job.next_retry_at = None
        job = await self.store.save_job(job)
        invoice = await self._get_invoice(job.invoice_id)
        if invoice.status != InvoiceStatus.ERROR:
            invoice.mark_error(error.code, error.message)
            await self.store.save_invoice(invoice)
        await self.events.publish(Event.extraction_failed(job))
        extraction_jobs_total.labels(outcome="failed").inc()
        logger.error(f"Job {job.id} failed permanently: {error}")
        return job

    async def resume_due_jobs(self, now: datetime | None = None) -> int:
        """Re-run due retries and recover jobs abandoned by a crashed worker.

        A stale in-flight job is failed as transient, so its crash counts as
        one attempt and it is rescheduled through the normal retry path. A
        QUEUED job older than the stale threshold lost its run event and is
        run directly.

        Returns:
            Number of jobs acted on
        """
        now = now or self.clock()
        statuses = [JobStatus.QUEUED, JobStatus.RETRYING, *JOB_STEPS]
        acted = 0
        for job in await self.store.list_jobs(statuses):
            try:
                if job.status == JobStatus.RETRYING and self._is_runnable(job, now):
                    await self.run_job(job.id)
                elif job.status == JobStatus.QUEUED and job.created_at <= now - timedelta(
                    seconds=self.settings.stale_job_seconds
                ):
                    await self.run_job(job.id)
                elif self._is_stale(job, now):
                    logger.warning(f"Recovering abandoned job {job.id} in {job.status.value}")
                    await self._handle_failure(
                        job.id,
                        TransientError(
                            f"Worker stopped during {job.status.value}", code="JOB_ABANDONED"
                        ),
                        retryable=True,
                    )
                else:
                    continue
                acted += 1
            except PipelineError as e:
                logger.warning(f"Could not resume job {job.id}: {e}")
        return acted

    async def retry_failed(self, invoice_id: str) -> ExtractionJob:
        """Manually restart an invoice's exhausted extraction job.

        Raises:
            NotFoundError: If the invoice has no job
            InvalidTransitionError: If the job is not FAILED
        """
        job = await self.store.get_job_for_invoice(invoice_id)
        if job is None:
            raise NotFoundError("ExtractionJob", invoice_id)
        invoice = await self._get_invoice(invoice_id)

        job.transition_to(JobStatus.RETRYING)
        job.retry_count = 0
        job.next_retry_at = None
        job.error_code = None
        job.error_message = None
        job.error_details = None
        job = await self.store.save_job(job)

        if invoice.status == InvoiceStatus.ERROR:
            invoice.transition_to(InvoiceStatus.PROCESSING)
            invoice.error_code = None
            invoice.error_message = None
            await self.store.save_invoice(invoice)

        await self.events.publish(Event.extraction_retry(job))
        logger.info(f"Manual retry of job {job.id} for invoice {invoice_id}")
        return job

    async def _get_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self.store.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return invoice
