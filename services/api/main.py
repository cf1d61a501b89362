"""FastAPI application for the invoice pipeline.

Production-ready API with:
- Health and readiness checks for Kubernetes
- Invoice image upload feeding the extraction pipeline
- Job and submission status queries
- Review operations: corrections, approval, reopen, manual retry
- Structured error responses
- Prometheus metrics for monitoring

With the queue disabled the pipeline runs in-process: events published by a
request are dispatched after the response is sent, and a background loop
resumes due retries.

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import asyncio
import logging
import re
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from pathlib import Path
from typing import Any

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Header,
    HTTPException,
    Request,
    Response,
    UploadFile,
    status,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from services.api import metrics
from services.domain.models import Invoice, InvoiceStatus, Submission, SubmissionStatus
from services.jobs.orchestrator import JobStatusView
from services.queue.events import Event, InMemoryEventQueue
from services.review.corrections import CorrectionOutcome
from services.shared.config import get_settings
from services.shared.context import PipelineContext, build_context
from services.shared.errors import (
    ApprovalError,
    ConcurrentUpdateError,
    CorrectionValidationError,
    InvalidTransitionError,
    InvoiceNotEditableError,
    NotFoundError,
    PipelineError,
)
from services.shared.logging import configure_logging
from services.storage.service import detect_content_type

settings = get_settings()
configure_logging(settings)
logger = logging.getLogger(__name__)

# Tenant ids become the first segment of blob paths
TENANT_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_-]{0,63}")


async def _run_pending(pipeline: PipelineContext) -> None:
    if isinstance(pipeline.events, InMemoryEventQueue):
        await pipeline.events.drain(pipeline.dispatcher.dispatch)


async def _resume_loop(pipeline: PipelineContext) -> None:
    while True:
        await asyncio.sleep(pipeline.settings.resume_interval_seconds)
        try:
            await pipeline.orchestrator.resume_due_jobs()
            await pipeline.submissions.resume_due()
            await _run_pending(pipeline)
        except Exception:
            logger.exception("Resume loop iteration failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    pipeline = await build_context(settings)
    app.state.pipeline = pipeline
    resumer = None
    if isinstance(pipeline.events, InMemoryEventQueue):
        resumer = asyncio.create_task(_resume_loop(pipeline))
    yield
    if resumer is not None:
        resumer.cancel()
        with suppress(asyncio.CancelledError):
            await resumer
    await pipeline.close()


app = FastAPI(
    title="KSeF Invoice Pipeline",
    description="Invoice extraction, review and KSeF submission API",
    version=settings.service_version,
    lifespan=lifespan,
)


def get_pipeline(request: Request) -> PipelineContext:
    return request.app.state.pipeline


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request metrics.

    Tracks:
    - Request count by method, endpoint, and status
    - Request duration by method and endpoint
    """
    # Skip metrics for /metrics endpoint itself
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Route templates keep invoice ids out of the label set
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint,
    ).observe(duration)

    return response


def _status_for(error: PipelineError) -> int:
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, CorrectionValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(
        error,
        InvalidTransitionError | ApprovalError | InvoiceNotEditableError | ConcurrentUpdateError,
    ):
        return status.HTTP_409_CONFLICT
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    return JSONResponse(
        status_code=_status_for(exc),
        content={"error": {"code": exc.code, "message": exc.message, "details": exc.details}},
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    blob_store: bool


class UploadResponse(BaseModel):
    """Invoice upload response."""

    invoice_id: str
    tenant_id: str
    status: InvoiceStatus
    file_path: str


class CorrectionRequest(BaseModel):
    """Field path to corrected value, e.g. {"seller.tax_id": "5260250274"}."""

    corrections: dict[str, Any] = Field(..., min_length=1)


class RetryResponse(BaseModel):
    invoice_id: str
    target: str  # extraction or submission
    status: str


class SubmissionResponse(BaseModel):
    invoice_id: str
    status: SubmissionStatus
    reference_number: str | None = None
    accepted_at: datetime | None = None
    signed: bool
    retry_count: int
    next_retry_at: datetime | None = None
    receipt_available: bool
    error: dict[str, Any] | None = None

    @classmethod
    def from_submission(cls, submission: Submission) -> "SubmissionResponse":
        error = None
        if submission.error_code:
            error = {
                "code": submission.error_code,
                "message": submission.error_message,
                "details": submission.error_details,
            }
        return cls(
            invoice_id=submission.invoice_id,
            status=submission.status,
            reference_number=submission.reference_number,
            accepted_at=submission.accepted_at,
            signed=submission.signed,
            retry_count=submission.retry_count,
            next_retry_at=submission.next_retry_at,
            receipt_available=submission.receipt_ref is not None,
            error=error,
        )


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness probe.

    Returns:
        Health status information
    """
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
async def readiness_check(
    pipeline: PipelineContext = Depends(get_pipeline),  # noqa: B008
) -> ReadinessResponse:
    """Readiness check endpoint for Kubernetes readiness probe.

    Returns:
        Readiness status
    """
    blob_ok = await asyncio.to_thread(pipeline.blob_store.health_check)
    return ReadinessResponse(ready=blob_ok, blob_store=blob_ok)


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint.

    Returns:
        Prometheus metrics in text format
    """
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.post(
    "/api/v1/invoices/upload",
    response_model=UploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Invoices"],
)
async def upload_invoice(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(..., description="Invoice image (PNG, JPEG, TIFF, ...)"),  # noqa: B008
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    pipeline: PipelineContext = Depends(get_pipeline),  # noqa: B008
) -> UploadResponse:
    """Upload an invoice image and start its extraction.

    The image is stored in the blob store, an UPLOADED invoice record is
    created and a ``document.uploaded`` event is published. Extraction runs
    asynchronously; poll ``GET /api/v1/invoices/{id}`` for progress.

    ## Usage Example

    ```bash
    curl -X POST "http://localhost:8000/api/v1/invoices/upload" \\
      -H "X-Tenant-ID: acme" -F "file=@faktura.png"
    ```

    Raises:
        HTTPException: 400 if the tenant id is not a slug or the file is missing,
            empty or not an image; 503 if the blob store rejects the upload
    """
    if not TENANT_ID_PATTERN.fullmatch(tenant_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Tenant-ID: use letters, digits, hyphens and underscores",
        )
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No filename provided")

    if not file.content_type or not file.content_type.startswith("image/"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid file type: {file.content_type}. Only images are supported.",
        )

    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    metrics.invoice_upload_size_bytes.observe(len(content))

    suffix = Path(file.filename).suffix.lower() or ".bin"
    invoice = Invoice(tenant_id=tenant_id, file_path="")
    invoice.file_path = f"{tenant_id}/{invoice.id}/original{suffix}"
    stored = await asyncio.to_thread(
        pipeline.blob_store.upload_bytes,
        content,
        invoice.file_path,
        file.content_type or detect_content_type(file.filename),
    )
    if not stored.success:
        metrics.invoices_uploaded_total.labels(status="failed").inc()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Could not store invoice: {stored.error}",
        )

    invoice = await pipeline.store.create_invoice(invoice)
    await pipeline.events.publish(Event.document_uploaded(invoice))
    metrics.invoices_uploaded_total.labels(status="success").inc()
    background_tasks.add_task(_run_pending, pipeline)
    logger.info(f"Uploaded invoice {invoice.id} for tenant {tenant_id}")

    return UploadResponse(
        invoice_id=invoice.id,
        tenant_id=invoice.tenant_id,
        status=invoice.status,
        file_path=invoice.file_path,
    )


@app.get("/api/v1/invoices/{invoice_id}", response_model=Invoice, tags=["Invoices"])
async def get_invoice(
    invoice_id: str,
    pipeline: PipelineContext = Depends(get_pipeline),  # noqa: B008
) -> Invoice:
    invoice = await pipeline.store.get_invoice(invoice_id)
    if invoice is None:
        raise NotFoundError("Invoice", invoice_id)
    return invoice


@app.get("/api/v1/jobs/{job_id}", response_model=JobStatusView, tags=["Jobs"])
async def get_job(
    job_id: str,
    pipeline: PipelineContext = Depends(get_pipeline),  # noqa: B008
) -> JobStatusView:
    """Job status; extracted fields are included once the job has COMPLETED."""
    return await pipeline.orchestrator.get_status(job_id)


@app.post(
    "/api/v1/invoices/{invoice_id}/corrections",
    response_model=CorrectionOutcome,
    tags=["Review"],
)
async def correct_invoice(
    invoice_id: str,
    request: CorrectionRequest,
    actor: str = Header("api", alias="X-Actor-ID"),
    pipeline: PipelineContext = Depends(get_pipeline),  # noqa: B008
) -> CorrectionOutcome:
    """Apply field corrections. All fields are validated before any is written."""
    return await pipeline.reconciler.apply_corrections(invoice_id, request.corrections, actor)


@app.post("/api/v1/invoices/{invoice_id}/approve", response_model=Invoice, tags=["Review"])
async def approve_invoice(
    invoice_id: str,
    background_tasks: BackgroundTasks,
    actor: str = Header("api", alias="X-Actor-ID"),
    pipeline: PipelineContext = Depends(get_pipeline),  # noqa: B008
) -> Invoice:
    """Approve an invoice; submission to KSeF starts asynchronously."""
    invoice = await pipeline.reconciler.approve(invoice_id, actor)
    background_tasks.add_task(_run_pending, pipeline)
    return invoice


@app.post("/api/v1/invoices/{invoice_id}/reopen", response_model=Invoice, tags=["Review"])
async def reopen_invoice(
    invoice_id: str,
    actor: str = Header("api", alias="X-Actor-ID"),
    pipeline: PipelineContext = Depends(get_pipeline),  # noqa: B008
) -> Invoice:
    return await pipeline.reconciler.reopen(invoice_id, actor)


@app.post("/api/v1/invoices/{invoice_id}/retry", response_model=RetryResponse, tags=["Review"])
async def retry_invoice(
    invoice_id: str,
    background_tasks: BackgroundTasks,
    actor: str = Header("api", alias="X-Actor-ID"),
    pipeline: PipelineContext = Depends(get_pipeline),  # noqa: B008
) -> RetryResponse:
    """Manually retry a failed submission, or a failed extraction if none exists."""
    submission = await pipeline.store.get_submission_for_invoice(invoice_id)
    if submission is not None and submission.status == SubmissionStatus.FAILED:
        submission = await pipeline.submissions.retry_failed(invoice_id, actor)
        response = RetryResponse(
            invoice_id=invoice_id, target="submission", status=submission.status.value
        )
    else:
        job = await pipeline.orchestrator.retry_failed(invoice_id)
        response = RetryResponse(
            invoice_id=invoice_id, target="extraction", status=job.status.value
        )
    background_tasks.add_task(_run_pending, pipeline)
    return response


@app.get(
    "/api/v1/invoices/{invoice_id}/submission",
    response_model=SubmissionResponse,
    tags=["Submission"],
)
async def get_submission(
    invoice_id: str,
    pipeline: PipelineContext = Depends(get_pipeline),  # noqa: B008
) -> SubmissionResponse:
    submission = await pipeline.submissions.get_submission(invoice_id)
    return SubmissionResponse.from_submission(submission)


@app.get("/api/v1/invoices/{invoice_id}/receipt", tags=["Submission"])
async def get_receipt(
    invoice_id: str,
    pipeline: PipelineContext = Depends(get_pipeline),  # noqa: B008
) -> Response:
    """Download the official KSeF receipt (UPO) of an accepted invoice."""
    submission = await pipeline.submissions.get_submission(invoice_id)
    if submission.receipt_ref is None:
        raise NotFoundError("Receipt", invoice_id)
    content = await asyncio.to_thread(pipeline.blob_store.download_bytes, submission.receipt_ref)
    return Response(
        content=content, media_type=submission.receipt_content_type or "application/xml"
    )
