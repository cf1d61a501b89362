"""Domain records for the invoice pipeline.

Invoice, ExtractionJob and Submission are each a small state machine. Status
changes go through ``transition_to`` so that no code path can skip a state
(for example reaching SUBMITTING without APPROVED).
"""

import uuid
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from services.shared.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


class InvoiceStatus(str, Enum):
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    EXTRACTED = "EXTRACTED"
    REVIEWING = "REVIEWING"
    APPROVED = "APPROVED"
    SUBMITTED = "SUBMITTED"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    ARCHIVED = "ARCHIVED"


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    PREPROCESSING = "PREPROCESSING"
    RECOGNIZING = "RECOGNIZING"
    EXTRACTING = "EXTRACTING"
    VALIDATING = "VALIDATING"
    PERSISTING = "PERSISTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


class SubmissionStatus(str, Enum):
    PENDING = "PENDING"
    SUBMITTING = "SUBMITTING"
    SUBMITTED = "SUBMITTED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


class Direction(str, Enum):
    OUTGOING = "OUTGOING"
    INCOMING = "INCOMING"
    UNKNOWN = "UNKNOWN"


_RECOVERABLE_INVOICE = {
    InvoiceStatus.UPLOADED,
    InvoiceStatus.PROCESSING,
    InvoiceStatus.EXTRACTED,
    InvoiceStatus.REVIEWING,
    InvoiceStatus.APPROVED,
    InvoiceStatus.SUBMITTED,
}

INVOICE_TRANSITIONS: dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.UPLOADED: {InvoiceStatus.PROCESSING},
    InvoiceStatus.PROCESSING: {InvoiceStatus.EXTRACTED, InvoiceStatus.REVIEWING},
    InvoiceStatus.EXTRACTED: {InvoiceStatus.APPROVED, InvoiceStatus.ARCHIVED},
    InvoiceStatus.REVIEWING: {InvoiceStatus.APPROVED, InvoiceStatus.ARCHIVED},
    InvoiceStatus.APPROVED: {InvoiceStatus.SUBMITTED},
    InvoiceStatus.SUBMITTED: {InvoiceStatus.COMPLETED},
    InvoiceStatus.COMPLETED: {InvoiceStatus.ARCHIVED},
    # Leaving ERROR is always an explicit human action
    InvoiceStatus.ERROR: {
        InvoiceStatus.PROCESSING,
        InvoiceStatus.REVIEWING,
        InvoiceStatus.APPROVED,
        InvoiceStatus.ARCHIVED,
    },
    InvoiceStatus.ARCHIVED: set(),
}
for _status in _RECOVERABLE_INVOICE:
    INVOICE_TRANSITIONS[_status].add(InvoiceStatus.ERROR)

JOB_STEPS: tuple[JobStatus, ...] = (
    JobStatus.PREPROCESSING,
    JobStatus.RECOGNIZING,
    JobStatus.EXTRACTING,
    JobStatus.VALIDATING,
    JobStatus.PERSISTING,
)

JOB_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.PREPROCESSING, JobStatus.FAILED},
    JobStatus.PREPROCESSING: {JobStatus.RECOGNIZING, JobStatus.FAILED},
    JobStatus.RECOGNIZING: {JobStatus.EXTRACTING, JobStatus.FAILED},
    JobStatus.EXTRACTING: {JobStatus.VALIDATING, JobStatus.FAILED},
    JobStatus.VALIDATING: {JobStatus.PERSISTING, JobStatus.FAILED},
    JobStatus.PERSISTING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: {JobStatus.RETRYING},
    # A retry resumes at the job's checkpoint
    JobStatus.RETRYING: set(JOB_STEPS) | {JobStatus.FAILED},
}

JOB_PROGRESS: dict[JobStatus, int] = {
    JobStatus.QUEUED: 0,
    JobStatus.PREPROCESSING: 10,
    JobStatus.RECOGNIZING: 25,
    JobStatus.EXTRACTING: 50,
    JobStatus.VALIDATING: 75,
    JobStatus.PERSISTING: 90,
    JobStatus.COMPLETED: 100,
}

SUBMISSION_TRANSITIONS: dict[SubmissionStatus, set[SubmissionStatus]] = {
    SubmissionStatus.PENDING: {SubmissionStatus.SUBMITTING, SubmissionStatus.FAILED},
    SubmissionStatus.SUBMITTING: {
        SubmissionStatus.SUBMITTED,
        SubmissionStatus.ACCEPTED,
        SubmissionStatus.REJECTED,
        SubmissionStatus.FAILED,
    },
    SubmissionStatus.SUBMITTED: {
        SubmissionStatus.ACCEPTED,
        SubmissionStatus.REJECTED,
        SubmissionStatus.FAILED,
    },
    SubmissionStatus.ACCEPTED: set(),
    # A rejected document goes back through review and approval first
    SubmissionStatus.REJECTED: {SubmissionStatus.SUBMITTING},
    SubmissionStatus.FAILED: {SubmissionStatus.RETRYING},
    SubmissionStatus.RETRYING: {
        SubmissionStatus.SUBMITTING,
        SubmissionStatus.SUBMITTED,
        SubmissionStatus.FAILED,
    },
}


def _check(kind: str, table: dict[Any, set[Any]], current: Enum, target: Enum) -> None:
    if target not in table[current]:
        raise InvalidTransitionError(kind, current.value, target.value)


class Party(BaseModel):
    """Seller or buyer as it appears on the invoice."""

    name: str | None = None
    tax_id: str | None = None
    address: str | None = None
    country_code: str | None = None
    confidence: float | None = Field(None, ge=0, le=1)


class LineItem(BaseModel):
    line_number: int
    description: str | None = None
    quantity: Decimal | None = None
    unit: str | None = None
    unit_price: Decimal | None = None
    net_amount: Decimal | None = None
    vat_rate: str | None = None
    vat_amount: Decimal | None = None
    gross_amount: Decimal | None = None


class Correction(BaseModel):
    """One human edit of one field. Append-only audit entry."""

    model_config = ConfigDict(frozen=True)

    field_name: str
    original_value: str | None
    corrected_value: str | None
    corrected_at: datetime = Field(default_factory=utcnow)
    actor: str


class Invoice(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    file_path: str
    status: InvoiceStatus = InvoiceStatus.UPLOADED

    # Header
    invoice_number: str | None = None
    issue_date: date | None = None
    due_date: date | None = None
    currency: str | None = None

    # Totals
    net_amount: Decimal | None = None
    vat_amount: Decimal | None = None
    gross_amount: Decimal | None = None

    seller: Party = Field(default_factory=Party)
    buyer: Party = Field(default_factory=Party)
    line_items: list[LineItem] = Field(default_factory=list)

    # Scoring
    field_confidence: dict[str, float | None] = Field(default_factory=dict)
    overall_confidence: float | None = None
    requires_review: bool | None = None
    direction: Direction | None = None
    direction_confidence: float | None = None

    corrections: list[Correction] = Field(default_factory=list)
    ksef_reference: str | None = None

    approved_at: datetime | None = None
    approved_by: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def transition_to(self, target: InvoiceStatus) -> None:
        _check("Invoice", INVOICE_TRANSITIONS, self.status, target)
        self.status = target
        self.updated_at = utcnow()

    def mark_error(self, code: str, message: str) -> None:
        self.transition_to(InvoiceStatus.ERROR)
        self.error_code = code
        self.error_message = message


class ExtractionJob(BaseModel):
    id: str = Field(default_factory=new_id)
    invoice_id: str
    tenant_id: str
    file_path: str
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    resume_point: JobStatus = JobStatus.PREPROCESSING
    step_timestamps: dict[str, datetime] = Field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    retry_count: int = 0
    next_retry_at: datetime | None = None

    # RECOGNIZING checkpoint
    raw_text: str | None = None
    ocr_confidence: float | None = None
    ocr_language: str | None = None
    low_confidence: bool = False

    # EXTRACTING checkpoint
    extracted_fields: dict[str, Any] | None = None
    field_confidence: dict[str, float | None] = Field(default_factory=dict)
    direction: Direction | None = None
    direction_confidence: float | None = None

    # VALIDATING checkpoint
    overall_confidence: float | None = None
    requires_review: bool | None = None
    validation_errors: list[str] = Field(default_factory=list)

    error_code: str | None = None
    error_message: str | None = None
    error_details: dict[str, Any] | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def transition_to(self, target: JobStatus) -> None:
        _check("ExtractionJob", JOB_TRANSITIONS, self.status, target)
        now = utcnow()
        self.status = target
        self.updated_at = now
        if target in JOB_PROGRESS:
            # Progress never moves backwards, even when a retry resumes at an earlier step
            self.progress = max(self.progress, JOB_PROGRESS[target])
        if target in JOB_STEPS:
            self.step_timestamps[target.value] = now
            if self.started_at is None:
                self.started_at = now
        if target == JobStatus.COMPLETED:
            self.completed_at = now

    @property
    def in_flight(self) -> bool:
        return self.status in JOB_STEPS

    @property
    def elapsed_seconds(self) -> float | None:
        if self.started_at is None:
            return None
        end = self.completed_at or utcnow()
        return (end - self.started_at).total_seconds()


class Submission(BaseModel):
    id: str = Field(default_factory=new_id)
    invoice_id: str
    tenant_id: str
    status: SubmissionStatus = SubmissionStatus.PENDING
    xml_payload: str | None = None
    signed: bool = False
    reference_number: str | None = None
    accepted_at: datetime | None = None
    receipt_ref: str | None = None
    receipt_content_type: str | None = None
    retry_count: int = 0
    next_retry_at: datetime | None = None
    poll_count: int = 0

    error_code: str | None = None
    error_message: str | None = None
    error_details: dict[str, Any] | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def transition_to(self, target: SubmissionStatus) -> None:
        _check("Submission", SUBMISSION_TRANSITIONS, self.status, target)
        self.status = target
        self.updated_at = utcnow()

    def record_error(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        self.error_code = code
        self.error_message = message
        self.error_details = details or None

    def clear_error(self) -> None:
        self.error_code = None
        self.error_message = None
        self.error_details = None
